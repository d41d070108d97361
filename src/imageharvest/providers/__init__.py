"""Image provider adapters.

Importing this package registers every shipped adapter with
:data:`provider_registry`.

Modules
-------
base
    Catalog entries, the adapter base class, and the type registry.
dezgo
    Dezgo adapter, also serving the ``stability`` type.
openai_images
    OpenAI (DALL-E) and Grok adapters.
"""

from imageharvest.providers.base import (
    DEFAULT_CATALOG,
    ProviderBase,
    ProviderRegistry,
    ProviderSpec,
    load_catalog,
    provider_registry,
)

# Import adapters to ensure they're registered
from imageharvest.providers.dezgo import DezgoProvider  # noqa: F401
from imageharvest.providers.openai_images import GrokProvider, OpenAIImageProvider  # noqa: F401

__all__ = [
    "DEFAULT_CATALOG",
    "DezgoProvider",
    "GrokProvider",
    "OpenAIImageProvider",
    "ProviderBase",
    "ProviderRegistry",
    "ProviderSpec",
    "load_catalog",
    "provider_registry",
]
