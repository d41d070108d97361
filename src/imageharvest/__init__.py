"""Image Harvest - Rate-limited, queued image generation across external providers."""

__version__ = "0.3.0"

from imageharvest.core.config import HarvestConfig, config
from imageharvest.providers import ProviderBase, provider_registry

__all__ = [
    "HarvestConfig",
    "ProviderBase",
    "config",
    "provider_registry",
]
