"""Base classes, catalog, and registry for image providers.

Every external image service is wrapped by a provider adapter that exposes
one coroutine, :meth:`ProviderBase.generate`.  Adapters hide the wire format
of their service and either return a :class:`ProviderOutput` or raise
:class:`~imageharvest.core.errors.ProviderError`.

Two lookups turn a user-facing provider name (``"flux"``, ``"dalle3"``) into
running code:

1. The **catalog** maps the name to a :class:`ProviderSpec` carrying the
   provider *type*, model identifier and endpoint URL.
2. The **registry** maps the provider type to an adapter class.  Several
   types may share an adapter: ``stability`` is served by the Dezgo adapter.

Usage Example
-------------
    >>> from imageharvest.providers import provider_registry, load_catalog
    >>> catalog = load_catalog()
    >>> spec = catalog["flux"]
    >>> adapter = provider_registry.instantiate(spec.type, config, client)
    >>> output = await adapter.generate("a red fox in snow", 10, spec)

See Also
--------
- imageharvest.core.dispatcher: chooses a provider and normalizes results
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import httpx

from imageharvest.core.config import HarvestConfig
from imageharvest.core.errors import ProviderError
from imageharvest.core.models import ErrorCode, ProviderOutput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSpec:
    """One catalog entry.

    Attributes:
        name: User-facing provider name, as sent in ``providers``.
        type: Provider type resolved through the registry.
        model: Upstream model identifier.
        url: Endpoint URL (adapters fall back to their default when empty).
        label: Display name.
    """

    name: str
    type: str
    model: str
    url: str = ""
    label: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "type": self.type,
            "model": self.model,
            "label": self.label or self.name,
        }


DEFAULT_CATALOG: tuple[ProviderSpec, ...] = (
    ProviderSpec("flux", "dezgo", "flux_1_schnell", "https://api.dezgo.com/text2image_flux", "Flux"),
    ProviderSpec("juggernaut", "dezgo", "juggernautxl_1024px", "https://api.dezgo.com/text2image_sdxl", "Juggernaut XL"),
    ProviderSpec("dreamshaper", "dezgo", "dreamshaperxl_1024px", "https://api.dezgo.com/text2image_sdxl", "DreamShaper XL"),
    ProviderSpec(
        "dreamshaperLighting",
        "dezgo",
        "dreamshaperxl_lightning_1024px",
        "https://api.dezgo.com/text2image_sdxl_lightning",
        "DreamShaper XL Lightning",
    ),
    ProviderSpec("realisticvision", "dezgo", "realistic_vision_5_1", "https://api.dezgo.com/text2image", "Realistic Vision"),
    ProviderSpec("redshift", "dezgo", "redshift_diffusion_768px", "https://api.dezgo.com/text2image", "Redshift"),
    ProviderSpec("stablediffusion", "stability", "stablediffusion_2_1_512px", "https://api.dezgo.com/text2image", "Stable Diffusion"),
    ProviderSpec("dalle3", "openai", "dall-e-3", "", "DALL-E 3"),
    ProviderSpec("dalle2", "openai", "dall-e-2", "", "DALL-E 2"),
    ProviderSpec("grok", "grok", "grok-2-image", "", "Grok"),
)


def load_catalog(providers_file: Path | None = None) -> dict[str, ProviderSpec]:
    """Build the provider catalog.

    Starts from :data:`DEFAULT_CATALOG`; entries in *providers_file* (a JSON
    list of objects with ``name``, ``type``, ``model`` and optional ``url`` /
    ``label``) are added or override defaults with the same name.

    Raises:
        ValueError: If the file is not a list of valid entries.
    """
    catalog = {spec.name: spec for spec in DEFAULT_CATALOG}
    if providers_file is None:
        return catalog

    with open(providers_file, encoding="utf-8") as handle:
        raw = json.load(handle)
    if not isinstance(raw, list):
        raise ValueError(f"{providers_file}: expected a JSON list of providers")

    for item in raw:
        try:
            spec = ProviderSpec(
                name=item["name"],
                type=item["type"],
                model=item["model"],
                url=item.get("url", ""),
                label=item.get("label", ""),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"{providers_file}: invalid provider entry {item!r}") from e
        catalog[spec.name] = spec

    logger.info("Loaded %d provider entries from %s", len(raw), providers_file)
    return catalog


def error_for_status(response: httpx.Response, service: str) -> ProviderError:
    """Map a non-2xx upstream response to a :class:`ProviderError`."""
    status = response.status_code
    if status == 400:
        return ProviderError(ErrorCode.INVALID_PARAMS.value, f"Invalid request to {service} API")
    if status in (401, 403):
        return ProviderError(ErrorCode.AUTH_FAILED.value, f"{service} API authentication failed")
    if status == 429:
        return ProviderError(
            ErrorCode.RATE_LIMITED.value, f"{service} API rate limit exceeded", retryable=True
        )
    if status >= 500:
        return ProviderError(
            ErrorCode.PROVIDER_ERROR.value,
            f"{service} API server error ({status})",
            retryable=True,
        )
    return ProviderError(ErrorCode.PROVIDER_ERROR.value, f"{service} API returned HTTP {status}")


class ProviderBase(ABC):
    """Abstract base class for provider adapters.

    Attributes
    ----------
    name : str
        Adapter name used for logging
    types : tuple[str, ...]
        Provider types this adapter serves
    """

    name: str = "Base Provider"
    types: tuple[str, ...] = ()

    def __init__(self, config: HarvestConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client

    @abstractmethod
    async def generate(self, prompt: str, guidance: int, spec: ProviderSpec) -> ProviderOutput:
        """Generate one image.

        Args:
            prompt: Prompt text.
            guidance: Requested guidance.
            spec: Catalog entry naming the model and endpoint.

        Returns:
            The image bytes plus the model and guidance the service actually used.

        Raises:
            ProviderError: On any upstream or payload failure.
        """


class ProviderRegistry:
    """Static lookup table from provider type to adapter class."""

    def __init__(self) -> None:
        self._adapters: dict[str, type[ProviderBase]] = {}

    def register(self, adapter_class: type[ProviderBase], *aliases: str) -> None:
        """Register *adapter_class* for its declared types plus *aliases*."""
        for provider_type in (*adapter_class.types, *aliases):
            if provider_type in self._adapters:
                logger.warning("Provider type '%s' is already registered, overwriting", provider_type)
            self._adapters[provider_type] = adapter_class
            logger.debug("Registered provider type %s -> %s", provider_type, adapter_class.name)

    def get_adapter_class(self, provider_type: str) -> type[ProviderBase] | None:
        return self._adapters.get(provider_type)

    def instantiate(
        self, provider_type: str, config: HarvestConfig, client: httpx.AsyncClient
    ) -> ProviderBase:
        """Create an adapter for *provider_type*.

        Raises:
            KeyError: If the type is not registered.
        """
        adapter_class = self._adapters.get(provider_type)
        if adapter_class is None:
            available = ", ".join(self.list_available())
            raise KeyError(f"Provider type '{provider_type}' not found. Available types: {available}")
        return adapter_class(config, client)

    def list_available(self) -> list[str]:
        return sorted(self._adapters)

    def describe(self) -> dict[str, str]:
        """Map each registered type to the adapter that serves it."""
        return {provider_type: cls.name for provider_type, cls in sorted(self._adapters.items())}


# Global provider registry; adapters register themselves on import.
provider_registry = ProviderRegistry()
