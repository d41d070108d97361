"""Dezgo adapter (Flux, SDXL, SD 1.x/2.x endpoints).

Dezgo answers with raw image bytes.  Flux endpoints take no guidance, so the
requested value is reported back unchanged; Lightning endpoints run at a fixed
low guidance; everything else is clamped into Dezgo's accepted range.
"""

from __future__ import annotations

import logging
import random

import httpx

from imageharvest.core.errors import ProviderError
from imageharvest.core.models import ErrorCode, ProviderOutput
from imageharvest.providers.base import ProviderBase, ProviderSpec, error_for_status, provider_registry

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://api.dezgo.com/text2image"
LIGHTNING_GUIDANCE = 2
MIN_GUIDANCE = 1
MAX_GUIDANCE = 20


def is_flux(url: str) -> bool:
    return "flux" in url.lower()


def is_lightning(url: str, model: str) -> bool:
    return "lightning" in url.lower() or "lightning" in model.lower()


def compute_guidance(url: str, model: str, guidance: int) -> int:
    """Return the guidance Dezgo will actually run with."""
    if is_lightning(url, model):
        return LIGHTNING_GUIDANCE
    return min(max(guidance, MIN_GUIDANCE), MAX_GUIDANCE)


class DezgoProvider(ProviderBase):
    name = "Dezgo"
    types = ("dezgo",)

    async def generate(self, prompt: str, guidance: int, spec: ProviderSpec) -> ProviderOutput:
        if not self.config.dezgo_api_key:
            raise ProviderError(ErrorCode.AUTH_FAILED.value, "Dezgo API key is not configured")

        url = spec.url or DEFAULT_URL
        headers = {"X-Dezgo-Key": self.config.dezgo_api_key, "Accept": "image/*"}

        if is_flux(url):
            form = {
                "prompt": prompt,
                "width": "1024",
                "height": "1024",
                "steps": "4",
                "format": "png",
            }
            used_guidance = guidance
        else:
            used_guidance = compute_guidance(url, spec.model, guidance)
            form = {
                "prompt": prompt,
                "negative_prompt": "",
                "seed": str(random.randint(100_000_000, 999_999_999)),
                "model": spec.model,
                "guidance": str(used_guidance),
            }

        try:
            response = await self.client.post(url, data=form, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderError(ErrorCode.TIMEOUT.value, "Dezgo request timed out", retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                ErrorCode.NETWORK_ERROR.value, f"Dezgo request failed: {e}", retryable=True
            ) from e

        if response.is_error:
            logger.error("Dezgo returned HTTP %d for model %s", response.status_code, spec.model)
            raise error_for_status(response, "Dezgo")

        content_type = response.headers.get("content-type", "")
        if not response.content or not content_type.startswith("image/"):
            raise ProviderError(
                ErrorCode.INVALID_RESPONSE.value,
                f"Dezgo returned no image data (content-type {content_type or 'missing'})",
            )

        return ProviderOutput(data=response.content, model=spec.model, guidance=used_guidance)


# stability shares the Dezgo handler; there is no dedicated Stability adapter.
provider_registry.register(DezgoProvider, "stability")
