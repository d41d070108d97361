"""OpenAI-compatible image generation adapters (DALL-E and Grok).

Both services accept a JSON body on ``/v1/images/generations`` and answer with
base64 image data.  Neither takes a guidance parameter, so the requested value
is reported back unchanged.
"""

from __future__ import annotations

import base64
import binascii
import logging

import httpx

from imageharvest.core.errors import ProviderError
from imageharvest.core.models import ErrorCode, ProviderOutput
from imageharvest.providers.base import ProviderBase, ProviderSpec, error_for_status, provider_registry

logger = logging.getLogger(__name__)

GENERATIONS_PATH = "/v1/images/generations"


class OpenAIImageProvider(ProviderBase):
    name = "OpenAI Images"
    types = ("openai",)
    service = "OpenAI"

    def _credentials(self) -> tuple[str, str]:
        return self.config.openai_base_url, self.config.openai_api_key

    def _payload(self, prompt: str, spec: ProviderSpec) -> dict:
        payload = {
            "model": spec.model,
            "prompt": prompt,
            "n": 1,
            "response_format": "b64_json",
        }
        if spec.model != "dall-e-2":
            payload["size"] = "1024x1024"
        return payload

    async def generate(self, prompt: str, guidance: int, spec: ProviderSpec) -> ProviderOutput:
        base_url, api_key = self._credentials()
        if not api_key:
            raise ProviderError(ErrorCode.AUTH_FAILED.value, f"{self.service} API key is not configured")

        url = spec.url or f"{base_url.rstrip('/')}{GENERATIONS_PATH}"
        try:
            response = await self.client.post(
                url,
                json=self._payload(prompt, spec),
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.TimeoutException as e:
            raise ProviderError(
                ErrorCode.TIMEOUT.value, f"{self.service} request timed out", retryable=True
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                ErrorCode.NETWORK_ERROR.value, f"{self.service} request failed: {e}", retryable=True
            ) from e

        if response.is_error:
            logger.error("%s returned HTTP %d for model %s", self.service, response.status_code, spec.model)
            raise error_for_status(response, self.service)

        try:
            entries = response.json().get("data") or []
            encoded = entries[0]["b64_json"]
            data = base64.b64decode(encoded, validate=True)
        except (ValueError, KeyError, IndexError, TypeError, AttributeError, binascii.Error) as e:
            raise ProviderError(
                ErrorCode.INVALID_RESPONSE.value, f"{self.service} response did not include image data"
            ) from e

        return ProviderOutput(data=data, model=spec.model, guidance=guidance)


class GrokProvider(OpenAIImageProvider):
    name = "Grok Images"
    types = ("grok",)
    service = "Grok"

    def _credentials(self) -> tuple[str, str]:
        return self.config.grok_base_url, self.config.grok_api_key

    def _payload(self, prompt: str, spec: ProviderSpec) -> dict:
        return {
            "model": spec.model,
            "prompt": prompt,
            "n": 1,
            "response_format": "b64_json",
        }


provider_registry.register(OpenAIImageProvider)
provider_registry.register(GrokProvider)
