"""Provider selection and invocation.

:class:`ProviderDispatcher` turns a set of requested provider names into a
single :class:`ProviderResult`:

1. One name is chosen uniformly at random from the requested set.  The random
   source is injected so tests can make the choice deterministic.
2. The name is resolved through the catalog to a :class:`ProviderSpec`, and
   the spec's type through the provider registry to an adapter.
3. The adapter call is bounded by ``timeout``.
4. Success and every kind of failure are normalized to the same shape.

The dispatcher never retries.  Retry policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Collection, Mapping

import httpx

from imageharvest.core.config import HarvestConfig
from imageharvest.core.errors import ProviderError
from imageharvest.core.models import ErrorCode, ProviderResult
from imageharvest.providers.base import ProviderBase, ProviderRegistry, ProviderSpec

logger = logging.getLogger(__name__)

MAX_CONCURRENT_FANOUT = 5


class ProviderDispatcher:
    """Chooses a provider and invokes it.

    Args:
        catalog: Provider name to catalog entry.
        registry: Provider type to adapter class.
        config: Passed to adapters on construction.
        client: Shared HTTP client passed to adapters.
        rng: Random source used for selection.
        timeout: Seconds a single provider call may take.
    """

    def __init__(
        self,
        catalog: Mapping[str, ProviderSpec],
        registry: ProviderRegistry,
        config: HarvestConfig,
        client: httpx.AsyncClient,
        *,
        rng: random.Random | None = None,
        timeout: float | None = None,
    ) -> None:
        self.catalog = dict(catalog)
        self.registry = registry
        self.config = config
        self.client = client
        self.rng = rng or random.Random()
        self.timeout = timeout if timeout is not None else config.provider_timeout
        self._adapters: dict[str, ProviderBase] = {}

    def select(self, providers: Collection[str]) -> str:
        """Pick one provider name.  Names are sorted first so a seeded rng is reproducible."""
        return self.rng.choice(sorted(providers))

    async def dispatch(
        self,
        providers: Collection[str],
        prompt: str,
        guidance: int,
        user_id: str | None = None,
    ) -> ProviderResult:
        """Generate one image from one randomly chosen provider."""
        if not providers:
            return ProviderResult.failed(
                "none",
                ErrorCode.INVALID_PARAMS.value,
                "No providers supplied for image generation",
                guidance=guidance,
            )
        name = self.select(providers)
        logger.info(
            "Dispatching to provider %s (chosen from %d) for user %s",
            name,
            len(providers),
            user_id or "anonymous",
        )
        return await self.invoke(name, prompt, guidance)

    async def dispatch_all(
        self,
        providers: Collection[str],
        prompt: str,
        guidance: int,
        user_id: str | None = None,
    ) -> list[ProviderResult]:
        """Invoke every requested provider, at most five at a time."""
        slots = asyncio.Semaphore(MAX_CONCURRENT_FANOUT)

        async def bounded(name: str) -> ProviderResult:
            async with slots:
                return await self.invoke(name, prompt, guidance)

        names = sorted(providers)
        logger.info("Fanning out to %d providers for user %s", len(names), user_id or "anonymous")
        return list(await asyncio.gather(*(bounded(name) for name in names)))

    async def invoke(self, name: str, prompt: str, guidance: int) -> ProviderResult:
        """Call provider *name* and normalize the outcome."""
        spec = self.catalog.get(name)
        if spec is None:
            return ProviderResult.failed(
                name, ErrorCode.INVALID_PARAMS.value, f"Unknown provider: {name}", guidance=guidance
            )

        try:
            adapter = self._adapter_for(spec.type)
        except KeyError:
            return ProviderResult.failed(
                name,
                ErrorCode.INVALID_PARAMS.value,
                f"Unknown provider type: {spec.type}",
                guidance=guidance,
            )

        started = time.monotonic()
        try:
            output = await asyncio.wait_for(
                adapter.generate(prompt, guidance, spec), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Provider %s timed out after %.1fs", name, self.timeout)
            return ProviderResult.failed(
                name,
                ErrorCode.TIMEOUT.value,
                f"Provider {name} timed out after {self.timeout:g}s",
                guidance=guidance,
                retryable=True,
            )
        except ProviderError as e:
            logger.warning("Provider %s failed: [%s] %s", name, e.code, e.message)
            return ProviderResult.failed(
                name, e.code, e.message, guidance=guidance, retryable=e.retryable
            )
        except Exception as e:
            logger.exception("Provider %s raised an unexpected error", name)
            return ProviderResult.failed(
                name, ErrorCode.UNKNOWN.value, f"Generation failed: {e}", guidance=guidance
            )

        if not output.data:
            return ProviderResult.failed(
                name,
                ErrorCode.INVALID_RESPONSE.value,
                f"Provider {name} returned no image data",
                guidance=guidance,
            )

        logger.info(
            "Provider %s returned %d bytes in %.0fms",
            name,
            len(output.data),
            (time.monotonic() - started) * 1000,
        )
        return ProviderResult.ok(name, output)

    def _adapter_for(self, provider_type: str) -> ProviderBase:
        adapter = self._adapters.get(provider_type)
        if adapter is None:
            adapter = self.registry.instantiate(provider_type, self.config, self.client)
            self._adapters[provider_type] = adapter
        return adapter
