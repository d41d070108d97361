"""Per-identity admission control for generation requests.

Each identity (an authenticated user id, or the client IP for anonymous
callers) owns a fixed-window counter kept by :mod:`limits`.  The window
starts with the identity's first request; once the counter exceeds
``max_requests`` the request is rejected with the number of seconds left in
the window.  Expired counters are dropped by the storage backend.

Checking admission consumes quota.  Callers must call :meth:`admit` exactly
once per request.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Iterable

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter

from imageharvest.core.config import HarvestConfig
from imageharvest.core.models import AdmissionDecision, Allowed, RateLimitRecord, Rejected

logger = logging.getLogger(__name__)

NAMESPACE = "harvest"


def resolve_identity(user_id: str | None, ip: str | None) -> str:
    """Return the rate-limit key: the user id wins over the IP address."""
    if user_id:
        return f"user:{user_id}"
    if ip:
        return f"ip:{ip}"
    return "anonymous"


class AdmissionController:
    """Fixed-window rate limiter keyed by identity.

    Args:
        max_requests: Requests allowed per window.
        window_seconds: Window length, rounded up to whole seconds.
        bypass_identities: Identities that are never limited.
        storage: Counter backend.  In-process memory by default.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        *,
        bypass_identities: Iterable[str] = (),
        storage: Storage | None = None,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = max(1, math.ceil(window_seconds))
        self.bypass_identities = frozenset(bypass_identities)
        self.storage = storage or MemoryStorage()
        self._limiter = FixedWindowRateLimiter(self.storage)
        self._item = RateLimitItemPerSecond(max_requests, self.window_seconds, namespace=NAMESPACE)

    @classmethod
    def from_config(cls, config: HarvestConfig, **kwargs) -> AdmissionController:
        return cls(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
            bypass_identities=config.admin_identities,
            **kwargs,
        )

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000

    def record(self, identity: str) -> RateLimitRecord:
        """Current counter state for *identity*."""
        stats = self._limiter.get_window_stats(self._item, identity)
        count = self.storage.get(self._item.key_for(identity))
        return RateLimitRecord(
            key=identity,
            window_start=stats.reset_time - self.window_seconds,
            count=count,
        )

    def admit(self, identity: str) -> AdmissionDecision:
        """Count one request for *identity* and decide whether it may proceed."""
        if identity in self.bypass_identities:
            return Allowed(
                limit=self.max_requests,
                remaining=self.max_requests,
                reset_after=0,
                bypass=True,
            )

        admitted = self._limiter.hit(self._item, identity)
        record = self.record(identity)
        reset_after = max(1, math.ceil(record.window_start + self.window_seconds - time.time()))

        if not admitted:
            logger.warning(
                "Rate limit exceeded for %s: %d/%d requests",
                identity,
                record.count,
                self.max_requests,
            )
            return Rejected(
                retry_after=min(reset_after, self.window_seconds),
                limit=self.max_requests,
                window_ms=self.window_ms,
            )

        return Allowed(
            limit=self.max_requests,
            remaining=max(self.max_requests - record.count, 0),
            reset_after=min(reset_after, self.window_seconds),
        )
