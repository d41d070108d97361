"""Exception hierarchy for the generation pipeline.

Validation and admission errors are raised before a request touches any
resource.  Provider and persistence errors are caught at their component
boundary and turned into failure entries.  Tagging errors never leave the
tagging service.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imageharvest.core.models import Rejected


class HarvestError(Exception):
    """Base class for every pipeline error."""


class ValidationError(HarvestError):
    """Caller input violates one or more constraints.

    Attributes:
        errors: Every violation found, in check order.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Validation failed")


class AdmissionRejected(HarvestError):
    """The identity exceeded its request quota."""

    def __init__(self, decision: Rejected) -> None:
        self.decision = decision
        super().__init__(f"Rate limit exceeded, retry after {decision.retry_after}s")


class ProviderError(HarvestError):
    """A provider call failed.

    Attributes:
        code: One of the :class:`~imageharvest.core.models.ErrorCode` values.
        retryable: Whether a caller-side retry could plausibly succeed.
    """

    def __init__(self, code: str, message: str, *, retryable: bool = False) -> None:
        self.code = code
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class PersistenceError(HarvestError):
    """Blob or metadata write failed."""


class TaggingError(HarvestError):
    """Tag generation or the tag update failed."""


class QueueError(HarvestError):
    """Base class for queue failures."""


class QueueFullError(QueueError):
    """The queue reached ``max_queue_size``."""


class QueueTimeoutError(QueueError):
    """An entry exceeded ``task_timeout`` inside the worker."""


class QueueShutdownError(QueueError):
    """The queue is shutting down and no longer accepts or runs entries."""
