"""Core components of the generation request pipeline.

A request passes through these layers in order:

1. **Validation** (validation.py): prompt, providers and guidance checks.
2. **Admission** (admission.py): per-identity fixed-window rate limiting.
3. **Queue** (queue.py): FIFO entries with one future each, drained by a
   bounded-concurrency worker loop.
4. **Dispatch** (dispatcher.py): random provider selection and a bounded,
   normalized provider call.
5. **Persistence** (persistence.py): blob write then metadata write, with
   the blob removed again if the metadata write fails.
6. **Tagging** (tagging.py): background enrichment that never affects the
   returned result.

pipeline.py ties steps 4-6 together as the queue's worker.  config.py,
errors.py and models.py are shared by every layer.

Usage Example
-------------
    from imageharvest.core import config

    print(config.rate_limit_max_requests)

See Also
--------
- imageharvest.providers: provider adapters and the catalog
- imageharvest.storage: blob and metadata stores
"""

from imageharvest.core.config import HarvestConfig, config
from imageharvest.core.errors import (
    AdmissionRejected,
    HarvestError,
    PersistenceError,
    ProviderError,
    QueueError,
    TaggingError,
    ValidationError,
)

__all__ = [
    "AdmissionRejected",
    "HarvestConfig",
    "HarvestError",
    "PersistenceError",
    "ProviderError",
    "QueueError",
    "TaggingError",
    "ValidationError",
    "config",
]
