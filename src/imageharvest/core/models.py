"""Data models that flow through the generation pipeline."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Normalized provider failure codes."""

    INVALID_PARAMS = "INVALID_PARAMS"
    AUTH_FAILED = "AUTH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    UNKNOWN = "UNKNOWN"


class EntryState(str, Enum):
    """Lifecycle of a queued request."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


@dataclass
class GenerationRequest:
    """A validated, admitted request on its single pass through the pipeline."""

    prompt: str
    providers: frozenset[str]
    guidance: int
    original: str = ""
    prompt_id: str | None = None
    user_id: str | None = None
    request_id: str = field(default_factory=new_request_id)
    enqueued_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.original:
            self.original = self.prompt


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


@dataclass(frozen=True)
class ProviderOutput:
    """What a provider adapter returns on success."""

    data: bytes
    model: str | None
    guidance: int | None


@dataclass(frozen=True)
class ProviderResult:
    """Normalized outcome of invoking exactly one provider."""

    provider: str
    success: bool
    data: bytes | None = None
    model: str | None = None
    guidance: int | None = None
    error: ErrorInfo | None = None

    @classmethod
    def ok(cls, provider: str, output: ProviderOutput) -> ProviderResult:
        return cls(
            provider=provider,
            success=True,
            data=output.data,
            model=output.model,
            guidance=output.guidance,
        )

    @classmethod
    def failed(
        cls,
        provider: str,
        code: str,
        message: str,
        *,
        guidance: int | None = None,
        retryable: bool = False,
    ) -> ProviderResult:
        return cls(
            provider=provider,
            success=False,
            guidance=guidance,
            error=ErrorInfo(code=code, message=message, retryable=retryable),
        )


@dataclass
class StoredImage:
    """Durable image record: one metadata row backed by one blob."""

    id: str | None
    prompt: str
    original: str
    image_url: str
    provider: str
    guidance: int
    user_id: str | None = None
    prompt_id: str | None = None
    model: str | None = None
    rating: int = 0
    tags: list[str] = field(default_factory=list)
    tagging_metadata: dict[str, Any] | None = None
    tagged_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "prompt": self.prompt,
            "original": self.original,
            "promptId": self.prompt_id,
            "imageUrl": self.image_url,
            "provider": self.provider,
            "model": self.model,
            "guidance": self.guidance,
            "rating": self.rating,
            "tags": list(self.tags),
            "taggingMetadata": self.tagging_metadata,
            "taggedAt": self.tagged_at.isoformat() if self.tagged_at else None,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class RateLimitRecord:
    key: str
    window_start: float
    count: int = 0


@dataclass(frozen=True)
class Allowed:
    """Admission granted.  ``bypass`` is set for administrative identities."""

    limit: int
    remaining: int
    reset_after: int
    bypass: bool = False


@dataclass(frozen=True)
class Rejected:
    """Admission refused; ``retry_after`` is whole seconds until the window resets."""

    retry_after: int
    limit: int
    window_ms: int


AdmissionDecision = Allowed | Rejected


@dataclass
class PipelineResult:
    """What the queue future resolves to for one request."""

    success: bool
    request_id: str
    results: list[dict[str, Any]]
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "requestId": self.request_id,
            "results": self.results,
            "duration": self.duration_ms,
        }
