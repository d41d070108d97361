"""Pydantic request models for the Image Harvest API.

Fields are deliberately loose (``Any``): type and range checks belong to
:class:`~imageharvest.core.validation.RequestValidator`, which reports every
violation with a human-readable message instead of FastAPI's 422 payload.

Models
------
GenerateRequest
    Payload for ``POST /api/images/generate``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/images/generate`` endpoint.

    Attributes:
        prompt: Text to generate an image from.
        providers: Provider names from ``GET /api/providers``, as a list or a
            comma-separated string.  One is chosen at random.
        guidance: Optional guidance scale.  The server default is used when
            omitted.
        prompt_id: Optional client-side id of the prompt (``promptId``).
        original: The prompt as the user typed it, before any client-side
            rewriting.  Defaults to ``prompt``.
    """

    model_config = ConfigDict(populate_by_name=True)

    prompt: Any = Field(
        default=None,
        description="Prompt text (required, at most the configured maximum length).",
    )
    providers: Any = Field(
        default=None,
        description="Provider names, e.g. ['flux', 'dalle3'] or 'flux,dalle3'.",
    )
    guidance: Any = Field(
        default=None,
        description="Guidance scale within the configured bounds (default 10).",
    )
    prompt_id: str | None = Field(
        default=None,
        alias="promptId",
        description="Client-side prompt identifier stored with the image.",
    )
    original: str | None = Field(
        default=None,
        description="Unmodified user prompt; defaults to the prompt.",
    )
