"""Request validation for the generation pipeline.

Validation is a pure function of the payload and the configured bounds.  It
collects every violation rather than stopping at the first one, so the HTTP
layer can report the complete list in a single 400 response.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Any

from imageharvest.core.config import HarvestConfig
from imageharvest.core.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class NormalizedInput:
    prompt: str
    providers: frozenset[str]
    guidance: int


def _split_providers(value: Any) -> list[Any] | None:
    """Return the provider entries, accepting a comma-separated string."""
    if value is None:
        return None
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return None


def _coerce_guidance(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) and value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


class RequestValidator:
    """Checks prompt, providers and guidance against configured bounds.

    Args:
        max_prompt_length: Longest accepted prompt, in characters.
        min_guidance: Inclusive lower guidance bound.
        max_guidance: Inclusive upper guidance bound.
        default_guidance: Value used when the request omits guidance.
        known_providers: Provider names accepted by the catalog.  ``None``
            disables the membership check.
    """

    def __init__(
        self,
        *,
        max_prompt_length: int = 1000,
        min_guidance: int = 1,
        max_guidance: int = 20,
        default_guidance: int = 10,
        known_providers: Collection[str] | None = None,
    ) -> None:
        self.max_prompt_length = max_prompt_length
        self.min_guidance = min_guidance
        self.max_guidance = max_guidance
        self.default_guidance = default_guidance
        self.known_providers = frozenset(known_providers) if known_providers is not None else None

    @classmethod
    def from_config(
        cls, config: HarvestConfig, known_providers: Collection[str] | None = None
    ) -> RequestValidator:
        return cls(
            max_prompt_length=config.max_prompt_length,
            min_guidance=config.min_guidance,
            max_guidance=config.max_guidance,
            default_guidance=config.default_guidance,
            known_providers=known_providers,
        )

    def validate(
        self,
        prompt: Any,
        providers: Any,
        guidance: Any = None,
    ) -> ValidationResult:
        """Validate one request payload.

        Args:
            prompt: Prompt text.
            providers: List of provider names, or a comma-separated string.
            guidance: Optional guidance value; ``None`` means "use the default".

        Returns:
            A :class:`ValidationResult` listing every violation found.
        """
        errors: list[str] = []

        # --- Prompt --------------------------------------------------------
        if prompt is None or (isinstance(prompt, str) and not prompt.strip()):
            errors.append("Prompt is required")
        elif not isinstance(prompt, str):
            errors.append("Prompt must be a string")
        elif len(prompt) > self.max_prompt_length:
            errors.append(
                f"Prompt exceeds maximum length of {self.max_prompt_length} characters"
            )

        # --- Providers -----------------------------------------------------
        entries = _split_providers(providers)
        if not entries:
            errors.append("At least one provider must be selected")
        elif not all(isinstance(p, str) and p.strip() for p in entries):
            errors.append("Providers must be strings")
        elif self.known_providers is not None:
            unknown = sorted({p for p in entries if p not in self.known_providers})
            if unknown:
                errors.append(f"Invalid providers: {', '.join(unknown)}")

        # --- Guidance ------------------------------------------------------
        if guidance is not None:
            value = _coerce_guidance(guidance)
            if value is None and isinstance(guidance, float) and math.isfinite(guidance):
                errors.append("Guidance must be a whole number")
            elif value is None:
                errors.append("Guidance must be a number")
            elif value < self.min_guidance or value > self.max_guidance:
                errors.append(
                    f"Guidance must be between {self.min_guidance} and {self.max_guidance}"
                )

        if errors:
            logger.debug("Request rejected by validation: %s", errors)
        return ValidationResult(is_valid=not errors, errors=errors)

    def normalize(self, prompt: Any, providers: Any, guidance: Any = None) -> NormalizedInput:
        """Validate and return cleaned values.

        Raises:
            ValidationError: With the full list of violations.
        """
        result = self.validate(prompt, providers, guidance)
        if not result.is_valid:
            raise ValidationError(result.errors)

        entries = _split_providers(providers) or []
        resolved_guidance = (
            self.default_guidance if guidance is None else _coerce_guidance(guidance)
        )
        return NormalizedInput(
            prompt=prompt.strip(),
            providers=frozenset(p.strip() for p in entries),
            guidance=resolved_guidance,
        )
