"""Fire-and-forget tagging of stored images.

:meth:`TaggingService.tag_async` schedules a background task and returns at
once.  The task asks an OpenAI-compatible chat completions endpoint for tags
through function calling, retrying a few times with a linear back-off.  When
that path fails, or no API key is configured, tags are derived from the
prompt text instead.  The result is written to the image row together with
a ``tagging_metadata`` record describing how the tags were produced.

Nothing raised inside a tagging task reaches the caller of
:meth:`tag_async`.  Every failure is logged and dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any

import httpx
from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_incrementing

from imageharvest.core.config import HarvestConfig
from imageharvest.core.errors import TaggingError
from imageharvest.storage.metadata import ImageRepository

logger = logging.getLogger(__name__)

TAG_FUNCTION_NAME = "generate_image_tags"
MAX_TAGS = 10
MIN_TAGS = 2
MAX_TAG_LENGTH = 50
MAX_FALLBACK_WORDS = 8

SYSTEM_PROMPT = (
    "You are an expert at analyzing image generation prompts and extracting relevant "
    "tags. Generate 2-10 descriptive tags that would help categorize and search for "
    "images based on the prompt."
)

TAG_FUNCTION_SCHEMA = {
    "name": TAG_FUNCTION_NAME,
    "description": "Generate relevant tags for an image based on its generation prompt",
    "parameters": {
        "type": "object",
        "properties": {
            "tags": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Array of 2-10 descriptive tags for the image",
                "minItems": MIN_TAGS,
                "maxItems": MAX_TAGS,
            }
        },
        "required": ["tags"],
    },
}

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from up about into through
    during before after above below between among is are was were be been being
    have has had do does did will would could should may might must can
    """.split()
)

# (tag, substrings that trigger it)
CONTEXT_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    # art style
    ("painting", ("painting",)),
    ("photography", ("photograph", "photo")),
    ("digital-art", ("digital art",)),
    ("sketch", ("sketch",)),
    ("watercolor", ("watercolor",)),
    # subject
    ("portrait", ("portrait",)),
    ("landscape", ("landscape",)),
    ("animal", ("animal",)),
    ("architecture", ("building", "architecture")),
    # mood
    ("dark", ("dark", "gloomy")),
    ("bright", ("bright", "vibrant")),
    ("peaceful", ("peaceful", "calm")),
    ("dramatic", ("dramatic",)),
)


def clean_tags(tags: Any) -> list[str]:
    """Normalize model output into at most ten lowercase tags.

    Raises:
        TaggingError: If fewer than two usable tags remain.
    """
    if not isinstance(tags, list):
        raise TaggingError("Tags must be a list")
    cleaned: list[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        tag = tag.strip().lower()
        if tag and len(tag) <= MAX_TAG_LENGTH:
            cleaned.append(tag)
    cleaned = cleaned[:MAX_TAGS]
    if len(cleaned) < MIN_TAGS:
        raise TaggingError("Model returned insufficient tags")
    return cleaned


def contextual_tags(prompt: str) -> list[str]:
    """Style, subject and mood tags implied by words in *prompt*."""
    lowered = prompt.lower()
    return [tag for tag, needles in CONTEXT_RULES if any(n in lowered for n in needles)]


def fallback_tags(prompt: str) -> list[str]:
    """Derive tags from the prompt text alone."""
    if not prompt:
        return []
    words = re.sub(r"[^\w\s]", " ", prompt.lower()).split()
    keywords = [w for w in words if len(w) > 2 and w not in STOP_WORDS][:MAX_FALLBACK_WORDS]
    # dict.fromkeys keeps first-seen order while dropping duplicates
    return list(dict.fromkeys(keywords + contextual_tags(prompt)))[:MAX_TAGS]


class TaggingService:
    """Background tag generation for stored images.

    Args:
        repository: Receives the tag update.
        client: HTTP client for the chat completions call.
        api_key: Chat completions API key.  Empty means fallback tags only.
        base_url: Root URL of the OpenAI-compatible API.
        model: Chat model name.
        max_retries: LLM attempts before falling back.
        retry_delay: Seconds; attempt ``n`` waits ``retry_delay * n`` before the next.
        timeout: Seconds for one chat completions call.
        enabled: When false, :meth:`tag_async` does nothing.
    """

    def __init__(
        self,
        repository: ImageRepository,
        client: httpx.AsyncClient | None = None,
        *,
        api_key: str = "",
        base_url: str = "https://api.openai.com",
        model: str = "gpt-3.5-turbo",
        max_retries: int = 2,
        retry_delay: float = 2.0,
        timeout: float = 30.0,
        enabled: bool = True,
    ) -> None:
        self.repository = repository
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.enabled = enabled
        self._in_progress: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

        if enabled and not api_key:
            logger.warning("No tagging API key configured, tags will come from prompt text only")

    @classmethod
    def from_config(
        cls,
        config: HarvestConfig,
        repository: ImageRepository,
        client: httpx.AsyncClient | None = None,
    ) -> TaggingService:
        return cls(
            repository,
            client,
            api_key=config.tagging_api_key,
            base_url=config.tagging_base_url,
            model=config.tagging_model,
            max_retries=config.tagging_max_retries,
            retry_delay=config.tagging_retry_delay,
            timeout=config.tagging_timeout,
            enabled=config.tagging_enabled,
        )

    def is_tagging(self, image_id: str) -> bool:
        return image_id in self._in_progress

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def tag_async(
        self, image_id: str, prompt: str, metadata: dict[str, Any] | None = None
    ) -> asyncio.Task | None:
        """Schedule tagging for *image_id* and return immediately.

        Returns the scheduled task, or ``None`` when tagging is disabled or
        the image is already being tagged.
        """
        if not self.enabled:
            return None
        if image_id in self._in_progress:
            logger.debug("Tagging already in progress for image %s", image_id)
            return None

        self._in_progress.add(image_id)
        task = asyncio.create_task(
            self._run(image_id, prompt, dict(metadata or {})), name=f"tag-{image_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every scheduled tagging task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, image_id: str, prompt: str, metadata: dict[str, Any]) -> None:
        try:
            llm_error = await self._try_llm(image_id, prompt, metadata)
            if llm_error is not None:
                await self._try_fallback(image_id, prompt, metadata, llm_error)
        except asyncio.CancelledError:
            logger.info("Tagging for image %s cancelled", image_id)
            raise
        except Exception:
            logger.exception("Tagging failed for image %s (ignored)", image_id)
        finally:
            self._in_progress.discard(image_id)

    async def _try_llm(
        self, image_id: str, prompt: str, metadata: dict[str, Any]
    ) -> Exception | None:
        """Run the LLM attempts.  Returns the last error, or ``None`` on success."""
        if not self.api_key or self.client is None:
            return TaggingError("Tagging API key not configured")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    tags = await self.generate_tags(prompt)
                    await self._store(image_id, tags, metadata, attempt=number, service="openai")
                    logger.info("Tagged image %s with %d tags (attempt %d)", image_id, len(tags), number)
        except Exception as e:
            logger.warning(
                "Tagging image %s failed after %d attempts: %s", image_id, self.max_retries, e
            )
            return e
        return None

    async def _try_fallback(
        self, image_id: str, prompt: str, metadata: dict[str, Any], llm_error: Exception
    ) -> None:
        tags = fallback_tags(prompt)
        await self._store(
            image_id, tags, metadata, attempt="fallback", service="fallback", llm_error=llm_error
        )
        logger.info("Tagged image %s with %d fallback tags", image_id, len(tags))

    async def _store(
        self,
        image_id: str,
        tags: list[str],
        metadata: dict[str, Any],
        *,
        attempt: int | str,
        service: str,
        llm_error: Exception | None = None,
    ) -> None:
        tagging_metadata = build_tagging_metadata(metadata, attempt, service, llm_error)
        updated = await self.repository.update_tags(image_id, tags, datetime.now(), tagging_metadata)
        if not updated:
            raise TaggingError(f"Image {image_id} not found")

    async def generate_tags(self, prompt: str) -> list[str]:
        """Ask the chat model for tags.

        Raises:
            TaggingError: On an empty prompt, a malformed response or too few tags.
            httpx.HTTPError: On transport or HTTP status failures.
        """
        if not prompt or not prompt.strip():
            raise TaggingError("Empty prompt provided")

        response = await self.client.post(
            f"{self.base_url}/v1/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": f'Analyze this image generation prompt and generate relevant tags: "{prompt}"',
                    },
                ],
                "tools": [{"type": "function", "function": TAG_FUNCTION_SCHEMA}],
                "tool_choice": {"type": "function", "function": {"name": TAG_FUNCTION_NAME}},
                "temperature": 0.3,
                "max_tokens": 200,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        return clean_tags(extract_tags(response.json()))


def extract_tags(payload: dict[str, Any]) -> Any:
    """Pull the ``tags`` argument out of a chat completions response."""
    try:
        message = payload["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise TaggingError("Malformed chat completions response") from e

    call = None
    tool_calls = message.get("tool_calls") or []
    if tool_calls:
        call = tool_calls[0].get("function")
    elif message.get("function_call"):
        call = message["function_call"]

    if not call or call.get("name") != TAG_FUNCTION_NAME:
        raise TaggingError("Model did not return the expected function call")

    try:
        arguments = json.loads(call.get("arguments") or "{}")
    except json.JSONDecodeError as e:
        raise TaggingError("Function call arguments are not valid JSON") from e
    return arguments.get("tags", [])


def build_tagging_metadata(
    metadata: dict[str, Any],
    attempt: int | str,
    service: str,
    llm_error: Exception | None = None,
) -> dict[str, Any]:
    """Describe how a set of tags was produced."""
    result = {
        **metadata,
        "timestamp": datetime.now().isoformat(),
        "attempt": attempt,
        "service": f"image-harvest-{service}",
        "method": "function-calling" if service == "openai" else "text-processing",
    }
    if llm_error is not None:
        result["openaiError"] = str(llm_error)
    return result
