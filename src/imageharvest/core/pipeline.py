"""End-to-end processing of one admitted generation request.

:class:`GenerationPipeline` is the queue's worker.  For each request it:

1. dispatches to one provider (or to every requested provider when fan-out
   is enabled);
2. persists each successful result through the two-store saga;
3. builds the per-provider result views returned to the caller;
4. schedules tagging for each persisted image.

Provider and persistence failures become failure views; they never reject
the request's future.  The views are built before tagging is scheduled, so
tagging cannot change what the caller receives.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from imageharvest.core.dispatcher import ProviderDispatcher
from imageharvest.core.errors import PersistenceError
from imageharvest.core.models import GenerationRequest, PipelineResult, ProviderResult, StoredImage
from imageharvest.core.persistence import PersistenceCoordinator
from imageharvest.core.queue import QueueManager
from imageharvest.core.tagging import TaggingService

logger = logging.getLogger(__name__)


def failure_view(provider: str, error: str) -> dict[str, Any]:
    return {"provider": provider, "success": False, "error": error}


def success_view(image: StoredImage) -> dict[str, Any]:
    return {
        "provider": image.provider,
        "success": True,
        "imageId": image.id,
        "imageUrl": image.image_url,
        "model": image.model,
        "guidance": image.guidance,
        "tags": [],
        "taggedAt": None,
        "taggingMetadata": None,
    }


class GenerationPipeline:
    """Queue worker plus the submit entry point.

    Args:
        queue: Serializes requests; :meth:`process` is its worker.
        dispatcher: Chooses and calls providers.
        persistence: Stores successful results.
        tagging: Enriches stored images in the background.  Optional.
        fanout: Call every requested provider instead of one chosen at random.
    """

    def __init__(
        self,
        queue: QueueManager,
        dispatcher: ProviderDispatcher,
        persistence: PersistenceCoordinator,
        tagging: TaggingService | None = None,
        *,
        fanout: bool = False,
    ) -> None:
        self.queue = queue
        self.dispatcher = dispatcher
        self.persistence = persistence
        self.tagging = tagging
        self.fanout = fanout

    def start(self) -> None:
        self.queue.start(self.process)

    async def submit(self, request: GenerationRequest) -> PipelineResult:
        """Enqueue *request* and wait for its result.

        Raises:
            QueueError: The queue is full, shutting down, or the entry timed out.
        """
        future = self.queue.enqueue(request)
        return await future

    async def process(self, request: GenerationRequest) -> PipelineResult:
        started = time.monotonic()
        logger.info(
            "Processing %s: providers=%s guidance=%d",
            request.request_id,
            ",".join(sorted(request.providers)),
            request.guidance,
        )

        if self.fanout and len(request.providers) > 1:
            provider_results = await self.dispatcher.dispatch_all(
                request.providers, request.prompt, request.guidance, request.user_id
            )
        else:
            provider_results = [
                await self.dispatcher.dispatch(
                    request.providers, request.prompt, request.guidance, request.user_id
                )
            ]

        views: list[dict[str, Any]] = []
        stored_images: list[StoredImage] = []
        for result in provider_results:
            view, stored = await self._handle_result(result, request)
            views.append(view)
            if stored is not None:
                stored_images.append(stored)

        duration_ms = int((time.monotonic() - started) * 1000)
        pipeline_result = PipelineResult(
            success=any(view["success"] for view in views),
            request_id=request.request_id,
            results=views,
            duration_ms=duration_ms,
        )

        for image in stored_images:
            self._schedule_tagging(image, request)

        logger.info(
            "Finished %s in %dms (%d/%d succeeded)",
            request.request_id,
            duration_ms,
            len(stored_images),
            len(views),
        )
        return pipeline_result

    async def _handle_result(
        self, result: ProviderResult, request: GenerationRequest
    ) -> tuple[dict[str, Any], StoredImage | None]:
        if not result.success:
            message = result.error.message if result.error else "Generation failed"
            return failure_view(result.provider, message), None

        try:
            stored = await self.persistence.persist(result, request)
        except PersistenceError as e:
            logger.error("Persistence failed for %s/%s: %s", request.request_id, result.provider, e)
            return failure_view(result.provider, str(e)), None

        return success_view(stored), stored

    def _schedule_tagging(self, image: StoredImage, request: GenerationRequest) -> None:
        if self.tagging is None:
            return
        self.tagging.tag_async(
            image.id,
            request.prompt,
            {
                "requestId": request.request_id,
                "provider": image.provider,
                "model": image.model,
                "guidance": image.guidance,
                "userId": request.user_id,
            },
        )
