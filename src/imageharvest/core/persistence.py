"""Two-store persistence for generated images.

A successful :class:`ProviderResult` becomes a :class:`StoredImage` in two
steps that share no transaction:

1. the image bytes are written to blob storage, which returns a URL;
2. a metadata row referencing that URL is inserted.

If step 2 fails, the blob from step 1 is deleted before the error is
raised, so a blob never outlives a failed request.  A failed delete is
logged and does not replace the original error.

Cancellation (a queue timeout or shutdown) during step 2 rolls back both
stores.  The insert runs in its own task, so it may still commit after the
caller was cancelled; the rollback waits for it, removes any row it wrote,
then removes the blob.  The rollback is shielded and always runs to the end.
"""

from __future__ import annotations

import asyncio
import logging

from imageharvest.core.errors import PersistenceError
from imageharvest.core.models import GenerationRequest, ProviderResult, StoredImage
from imageharvest.storage.blob import BlobStorage, make_filename
from imageharvest.storage.metadata import ImageRepository

logger = logging.getLogger(__name__)

DEFAULT_GUIDANCE = 10


class PersistenceCoordinator:
    """Write a provider result to blob storage and the metadata store.

    Args:
        blob_storage: Where image bytes go.
        repository: Where metadata rows go.
        default_guidance: Recorded when the provider reported no guidance.
    """

    def __init__(
        self,
        blob_storage: BlobStorage,
        repository: ImageRepository,
        default_guidance: int = DEFAULT_GUIDANCE,
    ) -> None:
        self.blob_storage = blob_storage
        self.repository = repository
        self.default_guidance = default_guidance

    async def persist(self, result: ProviderResult, context: GenerationRequest) -> StoredImage:
        """Store *result* and return the created record.

        Raises:
            PersistenceError: If either write fails.  Nothing is left behind.
        """
        if not result.success or not result.data:
            raise PersistenceError(f"Cannot persist unsuccessful result from {result.provider}")

        filename = make_filename(result.data, result.provider)
        try:
            image_url = await self.blob_storage.save_image(result.data, filename)
        except Exception as e:
            logger.error("Blob write failed for %s: %s", filename, e)
            raise PersistenceError(f"Failed to save image: {e}") from e

        record = StoredImage(
            id=None,
            prompt=context.prompt,
            original=context.original,
            image_url=image_url,
            provider=result.provider,
            model=result.model,
            guidance=result.guidance if result.guidance is not None else self.default_guidance,
            user_id=context.user_id,
            prompt_id=context.prompt_id,
        )

        insert = asyncio.ensure_future(self.repository.insert(record))
        try:
            stored = await asyncio.shield(insert)
        except asyncio.CancelledError:
            logger.warning("Persistence of %s cancelled, rolling back", image_url)
            await asyncio.shield(self._roll_back(insert, image_url))
            raise
        except Exception as e:
            logger.error("Metadata write failed for %s, removing blob: %s", image_url, e)
            await self._compensate(image_url)
            raise PersistenceError(f"Failed to save image metadata: {e}") from e

        if stored is None or not stored.id:
            logger.error("Metadata store returned no id for %s, removing blob", image_url)
            await self._compensate(image_url)
            raise PersistenceError("Database save succeeded but returned no image ID")

        logger.info(
            "Persisted image %s from %s for user %s",
            stored.id,
            stored.provider,
            stored.user_id or "anonymous",
        )
        return stored

    async def _roll_back(self, insert: asyncio.Future, image_url: str) -> None:
        try:
            stored = await insert
        except Exception as e:
            logger.info("Cancelled metadata write for %s did not commit: %s", image_url, e)
            stored = None
        if stored is not None and stored.id:
            try:
                await self.repository.delete(stored.id)
            except Exception:
                logger.exception("Could not remove metadata row %s", stored.id)
        await self._compensate(image_url)

    async def _compensate(self, image_url: str) -> None:
        try:
            deleted = await self.blob_storage.delete_image(image_url)
        except Exception:
            logger.exception("Compensating delete failed for %s", image_url)
            return
        if deleted:
            logger.info("Removed orphaned blob %s", image_url)
        else:
            logger.warning("Orphaned blob %s was already gone", image_url)
