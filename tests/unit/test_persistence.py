"""Tests for imageharvest.core.persistence: blob + metadata writes with compensation."""

from __future__ import annotations

import asyncio

import pytest

from imageharvest.core.errors import PersistenceError, QueueTimeoutError
from imageharvest.core.models import ErrorCode, GenerationRequest, ProviderOutput, ProviderResult
from imageharvest.core.persistence import PersistenceCoordinator
from imageharvest.core.queue import QueueManager


@pytest.fixture
def coordinator(blob_storage, image_repository) -> PersistenceCoordinator:
    return PersistenceCoordinator(blob_storage, image_repository)


@pytest.fixture
def request_context() -> GenerationRequest:
    return GenerationRequest(
        prompt="a red fox in snow",
        providers=frozenset({"flux"}),
        guidance=10,
        original="A Red Fox In Snow!",
        prompt_id="p-1",
        user_id="u-1",
    )


def success(png_bytes: bytes, guidance: int | None = 10) -> ProviderResult:
    return ProviderResult.ok("flux", ProviderOutput(data=png_bytes, model="flux_1_schnell", guidance=guidance))


class TestPersistSuccess:
    def test_both_stores_written(self, coordinator, blob_storage, image_repository, request_context, png_bytes):
        stored = asyncio.run(coordinator.persist(success(png_bytes), request_context))

        assert stored.id == "img-1"
        assert stored.image_url in blob_storage.blobs
        assert image_repository.rows["img-1"] is stored
        assert stored.prompt == "a red fox in snow"
        assert stored.original == "A Red Fox In Snow!"
        assert stored.prompt_id == "p-1"
        assert stored.user_id == "u-1"
        assert stored.provider == "flux"
        assert stored.model == "flux_1_schnell"
        assert stored.guidance == 10
        assert stored.tags == []

    def test_filename_shape(self, coordinator, request_context, png_bytes):
        stored = asyncio.run(coordinator.persist(success(png_bytes), request_context))
        filename = stored.image_url.rsplit("/", 1)[-1]
        assert filename.startswith("flux_")
        assert filename.endswith(".png")
        assert len(filename) == len("flux_") + 16 + 1 + 8 + len(".png")

    def test_missing_guidance_defaults_to_ten(self, coordinator, request_context, png_bytes):
        stored = asyncio.run(coordinator.persist(success(png_bytes, guidance=None), request_context))
        assert stored.guidance == 10


class TestPersistFailure:
    """Failures leave neither a row nor a blob behind."""

    def test_blob_failure_skips_metadata(self, coordinator, blob_storage, image_repository, request_context, png_bytes):
        blob_storage.fail_save = True
        with pytest.raises(PersistenceError, match="Failed to save image"):
            asyncio.run(coordinator.persist(success(png_bytes), request_context))
        assert image_repository.rows == {}
        assert blob_storage.deleted == []

    def test_metadata_failure_deletes_blob(self, coordinator, blob_storage, image_repository, request_context, png_bytes):
        """Compensating delete runs when the metadata insert fails."""
        image_repository.fail_insert = True
        with pytest.raises(PersistenceError) as exc_info:
            asyncio.run(coordinator.persist(success(png_bytes), request_context))

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert len(blob_storage.deleted) == 1
        assert blob_storage.blobs == {}

    def test_failed_compensation_keeps_original_error(
        self, coordinator, blob_storage, image_repository, request_context, png_bytes
    ):
        image_repository.fail_insert = True
        blob_storage.fail_delete = True
        with pytest.raises(PersistenceError) as exc_info:
            asyncio.run(coordinator.persist(success(png_bytes), request_context))
        assert "database is locked" in str(exc_info.value)
        assert len(blob_storage.deleted) == 1

    def test_row_without_id_is_fatal(self, coordinator, blob_storage, image_repository, request_context, png_bytes):
        image_repository.drop_id = True
        with pytest.raises(PersistenceError, match="no image ID"):
            asyncio.run(coordinator.persist(success(png_bytes), request_context))
        assert blob_storage.blobs == {}

    def test_failed_result_rejected(self, coordinator, blob_storage, request_context):
        failed = ProviderResult.failed("flux", ErrorCode.TIMEOUT.value, "timed out")
        with pytest.raises(PersistenceError):
            asyncio.run(coordinator.persist(failed, request_context))
        assert blob_storage.blobs == {}

    def test_failed_duplicate_keeps_earlier_blob(
        self, coordinator, blob_storage, image_repository, request_context, png_bytes
    ):
        """Rolling back a request never removes another request's identical image."""

        async def scenario():
            first = await coordinator.persist(success(png_bytes), request_context)
            image_repository.fail_insert = True
            with pytest.raises(PersistenceError):
                await coordinator.persist(success(png_bytes), request_context)
            return first

        first = asyncio.run(scenario())
        assert list(blob_storage.blobs) == [first.image_url]
        assert image_repository.rows == {first.id: first}
        assert len(blob_storage.deleted) == 1
        assert first.image_url not in blob_storage.deleted


class TestPersistCancelled:
    """Cancellation during the metadata write rolls back both stores."""

    def test_cancelled_insert_rolls_back(
        self, coordinator, blob_storage, image_repository, request_context, png_bytes
    ):
        image_repository.insert_delay = 0.2

        async def scenario():
            task = asyncio.create_task(coordinator.persist(success(png_bytes), request_context))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert image_repository.rows == {}
        assert blob_storage.blobs == {}
        assert len(blob_storage.deleted) == 1

    def test_queue_timeout_during_insert_rolls_back(
        self, coordinator, blob_storage, image_repository, request_context, png_bytes
    ):
        """An insert that outlives the queue's task timeout leaves nothing behind."""
        image_repository.insert_delay = 0.2
        queue = QueueManager(task_timeout=0.05)

        async def scenario():
            queue.start(lambda request: coordinator.persist(success(png_bytes), request))
            future = queue.enqueue(request_context)
            try:
                with pytest.raises(QueueTimeoutError):
                    await future
            finally:
                await queue.shutdown()

        asyncio.run(scenario())
        assert image_repository.rows == {}
        assert blob_storage.blobs == {}
        assert len(blob_storage.deleted) == 1
