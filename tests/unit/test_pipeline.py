"""Tests for imageharvest.core.pipeline: the queue worker.

Providers are in-test adapters; blob and metadata stores are the in-memory
fixtures from conftest.
"""

from __future__ import annotations

import asyncio
import io
import random

import httpx
import pytest
from PIL import Image

from imageharvest.core.dispatcher import ProviderDispatcher
from imageharvest.core.errors import ProviderError
from imageharvest.core.models import ErrorCode, GenerationRequest, ProviderOutput
from imageharvest.core.persistence import PersistenceCoordinator
from imageharvest.core.pipeline import GenerationPipeline
from imageharvest.core.queue import QueueManager
from imageharvest.core.tagging import TaggingService
from imageharvest.providers.base import ProviderBase, ProviderRegistry, ProviderSpec


def _png(color: str) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (2, 2), color).save(buffer, format="PNG")
    return buffer.getvalue()


IMAGES = {"flux": _png("red"), "dalle3": _png("green")}


class StaticProvider(ProviderBase):
    name = "Static"
    types = ("static",)

    async def generate(self, prompt: str, guidance: int, spec: ProviderSpec) -> ProviderOutput:
        return ProviderOutput(data=IMAGES[spec.name], model=spec.model, guidance=guidance)


class DownProvider(ProviderBase):
    name = "Down"
    types = ("down",)

    async def generate(self, prompt: str, guidance: int, spec: ProviderSpec) -> ProviderOutput:
        raise ProviderError(ErrorCode.PROVIDER_ERROR.value, "Dezgo API server error (503)", retryable=True)


CATALOG = {
    "flux": ProviderSpec("flux", "static", "flux_1_schnell"),
    "dalle3": ProviderSpec("dalle3", "static", "dall-e-3"),
    "down": ProviderSpec("down", "down", "down-model"),
}


@pytest.fixture
def registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(StaticProvider)
    registry.register(DownProvider)
    return registry


def build_pipeline(test_config, registry, blob_storage, image_repository, *, tagging=None, fanout=False):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    dispatcher = ProviderDispatcher(CATALOG, registry, test_config, client, rng=random.Random(0))
    return GenerationPipeline(
        QueueManager(),
        dispatcher,
        PersistenceCoordinator(blob_storage, image_repository),
        tagging,
        fanout=fanout,
    )


def make_request(providers, prompt="a red fox in snow", guidance=10) -> GenerationRequest:
    return GenerationRequest(prompt=prompt, providers=frozenset(providers), guidance=guidance, user_id="u-1")


class TestProcess:
    def test_success_view(self, test_config, registry, blob_storage, image_repository):
        pipeline = build_pipeline(test_config, registry, blob_storage, image_repository)
        result = asyncio.run(pipeline.process(make_request({"flux"})))

        assert result.success is True
        assert len(result.results) == 1
        view = result.results[0]
        assert view["provider"] == "flux"
        assert view["success"] is True
        assert view["imageId"] == "img-1"
        assert view["imageUrl"].startswith("memory/flux_")
        assert view["model"] == "flux_1_schnell"
        assert view["guidance"] == 10
        assert view["tags"] == []
        assert view["taggedAt"] is None
        assert view["taggingMetadata"] is None

        body = result.to_dict()
        assert body["requestId"].startswith("req_")
        assert isinstance(body["duration"], int)

    def test_exactly_one_result_without_fanout(self, test_config, registry, blob_storage, image_repository):
        pipeline = build_pipeline(test_config, registry, blob_storage, image_repository)
        result = asyncio.run(pipeline.process(make_request({"flux", "dalle3"})))
        assert len(result.results) == 1
        assert len(image_repository.rows) == 1

    def test_provider_failure_view(self, test_config, registry, blob_storage, image_repository):
        pipeline = build_pipeline(test_config, registry, blob_storage, image_repository)
        result = asyncio.run(pipeline.process(make_request({"down"})))
        assert result.success is False
        assert result.results == [
            {"provider": "down", "success": False, "error": "Dezgo API server error (503)"}
        ]
        assert blob_storage.blobs == {}

    def test_persistence_failure_view(self, test_config, registry, blob_storage, image_repository):
        image_repository.fail_insert = True
        pipeline = build_pipeline(test_config, registry, blob_storage, image_repository)
        result = asyncio.run(pipeline.process(make_request({"flux"})))
        assert result.success is False
        assert result.results[0]["success"] is False
        assert "database is locked" in result.results[0]["error"]
        assert blob_storage.blobs == {}

    def test_fanout_calls_every_provider(self, test_config, registry, blob_storage, image_repository):
        pipeline = build_pipeline(test_config, registry, blob_storage, image_repository, fanout=True)
        result = asyncio.run(pipeline.process(make_request({"flux", "dalle3", "down"})))
        assert [v["provider"] for v in result.results] == ["dalle3", "down", "flux"]
        assert [v["success"] for v in result.results] == [True, False, True]
        assert result.success is True


class TestTaggingIsolation:
    """Tagging runs after the result is built and cannot change it."""

    def test_tagging_failure_keeps_success(self, test_config, registry, blob_storage, image_repository):
        image_repository.fail_update = True
        tagging = TaggingService(image_repository, retry_delay=0)
        pipeline = build_pipeline(
            test_config, registry, blob_storage, image_repository, tagging=tagging
        )

        async def scenario():
            result = await pipeline.process(make_request({"flux"}))
            await tagging.wait_idle()
            return result

        result = asyncio.run(scenario())
        assert result.success is True
        assert result.results[0]["tags"] == []
        assert image_repository.rows["img-1"].tags == []

    def test_tagging_scheduled_for_stored_image(self, test_config, registry, blob_storage, image_repository):
        tagging = TaggingService(image_repository, retry_delay=0)
        pipeline = build_pipeline(
            test_config, registry, blob_storage, image_repository, tagging=tagging
        )

        async def scenario():
            result = await pipeline.process(make_request({"flux"}))
            await tagging.wait_idle()
            return result

        result = asyncio.run(scenario())
        assert result.results[0]["tags"] == []
        image = image_repository.rows["img-1"]
        assert image.tags == ["red", "fox", "snow"]
        assert image.tagging_metadata["provider"] == "flux"


class TestSubmit:
    def test_submit_through_queue(self, test_config, registry, blob_storage, image_repository):
        pipeline = build_pipeline(test_config, registry, blob_storage, image_repository)

        async def scenario():
            pipeline.start()
            try:
                return await pipeline.submit(make_request({"flux"}))
            finally:
                await pipeline.queue.shutdown()

        result = asyncio.run(scenario())
        assert result.success is True
        assert result.results[0]["provider"] == "flux"
