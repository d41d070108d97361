"""Shared pytest fixtures for Image Harvest tests."""

from __future__ import annotations

import asyncio
import base64
import io
import json
import random
import shutil
import tempfile
from collections.abc import Generator
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from imageharvest.core.config import HarvestConfig
from imageharvest.core.models import StoredImage
from imageharvest.storage.blob import BlobStorage
from imageharvest.storage.metadata import ImageRepository


def make_png(color: str = "red", size: tuple[int, int] = (4, 4)) -> bytes:
    """Encode a tiny solid-colour PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> HarvestConfig:
    """Create a test configuration with temporary directories.

    Provider keys are set so adapters reach the (mocked) network.  Tagging
    is disabled; tests that need it enable it explicitly.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        HarvestConfig instance for testing
    """
    return HarvestConfig(
        _env_file=None,
        storage_dir=temp_dir / "uploads",
        database_path=temp_dir / "data" / "images.db",
        dezgo_api_key="test-dezgo-key",
        openai_api_key="test-openai-key",
        grok_api_key="test-grok-key",
        tagging_enabled=False,
        tagging_retry_delay=0,
        provider_timeout=5.0,
        task_timeout=10.0,
    )


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


# ---------------------------------------------------------------------------
# In-memory stores.
# ---------------------------------------------------------------------------


class InMemoryBlobStorage(BlobStorage):
    """Blob store backed by a dict, with switchable failures."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_save = False
        self.fail_delete = False

    async def save_image(self, data: bytes, filename: str) -> str:
        if self.fail_save:
            raise OSError("disk full")
        url = f"memory/{filename}"
        self.blobs[url] = data
        return url

    async def delete_image(self, url: str) -> bool:
        self.deleted.append(url)
        if self.fail_delete:
            raise OSError("permission denied")
        return self.blobs.pop(url, None) is not None

    async def exists(self, url: str) -> bool:
        return url in self.blobs


class InMemoryImageRepository(ImageRepository):
    """Image repository backed by a dict, with switchable failures."""

    def __init__(self) -> None:
        self.rows: dict[str, StoredImage] = {}
        self.fail_insert = False
        self.drop_id = False
        self.fail_update = False
        self.insert_delay = 0.0
        self._next_id = 1

    async def insert(self, image: StoredImage) -> StoredImage:
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        if self.fail_insert:
            raise RuntimeError("database is locked")
        if self.drop_id:
            return StoredImage(**{**image.__dict__, "id": None})
        image.id = f"img-{self._next_id}"
        self._next_id += 1
        self.rows[image.id] = image
        return image

    async def get(self, image_id: str) -> StoredImage | None:
        return self.rows.get(image_id)

    async def update_tags(
        self,
        image_id: str,
        tags: list[str],
        tagged_at: datetime,
        tagging_metadata: dict[str, Any],
    ) -> bool:
        if self.fail_update:
            raise RuntimeError("database is locked")
        image = self.rows.get(image_id)
        if image is None:
            return False
        image.tags = list(tags)
        image.tagged_at = tagged_at
        image.tagging_metadata = tagging_metadata
        return True

    async def delete(self, image_id: str) -> bool:
        return self.rows.pop(image_id, None) is not None


@pytest.fixture
def blob_storage() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


@pytest.fixture
def image_repository() -> InMemoryImageRepository:
    return InMemoryImageRepository()


# ---------------------------------------------------------------------------
# Mocked upstream HTTP services.
# ---------------------------------------------------------------------------


class UpstreamStub:
    """``httpx.MockTransport`` handler imitating Dezgo, OpenAI and chat completions.

    Attributes:
        requests: Every request received, in order.
        status: Per-host status override, e.g. ``{"api.dezgo.com": 500}``.
        tags: Tags returned by the chat completions function call.
    """

    def __init__(self, image: bytes) -> None:
        self.image = image
        self.requests: list[httpx.Request] = []
        self.status: dict[str, int] = {}
        self.tags: list[str] = ["fox", "snow", "winter"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host in self.status:
            return httpx.Response(self.status[host], json={"error": "upstream failure"})

        if host == "api.dezgo.com":
            return httpx.Response(200, content=self.image, headers={"content-type": "image/png"})
        if request.url.path.endswith("/images/generations"):
            encoded = base64.b64encode(self.image).decode()
            return httpx.Response(200, json={"data": [{"b64_json": encoded}]})
        if request.url.path.endswith("/chat/completions"):
            arguments = json.dumps({"tags": self.tags})
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "tool_calls": [
                                    {
                                        "type": "function",
                                        "function": {
                                            "name": "generate_image_tags",
                                            "arguments": arguments,
                                        },
                                    }
                                ]
                            }
                        }
                    ]
                },
            )
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def upstream(png_bytes: bytes) -> UpstreamStub:
    return UpstreamStub(png_bytes)


@pytest.fixture
def mock_transport(upstream: UpstreamStub) -> httpx.MockTransport:
    return httpx.MockTransport(upstream)


@pytest.fixture
def test_client(
    test_config: HarvestConfig, mock_transport: httpx.MockTransport
) -> Generator[TestClient, None, None]:
    """FastAPI TestClient with the lifespan running against mocked providers."""
    from imageharvest.api.main import create_app

    app = create_app(test_config, transport=mock_transport, rng=random.Random(0))
    with TestClient(app) as client:
        yield client
