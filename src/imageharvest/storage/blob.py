"""Blob storage for generated images.

The pipeline talks to storage through :class:`BlobStorage`, which has three
operations: save bytes under a filename and get back a URL, delete by URL,
and check existence by URL.  :class:`LocalBlobStorage` keeps files in a
directory and hands out ``<url_prefix>/<filename>`` URLs.

Filenames are ``<provider>_<sha256[:16]>_<nonce>.<ext>``.  The nonce makes
every write land on its own name, so deleting one request's blob never
touches another request that produced identical bytes.  The extension
comes from the image header as read by Pillow.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

_FORMAT_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
}


def detect_extension(data: bytes, default: str = "jpg") -> str:
    """Return the file extension matching the image header in *data*."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return _FORMAT_EXTENSIONS.get(image.format or "", default)
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError):
        return default


def make_filename(data: bytes, provider: str) -> str:
    """Build a unique filename for *data*, prefixed by its content hash."""
    digest = hashlib.sha256(data).hexdigest()[:16]
    safe_provider = "".join(c if c.isalnum() or c in "-_" else "_" for c in provider) or "image"
    return f"{safe_provider}_{digest}_{uuid.uuid4().hex[:8]}.{detect_extension(data)}"


class BlobStorage(ABC):
    """Async blob store interface."""

    @abstractmethod
    async def save_image(self, data: bytes, filename: str) -> str:
        """Store *data* and return its durable URL."""

    @abstractmethod
    async def delete_image(self, url: str) -> bool:
        """Delete the blob at *url*.  Returns ``False`` if it did not exist."""

    @abstractmethod
    async def exists(self, url: str) -> bool:
        """Whether a blob is stored at *url*."""


class LocalBlobStorage(BlobStorage):
    """File-system blob store.

    Writes go to a temporary file in the target directory and are renamed
    into place, so a reader never observes a partial image.

    Args:
        root: Directory that holds the blobs.
        url_prefix: Prefix of returned URLs.
    """

    def __init__(self, root: Path, url_prefix: str = "uploads") -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.strip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, url: str) -> Path:
        """Map a URL returned by :meth:`save_image` back to a file path.

        Raises:
            ValueError: If the URL does not belong to this store.
        """
        prefix = f"{self.url_prefix}/"
        if not url.startswith(prefix):
            raise ValueError(f"URL {url!r} is not managed by this store")
        filename = url[len(prefix):]
        if not filename or "/" in filename or "\\" in filename or filename in (".", ".."):
            raise ValueError(f"Invalid blob filename in {url!r}")
        return self.root / filename

    async def save_image(self, data: bytes, filename: str) -> str:
        if not data:
            raise ValueError("Image data cannot be empty")
        if not filename or "/" in filename or "\\" in filename:
            raise ValueError(f"Invalid filename: {filename!r}")

        url = f"{self.url_prefix}/{filename}"
        await asyncio.to_thread(self._write_atomic, self.root / filename, data)
        logger.debug("Stored %d bytes at %s", len(data), url)
        return url

    async def delete_image(self, url: str) -> bool:
        path = self.path_for(url)
        return await asyncio.to_thread(self._unlink, path)

    async def exists(self, url: str) -> bool:
        try:
            path = self.path_for(url)
        except ValueError:
            return False
        return await asyncio.to_thread(path.is_file)

    @staticmethod
    def _write_atomic(target: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-", suffix=target.suffix)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
