"""SQLite metadata store for generated images."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from imageharvest.core.models import StoredImage

logger = logging.getLogger(__name__)


class ImageRepository(ABC):
    """Metadata store interface used by persistence and tagging."""

    @abstractmethod
    async def insert(self, image: StoredImage) -> StoredImage:
        """Insert *image* and return it with its generated id."""

    @abstractmethod
    async def get(self, image_id: str) -> StoredImage | None:
        """Fetch one image, or ``None``."""

    @abstractmethod
    async def update_tags(
        self,
        image_id: str,
        tags: list[str],
        tagged_at: datetime,
        tagging_metadata: dict[str, Any],
    ) -> bool:
        """Set tagging columns.  Returns ``False`` if the row does not exist."""

    @abstractmethod
    async def delete(self, image_id: str) -> bool:
        """Delete one row.  Returns ``False`` if it did not exist."""


class SQLiteImageRepository(ImageRepository):
    """Manage the ``images`` table using SQLite.

    Each call opens its own connection and runs in a worker thread, so the
    event loop never blocks on disk I/O.
    """

    def __init__(self, db_path: Path):
        """Initialize the image database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info("Initialized image metadata database at %s", self.db_path)

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS images (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    prompt TEXT NOT NULL,
                    original TEXT NOT NULL,
                    prompt_id TEXT,
                    image_url TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    model TEXT,
                    guidance INTEGER NOT NULL,
                    rating INTEGER NOT NULL DEFAULT 0,
                    tags TEXT NOT NULL DEFAULT '[]',
                    tagging_metadata TEXT,
                    tagged_at TEXT,
                    created_at TEXT NOT NULL
                )
                """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_images_user_created
                ON images(user_id, created_at DESC)
                """)

            conn.commit()

    # -- Row mapping --------------------------------------------------------

    @staticmethod
    def _row_to_image(row: sqlite3.Row) -> StoredImage:
        return StoredImage(
            id=row["id"],
            user_id=row["user_id"],
            prompt=row["prompt"],
            original=row["original"],
            prompt_id=row["prompt_id"],
            image_url=row["image_url"],
            provider=row["provider"],
            model=row["model"],
            guidance=row["guidance"],
            rating=row["rating"],
            tags=json.loads(row["tags"] or "[]"),
            tagging_metadata=json.loads(row["tagging_metadata"]) if row["tagging_metadata"] else None,
            tagged_at=datetime.fromisoformat(row["tagged_at"]) if row["tagged_at"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # -- Synchronous operations (run in a worker thread) --------------------

    def _insert(self, image: StoredImage) -> StoredImage:
        image_id = image.id or uuid.uuid4().hex
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO images (
                    id, user_id, prompt, original, prompt_id, image_url, provider,
                    model, guidance, rating, tags, tagging_metadata, tagged_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    image_id,
                    image.user_id,
                    image.prompt,
                    image.original,
                    image.prompt_id,
                    image.image_url,
                    image.provider,
                    image.model,
                    image.guidance,
                    image.rating,
                    json.dumps(image.tags),
                    json.dumps(image.tagging_metadata) if image.tagging_metadata else None,
                    image.tagged_at.isoformat() if image.tagged_at else None,
                    image.created_at.isoformat(),
                ),
            )
            conn.commit()
        image.id = image_id
        return image

    def _get(self, image_id: str) -> StoredImage | None:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()
        return self._row_to_image(row) if row else None

    def _update_tags(
        self,
        image_id: str,
        tags: list[str],
        tagged_at: datetime,
        tagging_metadata: dict[str, Any],
    ) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE images
                SET tags = ?, tagged_at = ?, tagging_metadata = ?
                WHERE id = ?
                """,
                (json.dumps(tags), tagged_at.isoformat(), json.dumps(tagging_metadata), image_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def _delete(self, image_id: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM images WHERE id = ?", (image_id,))
            conn.commit()
            return cursor.rowcount > 0

    def count(self) -> int:
        """Number of stored rows."""
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM images").fetchone()[0]

    # -- Async interface ----------------------------------------------------

    async def insert(self, image: StoredImage) -> StoredImage:
        return await asyncio.to_thread(self._insert, image)

    async def get(self, image_id: str) -> StoredImage | None:
        return await asyncio.to_thread(self._get, image_id)

    async def update_tags(
        self,
        image_id: str,
        tags: list[str],
        tagged_at: datetime,
        tagging_metadata: dict[str, Any],
    ) -> bool:
        return await asyncio.to_thread(
            self._update_tags, image_id, tags, tagged_at, tagging_metadata
        )

    async def delete(self, image_id: str) -> bool:
        return await asyncio.to_thread(self._delete, image_id)
