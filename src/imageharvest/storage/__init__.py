"""Blob and metadata stores.

Modules
-------
blob
    Content-addressed image blob storage (local file system).
metadata
    ``images`` table in SQLite behind the :class:`ImageRepository` interface.
"""

from imageharvest.storage.blob import BlobStorage, LocalBlobStorage, make_filename
from imageharvest.storage.metadata import ImageRepository, SQLiteImageRepository

__all__ = [
    "BlobStorage",
    "ImageRepository",
    "LocalBlobStorage",
    "SQLiteImageRepository",
    "make_filename",
]
