"""Local page image storage (one directory per receipt)."""

from .blobs import (
    BlobStore,
    LocalBlobError,
    LocalBlobMissingError,
    page_file_name,
    thumbnail_path,
)

__all__ = [
    "BlobStore",
    "LocalBlobError",
    "LocalBlobMissingError",
    "page_file_name",
    "thumbnail_path",
]
