"""
Local page image storage.

Layout under the storage root:

    receipts/<receipt-id>/page-001.jpg
    receipts/<receipt-id>/page-001-thumb.jpg
    receipts/<receipt-id>/page-002.pdf

Paths handed to the record store are relative to the root.
"""

import logging
import shutil
import uuid
from pathlib import Path

from ..schemas.receipt import PageContentType

logger = logging.getLogger(__name__)

RECEIPTS_DIR = "receipts"


class LocalBlobError(Exception):
    """Base exception for local blob storage errors."""

    pass


class LocalBlobMissingError(LocalBlobError):
    """A page image could not be read from local storage."""

    def __init__(self, relative_path: str, reason: str | None = None):
        self.relative_path = relative_path
        detail = f": {reason}" if reason else ""
        super().__init__(f"Image not found: {relative_path}{detail}")


def page_file_name(page_index: int, content_type: PageContentType) -> str:
    """Numbered file name for a page; page_index is zero-based."""
    return f"page-{page_index + 1:03d}.{content_type.file_extension}"


def thumbnail_path(image_path: str) -> str:
    """Thumbnail path that belongs to a page image path."""
    path = Path(image_path)
    return str(path.with_name(f"{path.stem}-thumb.jpg"))


class BlobStore:
    """Reads, writes and reclaims page images on the local filesystem."""

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.receipts_root.mkdir(parents=True, exist_ok=True)

    @property
    def receipts_root(self) -> Path:
        return self.root / RECEIPTS_DIR

    def receipt_dir(self, receipt_id: str) -> Path:
        return self.receipts_root / receipt_id

    def resolve(self, relative_path: str) -> Path:
        return self.root / relative_path

    def save_page(
        self,
        receipt_id: str,
        page_index: int,
        data: bytes,
        content_type: PageContentType = PageContentType.JPEG,
        thumbnail: bytes | None = None,
    ) -> str:
        """
        Write a page image (and optional thumbnail).

        Returns:
            Path of the page image relative to the storage root
        """
        relative = f"{RECEIPTS_DIR}/{receipt_id}/{page_file_name(page_index, content_type)}"
        self.write(relative, data)
        if thumbnail is not None:
            self.write(thumbnail_path(relative), thumbnail)
        return relative

    def write(self, relative_path: str, data: bytes) -> None:
        """Write bytes to a path relative to the root, creating directories."""
        target = self.resolve(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def read(self, relative_path: str) -> bytes:
        """
        Read a page image.

        Raises:
            LocalBlobMissingError: If the file is missing or unreadable
        """
        try:
            return self.resolve(relative_path).read_bytes()
        except OSError as e:
            raise LocalBlobMissingError(relative_path, e.strerror) from e

    def exists(self, relative_path: str) -> bool:
        return self.resolve(relative_path).is_file()

    def delete_page(self, relative_path: str) -> None:
        """Delete a page image and its thumbnail."""
        for path in (relative_path, thumbnail_path(relative_path)):
            self.resolve(path).unlink(missing_ok=True)

    def delete_receipt(self, receipt_id: str) -> None:
        """Delete every local file of a receipt."""
        shutil.rmtree(self.receipt_dir(receipt_id), ignore_errors=True)

    def list_receipt_dirs(self) -> list[str]:
        """Receipt IDs that have a directory under the receipts root."""
        if not self.receipts_root.is_dir():
            return []
        names = []
        for entry in self.receipts_root.iterdir():
            if not entry.is_dir():
                continue
            try:
                uuid.UUID(entry.name)
            except ValueError:
                continue
            names.append(entry.name)
        return sorted(names)
