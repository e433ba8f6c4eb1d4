"""
Receipt domain types.

Sync progress and server review outcome are two independent state machines:

    sync_status:   QUEUED → UPLOADING → {UPLOADED, FAILED, QUEUED}
                   FAILED → QUEUED (explicit retry only)
    server_status: PENDING → {PROCESSED, REJECTED}   (only once UPLOADED)

The string values are the storage representation; business logic compares
enum members, never raw strings.
"""

from dataclasses import dataclass
from enum import Enum


class SyncStatus(str, Enum):
    """Local upload progress of a receipt."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


class ServerStatus(str, Enum):
    """Review outcome reported by the receipt service."""

    PENDING = "pending"
    PROCESSED = "processed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        """Processed and rejected receipts are never polled again."""
        return self in (ServerStatus.PROCESSED, ServerStatus.REJECTED)

    @classmethod
    def parse(cls, raw: str | None) -> "ServerStatus | None":
        """Map a server-side status string, None for unknown values."""
        if raw is None:
            return None
        try:
            return cls(raw)
        except ValueError:
            return None


class PageContentType(str, Enum):
    """Content type of a stored page."""

    JPEG = "image/jpeg"
    PDF = "application/pdf"

    @property
    def file_extension(self) -> str:
        return "pdf" if self is PageContentType.PDF else "jpg"

    @classmethod
    def for_filename(cls, name: str) -> "PageContentType":
        """Guess the content type from a file name suffix."""
        return cls.PDF if name.lower().endswith(".pdf") else cls.JPEG

    @classmethod
    def parse(cls, raw: str | None) -> "PageContentType":
        """Map a server-side content type; anything unrecognized is treated as JPEG."""
        try:
            return cls(raw)
        except ValueError:
            return cls.JPEG


class EnhancementMode(str, Enum):
    """Image enhancement applied at capture time."""

    ORIGINAL = "original"
    AUTO = "auto"
    BLACK_AND_WHITE = "black_and_white"


@dataclass
class TripReference:
    """Trip link with display fields cached for offline use."""

    id: str
    external_id: str | None = None
    name: str | None = None
