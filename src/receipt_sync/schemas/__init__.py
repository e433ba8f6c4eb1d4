"""
Schema definitions for the receipt sync engine.

- Receipt domain enums (sync status, server status, content type)
- Remote API request/response payloads
"""

from .api import (
    CreateReceiptRequest,
    CreateReceiptResponse,
    DownloadLocation,
    PageUpload,
    ReceiptStatusResult,
    RemoteReceipt,
    RemoteReceiptImage,
    UploadDestination,
)
from .receipt import (
    EnhancementMode,
    PageContentType,
    ServerStatus,
    SyncStatus,
    TripReference,
)

__all__ = [
    # Domain
    "SyncStatus",
    "ServerStatus",
    "PageContentType",
    "EnhancementMode",
    "TripReference",
    # API payloads
    "UploadDestination",
    "DownloadLocation",
    "PageUpload",
    "CreateReceiptRequest",
    "CreateReceiptResponse",
    "ReceiptStatusResult",
    "RemoteReceipt",
    "RemoteReceiptImage",
]
