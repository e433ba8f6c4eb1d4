"""
Object storage transport.

Provides:
- PUT page bytes to a presigned upload URL (success is any 2xx)
- GET page bytes from a presigned download URL
- Retry/backoff for transient storage failures
"""

from .client import (
    InvalidUploadURLError,
    ObjectStorageTransport,
    UploadConnectionError,
    UploadError,
    UploadFailedError,
)

__all__ = [
    "ObjectStorageTransport",
    "UploadError",
    "UploadFailedError",
    "UploadConnectionError",
    "InvalidUploadURLError",
]
