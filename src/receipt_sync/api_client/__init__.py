"""
Receipt service API client.

Provides:
- Presigned upload/download URLs for page images
- Create / update / delete receipts
- Batch review status check and receipt listing

Errors surface as ReceiptAPIError with a typed kind
(unauthorized, forbidden, conflict, payload_too_large, server_error).
"""

from .client import (
    APIErrorKind,
    ReceiptAPIClient,
    ReceiptAPIClientError,
    ReceiptAPIError,
    ReceiptConnectionError,
    TokenProvider,
    static_token_provider,
)

__all__ = [
    "ReceiptAPIClient",
    "ReceiptAPIClientError",
    "ReceiptAPIError",
    "ReceiptConnectionError",
    "APIErrorKind",
    "TokenProvider",
    "static_token_provider",
]
