"""
Local Record Store (SQLite-based).

Durable storage for:
- Receipts (sync progress, server review outcome, retention flags)
- Pages (local blob path, remote blob path, sort order)
- Preferences (retention override, last selected account)

Pages are cascade-deleted with their receipt.
"""

from .sqlite_store import (
    PageRecord,
    ReceiptRecord,
    ReceiptStore,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

__all__ = [
    "ReceiptStore",
    "ReceiptRecord",
    "PageRecord",
    "format_timestamp",
    "parse_timestamp",
    "utc_now",
]
