"""
SQLite-based local record store.

Tables:
- receipts: One row per captured/imported document, sync + review state
- receipt_pages: Pages owned by a receipt (cascade-deleted with it)
- preferences: Small key/value settings (retention override, last account)

Sync and server statuses are stored as their enum string values; rows are
converted to typed records in from_row and nowhere else.
"""

import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..schemas.receipt import (
    EnhancementMode,
    PageContentType,
    ServerStatus,
    SyncStatus,
    TripReference,
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime for storage.

    Fixed microsecond precision keeps stored values lexicographically
    sortable, which the capture-order query relies on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware datetime."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class PageRecord:
    """One physical sheet/image of a receipt."""

    sort_order: int
    local_path: str  # Relative to the blob store root
    content_type: PageContentType = PageContentType.JPEG
    remote_path: str | None = None  # Set once this page reached object storage
    image_downloaded: bool = True  # False for server-side pages not fetched yet
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    receipt_id: str | None = None

    @property
    def file_name(self) -> str:
        return Path(self.local_path).name

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PageRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            receipt_id=row["receipt_id"],
            sort_order=row["sort_order"],
            local_path=row["local_path"],
            content_type=PageContentType(row["content_type"]),
            remote_path=row["remote_path"],
            image_downloaded=bool(row["image_downloaded"]),
        )


@dataclass
class ReceiptRecord:
    """Local record of one captured or imported receipt."""

    account_id: str
    pages: list[PageRecord] = field(default_factory=list)
    note: str | None = None
    trip_reference: TripReference | None = None
    captured_at: datetime = field(default_factory=utc_now)
    enhancement_mode: EnhancementMode = EnhancementMode.AUTO
    sync_status: SyncStatus = SyncStatus.QUEUED
    server_receipt_id: str | None = None
    server_status: ServerStatus | None = None
    rejection_reason: str | None = None
    terminal_status_at: datetime | None = None
    images_cleaned_up: bool = False
    retry_count: int = 0
    next_retry_after: datetime | None = None
    sync_error: str | None = None
    is_remote: bool = False
    last_synced_at: datetime | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_registered_remotely(self) -> bool:
        """True when the server holds this receipt and deletes/updates must go there first."""
        return self.server_receipt_id is not None and self.sync_status is SyncStatus.UPLOADED

    @property
    def sorted_pages(self) -> list[PageRecord]:
        return sorted(self.pages, key=lambda p: p.sort_order)

    @classmethod
    def from_row(cls, row: sqlite3.Row, pages: list[PageRecord]) -> "ReceiptRecord":
        """Create from database row."""
        trip = None
        if row["trip_reference_id"]:
            trip = TripReference(
                id=row["trip_reference_id"],
                external_id=row["trip_reference_external_id"],
                name=row["trip_reference_name"],
            )
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            pages=pages,
            note=row["note"],
            trip_reference=trip,
            captured_at=parse_timestamp(row["captured_at"]),
            enhancement_mode=EnhancementMode(row["enhancement_mode"]),
            sync_status=SyncStatus(row["sync_status"]),
            server_receipt_id=row["server_receipt_id"],
            server_status=ServerStatus(row["server_status"]) if row["server_status"] else None,
            rejection_reason=row["rejection_reason"],
            terminal_status_at=parse_timestamp(row["terminal_status_at"]),
            images_cleaned_up=bool(row["images_cleaned_up"]),
            retry_count=row["retry_count"],
            next_retry_after=parse_timestamp(row["next_retry_after"]),
            sync_error=row["sync_error"],
            is_remote=bool(row["is_remote"]),
            last_synced_at=parse_timestamp(row["last_synced_at"]),
        )


class ReceiptStore:
    """
    SQLite-based store for receipts and their pages.

    Every transaction runs under one re-entrant lock, so all writers are
    serialized through this object regardless of which task or thread
    calls it.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str):
        """
        Initialize the receipt store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.RLock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        with self._write_lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS receipts (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    note TEXT,
                    trip_reference_id TEXT,
                    trip_reference_external_id TEXT,
                    trip_reference_name TEXT,
                    captured_at TEXT NOT NULL,
                    enhancement_mode TEXT NOT NULL DEFAULT 'auto',
                    sync_status TEXT NOT NULL,
                    server_receipt_id TEXT UNIQUE,
                    server_status TEXT,
                    rejection_reason TEXT,
                    terminal_status_at TEXT,
                    images_cleaned_up INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    next_retry_after TEXT,
                    sync_error TEXT,
                    is_remote INTEGER NOT NULL DEFAULT 0,
                    last_synced_at TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS receipt_pages (
                    id TEXT PRIMARY KEY,
                    receipt_id TEXT NOT NULL,
                    sort_order INTEGER NOT NULL,
                    local_path TEXT NOT NULL,
                    content_type TEXT NOT NULL DEFAULT 'image/jpeg',
                    remote_path TEXT,
                    image_downloaded INTEGER NOT NULL DEFAULT 1,
                    UNIQUE (receipt_id, sort_order),
                    FOREIGN KEY (receipt_id) REFERENCES receipts(id) ON DELETE CASCADE
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS preferences (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_receipts_sync_status ON receipts(sync_status, captured_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_receipts_server_status ON receipts(server_status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_receipts_is_remote ON receipts(is_remote)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pages_receipt_id ON receipt_pages(receipt_id)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _load_receipts(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[ReceiptRecord]:
        """Attach pages to receipt rows, preserving row order."""
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        placeholders = ", ".join("?" for _ in ids)
        page_rows = conn.execute(
            f"SELECT * FROM receipt_pages WHERE receipt_id IN ({placeholders}) ORDER BY sort_order",
            ids,
        ).fetchall()

        pages_by_receipt: dict[str, list[PageRecord]] = {receipt_id: [] for receipt_id in ids}
        for page_row in page_rows:
            pages_by_receipt[page_row["receipt_id"]].append(PageRecord.from_row(page_row))

        return [ReceiptRecord.from_row(row, pages_by_receipt[row["id"]]) for row in rows]

    # Receipt creation and lookup

    def add_receipt(self, receipt: ReceiptRecord) -> None:
        """
        Persist a new receipt together with its pages in one transaction.

        Raises:
            ValueError: If the receipt has no pages or sort orders are not 0..n-1
        """
        if not receipt.pages:
            raise ValueError(f"Receipt {receipt.id} must have at least one page")
        orders = sorted(page.sort_order for page in receipt.pages)
        if orders != list(range(len(orders))):
            raise ValueError(
                f"Receipt {receipt.id} page sort orders must be contiguous from 0, got {orders}"
            )

        trip = receipt.trip_reference
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO receipts
                (id, account_id, note, trip_reference_id, trip_reference_external_id,
                 trip_reference_name, captured_at, enhancement_mode, sync_status,
                 server_receipt_id, server_status, rejection_reason, terminal_status_at,
                 images_cleaned_up, retry_count, next_retry_after, sync_error,
                 is_remote, last_synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    receipt.id,
                    receipt.account_id,
                    receipt.note,
                    trip.id if trip else None,
                    trip.external_id if trip else None,
                    trip.name if trip else None,
                    format_timestamp(receipt.captured_at),
                    receipt.enhancement_mode.value,
                    receipt.sync_status.value,
                    receipt.server_receipt_id,
                    receipt.server_status.value if receipt.server_status else None,
                    receipt.rejection_reason,
                    format_timestamp(receipt.terminal_status_at)
                    if receipt.terminal_status_at
                    else None,
                    receipt.images_cleaned_up,
                    receipt.retry_count,
                    format_timestamp(receipt.next_retry_after)
                    if receipt.next_retry_after
                    else None,
                    receipt.sync_error,
                    receipt.is_remote,
                    format_timestamp(receipt.last_synced_at) if receipt.last_synced_at else None,
                ),
            )
            for page in receipt.pages:
                page.receipt_id = receipt.id
                conn.execute(
                    """
                    INSERT INTO receipt_pages
                    (id, receipt_id, sort_order, local_path, content_type, remote_path, image_downloaded)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        page.id,
                        receipt.id,
                        page.sort_order,
                        page.local_path,
                        page.content_type.value,
                        page.remote_path,
                        page.image_downloaded,
                    ),
                )

    def get_receipt(self, receipt_id: str) -> ReceiptRecord | None:
        """Get a receipt with its pages by local ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM receipts WHERE id = ?", (receipt_id,)).fetchone()
            if not row:
                return None
            return self._load_receipts(conn, [row])[0]

    def get_receipt_by_server_id(self, server_receipt_id: str) -> ReceiptRecord | None:
        """Get a receipt by the ID the server assigned to it."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM receipts WHERE server_receipt_id = ?", (server_receipt_id,)
            ).fetchone()
            if not row:
                return None
            return self._load_receipts(conn, [row])[0]

    def get_page(self, page_id: str) -> PageRecord | None:
        """Get a single page by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM receipt_pages WHERE id = ?", (page_id,)).fetchone()
            return PageRecord.from_row(row) if row else None

    def list_receipts(
        self,
        sync_status: SyncStatus | None = None,
        server_status: ServerStatus | None = None,
        account_id: str | None = None,
    ) -> list[ReceiptRecord]:
        """
        Query receipts by predicate, oldest capture first.

        Args:
            sync_status: Only receipts in this sync state
            server_status: Only receipts with this review outcome
            account_id: Only receipts owned by this account
        """
        clauses = []
        params: list[Any] = []
        if sync_status is not None:
            clauses.append("sync_status = ?")
            params.append(sync_status.value)
        if server_status is not None:
            clauses.append("server_status = ?")
            params.append(server_status.value)
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM receipts {where} ORDER BY captured_at ASC, id ASC", params
            ).fetchall()
            return self._load_receipts(conn, rows)

    def get_terminal_receipts(self) -> list[ReceiptRecord]:
        """Receipts whose review outcome is final and whose terminal time is known."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM receipts
                WHERE server_status IN (?, ?) AND terminal_status_at IS NOT NULL
                ORDER BY terminal_status_at ASC
            """,
                (ServerStatus.PROCESSED.value, ServerStatus.REJECTED.value),
            ).fetchall()
            return self._load_receipts(conn, rows)

    def get_receipt_ids(self) -> set[str]:
        """All local receipt IDs."""
        with self._transaction() as conn:
            rows = conn.execute("SELECT id FROM receipts").fetchall()
            return {row["id"] for row in rows}

    # Sync state transitions

    def mark_uploading(self, receipt_id: str) -> None:
        """Persist the start of an upload attempt before any work begins."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE receipts SET sync_status = ? WHERE id = ?",
                (SyncStatus.UPLOADING.value, receipt_id),
            )

    def set_page_remote_path(self, page_id: str, remote_path: str) -> None:
        """Record where a page landed in object storage."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE receipt_pages SET remote_path = ? WHERE id = ?",
                (remote_path, page_id),
            )

    def mark_uploaded(self, receipt_id: str, server_receipt_id: str) -> None:
        """Record successful registration; review starts as pending."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE receipts
                SET sync_status = ?, server_receipt_id = ?, server_status = ?,
                    rejection_reason = NULL, retry_count = 0, next_retry_after = NULL,
                    sync_error = NULL
                WHERE id = ?
            """,
                (
                    SyncStatus.UPLOADED.value,
                    server_receipt_id,
                    ServerStatus.PENDING.value,
                    receipt_id,
                ),
            )

    def mark_failed(
        self,
        receipt_id: str,
        error_message: str,
        next_retry_after: datetime | None = None,
    ) -> None:
        """Record a permanent upload failure and bump the retry counter."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE receipts
                SET sync_status = ?, sync_error = ?, retry_count = retry_count + 1,
                    next_retry_after = ?
                WHERE id = ?
            """,
                (
                    SyncStatus.FAILED.value,
                    error_message,
                    format_timestamp(next_retry_after) if next_retry_after else None,
                    receipt_id,
                ),
            )

    def requeue(self, receipt_id: str, reset_retry: bool = False) -> bool:
        """
        Put a receipt back into the upload queue.

        Args:
            receipt_id: Receipt to requeue
            reset_retry: Also clear retry bookkeeping (explicit user retry)

        Returns True if a receipt was updated.
        """
        with self._transaction() as conn:
            if reset_retry:
                cursor = conn.execute(
                    """
                    UPDATE receipts
                    SET sync_status = ?, retry_count = 0, next_retry_after = NULL,
                        sync_error = NULL
                    WHERE id = ?
                """,
                    (SyncStatus.QUEUED.value, receipt_id),
                )
            else:
                cursor = conn.execute(
                    "UPDATE receipts SET sync_status = ? WHERE id = ?",
                    (SyncStatus.QUEUED.value, receipt_id),
                )
            return cursor.rowcount > 0

    def requeue_all_failed(self) -> int:
        """Move every failed receipt back to queued in one transaction."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE receipts
                SET sync_status = ?, retry_count = 0, next_retry_after = NULL, sync_error = NULL
                WHERE sync_status = ?
            """,
                (SyncStatus.QUEUED.value, SyncStatus.FAILED.value),
            )
            return cursor.rowcount

    def reset_stuck_uploads(self) -> int:
        """Return every receipt left in uploading state to the queue."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE receipts SET sync_status = ? WHERE sync_status = ?",
                (SyncStatus.QUEUED.value, SyncStatus.UPLOADING.value),
            )
            return cursor.rowcount

    # Review outcome

    def update_server_status(
        self,
        receipt_id: str,
        server_status: ServerStatus,
        rejection_reason: str | None = None,
        observed_at: datetime | None = None,
    ) -> None:
        """
        Apply a review outcome reported by the server.

        The rejection reason is only kept for rejected receipts. The terminal
        timestamp is stamped once, the first time a terminal status is seen.
        """
        reason = rejection_reason if server_status is ServerStatus.REJECTED else None
        terminal_at = (
            format_timestamp(observed_at or utc_now()) if server_status.is_terminal else None
        )
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE receipts
                SET server_status = ?, rejection_reason = ?,
                    terminal_status_at = COALESCE(terminal_status_at, ?)
                WHERE id = ?
            """,
                (server_status.value, reason, terminal_at, receipt_id),
            )

    def backfill_terminal_timestamps(self, now: datetime | None = None) -> int:
        """Stamp terminal receipts that predate terminal_status_at tracking."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE receipts SET terminal_status_at = ?
                WHERE terminal_status_at IS NULL AND server_status IN (?, ?)
            """,
                (
                    format_timestamp(now or utc_now()),
                    ServerStatus.PROCESSED.value,
                    ServerStatus.REJECTED.value,
                ),
            )
            return cursor.rowcount

    # Metadata, cleanup and deletion

    def update_metadata(
        self,
        receipt_id: str,
        note: str | None,
        trip_reference: TripReference | None,
    ) -> None:
        """Replace the user-editable fields of a receipt."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE receipts
                SET note = ?, trip_reference_id = ?, trip_reference_external_id = ?,
                    trip_reference_name = ?
                WHERE id = ?
            """,
                (
                    note,
                    trip_reference.id if trip_reference else None,
                    trip_reference.external_id if trip_reference else None,
                    trip_reference.name if trip_reference else None,
                    receipt_id,
                ),
            )

    def mark_images_cleaned_up(self, receipt_id: str) -> None:
        """Flag that local page images were reclaimed; metadata stays."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE receipts SET images_cleaned_up = 1 WHERE id = ?", (receipt_id,)
            )

    def delete_receipt(self, receipt_id: str) -> bool:
        """Delete a receipt; its pages go with it. Returns True if deleted."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM receipts WHERE id = ?", (receipt_id,))
            return cursor.rowcount > 0

    # Remote mirrors

    def update_from_remote(
        self,
        receipt_id: str,
        note: str | None,
        trip_reference: TripReference | None,
        server_status: ServerStatus,
        rejection_reason: str | None,
        synced_at: datetime | None = None,
    ) -> None:
        """Overwrite a local receipt with the server's current view of it."""
        now = synced_at or utc_now()
        terminal_at = format_timestamp(now) if server_status.is_terminal else None
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE receipts
                SET note = ?, trip_reference_id = ?, trip_reference_external_id = ?,
                    trip_reference_name = ?, server_status = ?, rejection_reason = ?,
                    terminal_status_at = COALESCE(terminal_status_at, ?), last_synced_at = ?
                WHERE id = ?
            """,
                (
                    note,
                    trip_reference.id if trip_reference else None,
                    trip_reference.external_id if trip_reference else None,
                    trip_reference.name if trip_reference else None,
                    server_status.value,
                    rejection_reason if server_status is ServerStatus.REJECTED else None,
                    terminal_at,
                    format_timestamp(now),
                    receipt_id,
                ),
            )

    def mark_page_downloaded(self, page_id: str) -> None:
        """Flag that a server-side page image is now available locally."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE receipt_pages SET image_downloaded = 1 WHERE id = ?", (page_id,)
            )

    # Preferences

    def get_preference(self, key: str) -> str | None:
        """Get a stored preference value."""
        with self._transaction() as conn:
            row = conn.execute("SELECT value FROM preferences WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def set_preference(self, key: str, value: str) -> None:
        """Insert or replace a preference value."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO preferences (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """,
                (key, value, format_timestamp(utc_now())),
            )

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Get receipt counts by sync and server status."""
        with self._transaction() as conn:
            stats: dict[str, Any] = {}

            stats["receipts_total"] = conn.execute("SELECT COUNT(*) FROM receipts").fetchone()[0]

            rows = conn.execute(
                "SELECT sync_status, COUNT(*) FROM receipts GROUP BY sync_status"
            ).fetchall()
            stats["by_sync_status"] = {row[0]: row[1] for row in rows}

            rows = conn.execute(
                """
                SELECT server_status, COUNT(*) FROM receipts
                WHERE server_status IS NOT NULL GROUP BY server_status
            """
            ).fetchall()
            stats["by_server_status"] = {row[0]: row[1] for row in rows}

            stats["images_cleaned_up"] = conn.execute(
                "SELECT COUNT(*) FROM receipts WHERE images_cleaned_up = 1"
            ).fetchone()[0]

            return stats
