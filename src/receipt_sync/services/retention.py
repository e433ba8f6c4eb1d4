"""Local storage retention.

Phase 1 deletes the page images of reviewed receipts once they are older
than the retention window (measured from terminal_status_at); the receipt
row stays browsable. Phase 2, when cleanup.purge_metadata is set, deletes
the row as well after retention * metadata_retention_multiplier days.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from receipt_sync.config import PREF_IMAGE_RETENTION_DAYS, PREF_LAST_ORPHAN_SWEEP
from receipt_sync.services.results import CleanupResult
from receipt_sync.state_store import format_timestamp, parse_timestamp, utc_now

if TYPE_CHECKING:
    from receipt_sync.config import Config
    from receipt_sync.state_store import ReceiptRecord, ReceiptStore
    from receipt_sync.storage import BlobStore

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Reclaims local blob storage of receipts whose review is complete."""

    def __init__(self, store: ReceiptStore, blobs: BlobStore, config: Config) -> None:
        self.store = store
        self.blobs = blobs
        self.config = config

    @property
    def retention_days(self) -> int:
        """Retention window in days; the stored preference wins over config."""
        raw = self.store.get_preference(PREF_IMAGE_RETENTION_DAYS)
        if raw is not None:
            try:
                days = int(raw)
            except ValueError:
                logger.warning("Ignoring invalid retention preference %r", raw)
            else:
                if days >= 0:
                    return days
        return self.config.cleanup.image_retention_days

    def set_retention_days(self, days: int) -> None:
        if days < 0:
            raise ValueError("Retention days must not be negative")
        self.store.set_preference(PREF_IMAGE_RETENTION_DAYS, str(days))

    def perform_cleanup(self, now: datetime | None = None) -> CleanupResult:
        """Run both retention phases, then the (rate-limited) orphan sweep."""
        now = now or utc_now()
        result = CleanupResult()

        retention = self.retention_days
        image_cutoff = now - timedelta(days=retention)
        metadata_cutoff = None
        if self.config.cleanup.purge_metadata:
            metadata_cutoff = now - timedelta(
                days=retention * self.config.cleanup.metadata_retention_multiplier
            )

        for receipt in self.store.get_terminal_receipts():
            terminal_at = receipt.terminal_status_at
            try:
                if metadata_cutoff is not None and terminal_at < metadata_cutoff:
                    self.blobs.delete_receipt(receipt.id)
                    self.store.delete_receipt(receipt.id)
                    result.receipts_purged += 1
                elif terminal_at < image_cutoff and not receipt.images_cleaned_up:
                    self._delete_images(receipt)
                    self.store.mark_images_cleaned_up(receipt.id)
                    result.images_cleaned += 1
            except (OSError, sqlite3.Error) as e:
                logger.error("Cleanup failed for receipt %s: %s", receipt.id, e)
                result.errors.append(f"Receipt {receipt.id}: {e}")

        result.orphans_removed = self.clean_orphaned_files(now)

        if result.images_cleaned or result.receipts_purged or result.orphans_removed:
            logger.info(
                "Cleanup: %d receipts lost images, %d purged, %d orphaned directories removed",
                result.images_cleaned,
                result.receipts_purged,
                result.orphans_removed,
            )
        return result

    def _delete_images(self, receipt: ReceiptRecord) -> None:
        for page in receipt.pages:
            self.blobs.delete_page(page.local_path)
        self.blobs.delete_receipt(receipt.id)

    def clean_orphaned_files(self, now: datetime | None = None) -> int:
        """
        Remove receipt directories that no receipt row refers to.

        Runs at most once per cleanup.orphan_sweep_interval_days.

        Returns:
            Number of directories removed
        """
        now = now or utc_now()
        last_run = parse_timestamp(self.store.get_preference(PREF_LAST_ORPHAN_SWEEP))
        interval = timedelta(days=self.config.cleanup.orphan_sweep_interval_days)
        if last_run is not None and now - last_run < interval:
            return 0

        known = self.store.get_receipt_ids()
        removed = 0
        for receipt_id in self.blobs.list_receipt_dirs():
            if receipt_id not in known:
                self.blobs.delete_receipt(receipt_id)
                removed += 1

        self.store.set_preference(PREF_LAST_ORPHAN_SWEEP, format_timestamp(now))
        if removed:
            logger.info("Removed %d orphaned receipt directories", removed)
        return removed
