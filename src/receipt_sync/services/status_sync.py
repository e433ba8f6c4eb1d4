"""Review status reconciliation.

Polls the receipt service for the review outcome of uploaded receipts and
merges it into local state. Everything here is best-effort: a failed batch
is skipped and picked up again by the next poll, because only receipts that
are still pending are ever selected.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import TYPE_CHECKING

from receipt_sync.api_client import APIErrorKind, ReceiptAPIClientError, ReceiptAPIError
from receipt_sync.schemas.receipt import PageContentType, ServerStatus, SyncStatus, TripReference
from receipt_sync.services.results import EngineState, RemoteFetchResult, StatusSyncResult
from receipt_sync.state_store import PageRecord, ReceiptRecord, parse_timestamp, utc_now
from receipt_sync.storage import page_file_name
from receipt_sync.storage.blobs import RECEIPTS_DIR

if TYPE_CHECKING:
    from receipt_sync.api_client import ReceiptAPIClient
    from receipt_sync.config import Config
    from receipt_sync.schemas.api import RemoteReceipt
    from receipt_sync.services.connectivity import ConnectivitySource
    from receipt_sync.state_store import ReceiptStore
    from receipt_sync.storage import BlobStore

logger = logging.getLogger(__name__)

# Malformed payloads surface as these when decoding responses
_DECODE_ERRORS = (ValueError, KeyError, TypeError)


class StatusSyncService:
    """Merges server-side review outcomes into local receipts."""

    def __init__(
        self,
        store: ReceiptStore,
        blobs: BlobStore,
        api: ReceiptAPIClient,
        network: ConnectivitySource,
        state: EngineState,
        config: Config,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.api = api
        self.network = network
        self.state = state
        self.config = config

    async def sync_receipt_statuses(self) -> StatusSyncResult:
        """Poll review outcomes for every uploaded receipt still pending.

        Receipts are checked in batches of sync.status_batch_size. A failed
        batch is skipped; an authorization failure stops the remaining
        batches since they would fail the same way.

        Returns:
            StatusSyncResult with per-outcome counts.
        """
        result = StatusSyncResult()
        if not self.network.is_connected:
            result.skipped_reason = "offline"
            return result

        receipts = self.store.list_receipts(
            sync_status=SyncStatus.UPLOADED, server_status=ServerStatus.PENDING
        )
        batch_size = self.config.sync.status_batch_size

        for start in range(0, len(receipts), batch_size):
            batch = receipts[start : start + batch_size]
            server_ids = [r.server_receipt_id for r in batch if r.server_receipt_id]
            if not server_ids:
                continue

            try:
                statuses = await self.api.check_status(server_ids)
            except ReceiptAPIError as e:
                if e.kind is APIErrorKind.UNAUTHORIZED:
                    logger.warning("Status sync auth error, stopping")
                    self.state.last_error = e.user_message
                    result.errors.append(e.user_message)
                    result.stopped = True
                    break
                logger.warning("Status sync failed for batch at %d: %s", start, e)
                result.errors.append(str(e))
                result.batches_failed += 1
                continue
            except (ReceiptAPIClientError, *_DECODE_ERRORS) as e:
                logger.warning("Status sync failed for batch at %d: %s", start, e)
                result.errors.append(str(e))
                result.batches_failed += 1
                continue

            self._merge_batch(batch, statuses, result)

        if result.checked:
            logger.info(
                "Status sync: %d checked, %d processed, %d rejected, %d pending, %d batches failed",
                result.checked,
                result.processed,
                result.rejected,
                result.still_pending,
                result.batches_failed,
            )
        return result

    def _merge_batch(self, batch: list[ReceiptRecord], statuses, result: StatusSyncResult) -> None:
        status_map = {status.id: status for status in statuses}
        observed_at = utc_now()

        for receipt in batch:
            status = status_map.get(receipt.server_receipt_id)
            if status is None:
                continue
            result.checked += 1

            server_status = ServerStatus.parse(status.status)
            if server_status is None or not server_status.is_terminal:
                result.still_pending += 1
                continue

            try:
                self.store.update_server_status(
                    receipt.id,
                    server_status,
                    rejection_reason=status.rejection_reason,
                    observed_at=observed_at,
                )
            except sqlite3.Error as e:
                logger.error("Failed to save status for receipt %s: %s", receipt.id, e)
                result.errors.append(f"Receipt {receipt.id}: {e}")
                continue

            if server_status is ServerStatus.PROCESSED:
                result.processed += 1
            else:
                result.rejected += 1

    def migrate_terminal_timestamps(self) -> int:
        """Stamp terminal receipts recorded before terminal times were tracked."""
        count = self.store.backfill_terminal_timestamps()
        if count:
            logger.info("Backfilled terminal timestamp on %d receipts", count)
        return count

    async def fetch_remote_receipts(self, account_id: str) -> RemoteFetchResult:
        """Mirror the account's server-side receipt list into the local store.

        Known receipts (matched by server id) are refreshed, unknown ones are
        created as remote mirrors without local images, and mirrors the
        server no longer lists are removed.
        """
        result = RemoteFetchResult()
        if not self.network.is_connected:
            result.skipped_reason = "offline"
            return result

        try:
            remote_receipts = await asyncio.wait_for(
                self.api.list_receipts(account_id, limit=self.config.sync.remote_fetch_limit),
                timeout=self.config.sync.network_query_timeout_seconds,
            )
        except (ReceiptAPIClientError, asyncio.TimeoutError, *_DECODE_ERRORS) as e:
            logger.warning("Remote receipt fetch failed: %s", e)
            result.errors.append(str(e) or type(e).__name__)
            return result

        local_receipts = self.store.list_receipts(account_id=account_id)
        by_server_id = {r.server_receipt_id: r for r in local_receipts if r.server_receipt_id}
        remote_ids = set()

        for remote in remote_receipts:
            remote_ids.add(remote.id)
            try:
                existing = by_server_id.get(remote.id)
                if existing is not None:
                    server_status = ServerStatus.parse(remote.status)
                    rejection_reason = remote.rejection_reason
                    if server_status is None:
                        logger.debug(
                            "Unknown status %r for remote receipt %s, keeping local status",
                            remote.status,
                            remote.id,
                        )
                        server_status = existing.server_status or ServerStatus.PENDING
                        rejection_reason = existing.rejection_reason
                    self.store.update_from_remote(
                        existing.id,
                        note=remote.note,
                        trip_reference=_trip_reference(remote),
                        server_status=server_status,
                        rejection_reason=rejection_reason,
                    )
                    result.updated += 1
                elif remote.images:
                    self.store.add_receipt(self._mirror_from_remote(remote, account_id))
                    result.created += 1
                else:
                    logger.debug("Skipping remote receipt %s without images", remote.id)
            except (sqlite3.Error, ValueError) as e:
                logger.error("Failed to mirror remote receipt %s: %s", remote.id, e)
                result.errors.append(f"Remote receipt {remote.id}: {e}")

        for receipt in local_receipts:
            if receipt.is_remote and receipt.server_receipt_id not in remote_ids:
                try:
                    self.blobs.delete_receipt(receipt.id)
                    self.store.delete_receipt(receipt.id)
                    result.removed += 1
                except sqlite3.Error as e:
                    logger.error("Failed to remove stale mirror %s: %s", receipt.id, e)
                    result.errors.append(f"Receipt {receipt.id}: {e}")

        logger.info(
            "Remote fetch for account %s: %d created, %d updated, %d removed",
            account_id,
            result.created,
            result.updated,
            result.removed,
        )
        return result

    def _mirror_from_remote(self, remote: RemoteReceipt, account_id: str) -> ReceiptRecord:
        now = utc_now()
        receipt = ReceiptRecord(
            account_id=account_id,
            note=remote.note,
            trip_reference=_trip_reference(remote),
            captured_at=_parse_created_at(remote.created_at) or now,
            sync_status=SyncStatus.UPLOADED,
            server_receipt_id=remote.id,
            server_status=ServerStatus.parse(remote.status) or ServerStatus.PENDING,
            is_remote=True,
            last_synced_at=now,
        )
        if receipt.server_status is ServerStatus.REJECTED:
            receipt.rejection_reason = remote.rejection_reason
        if receipt.server_status.is_terminal:
            receipt.terminal_status_at = now

        images = sorted(remote.images, key=lambda img: img.sort_order)
        for index, image in enumerate(images):
            content_type = PageContentType.parse(image.content_type)
            receipt.pages.append(
                PageRecord(
                    sort_order=index,
                    local_path=f"{RECEIPTS_DIR}/{receipt.id}/{page_file_name(index, content_type)}",
                    content_type=content_type,
                    remote_path=image.file_path,
                    image_downloaded=False,
                )
            )
        return receipt


def _trip_reference(remote: RemoteReceipt) -> TripReference | None:
    if not remote.trip_reference_id:
        return None
    return TripReference(
        id=remote.trip_reference_id,
        external_id=remote.trip_reference_external_id,
        name=remote.trip_reference_name,
    )


def _parse_created_at(value: str) -> datetime | None:
    try:
        return parse_timestamp(value)
    except ValueError:
        return None
