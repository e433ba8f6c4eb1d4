"""Upload queue processing.

Drives queued receipts through object storage upload and registration with
the receipt service:

    QUEUED → UPLOADING → UPLOADED   (pages stored, receipt registered)
                       → QUEUED     (unauthorized: wait for sign-in)
                       → FAILED     (anything else, until explicit retry)

UPLOADING is persisted before any work starts, so a receipt found in that
state after a restart belongs to a dead process and is reclaimed by
reset_stuck_uploads().
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import timedelta
from typing import TYPE_CHECKING

from receipt_sync.api_client import APIErrorKind, ReceiptAPIError
from receipt_sync.schemas.api import CreateReceiptRequest, PageUpload
from receipt_sync.schemas.receipt import SyncStatus
from receipt_sync.services.results import EngineState, QueueRunResult, ReceiptNotFoundError
from receipt_sync.state_store import utc_now

if TYPE_CHECKING:
    from receipt_sync.api_client import ReceiptAPIClient
    from receipt_sync.services.connectivity import ConnectivitySource
    from receipt_sync.state_store import ReceiptRecord, ReceiptStore
    from receipt_sync.storage import BlobStore
    from receipt_sync.upload_transport import ObjectStorageTransport

logger = logging.getLogger(__name__)


def retry_delay(retry_count: int) -> timedelta:
    """Backoff after the retry_count-th failure: 2^n * 30s, capped at one hour."""
    return timedelta(seconds=min(2**retry_count * 30, 3600))


class UploadQueueService:
    """Single-flight, strictly sequential uploader for queued receipts."""

    def __init__(
        self,
        store: ReceiptStore,
        blobs: BlobStore,
        api: ReceiptAPIClient,
        transport: ObjectStorageTransport,
        network: ConnectivitySource,
        state: EngineState,
    ) -> None:
        """Initialize the queue service.

        Args:
            store: Local record store.
            blobs: Local page image storage.
            api: Receipt service client.
            transport: Object storage transport for page bytes.
            network: Connectivity signal.
            state: Engine state shared with the other components.
        """
        self.store = store
        self.blobs = blobs
        self.api = api
        self.transport = transport
        self.network = network
        self.state = state
        self._queue_lock = asyncio.Lock()

    @property
    def is_processing(self) -> bool:
        return self._queue_lock.locked()

    async def process_queue(self) -> QueueRunResult:
        """Upload every queued receipt, oldest capture first.

        A call made while another pass is running, or while offline, does
        nothing. Connectivity is re-checked before each receipt; losing it
        stops the pass but never interrupts the receipt in flight.

        Returns:
            QueueRunResult describing the pass.
        """
        result = QueueRunResult()

        if self._queue_lock.locked():
            logger.debug("Queue processing already running, skipping")
            result.skipped_reason = "already_running"
            return result
        if not self.network.is_connected:
            logger.debug("Offline, not processing queue")
            result.skipped_reason = "offline"
            return result

        async with self._queue_lock:
            self.state.is_syncing = True
            try:
                await self._drain(result)
            finally:
                self.state.is_syncing = False

        if result.attempted:
            logger.info(
                "Queue pass finished: %d uploaded, %d failed, %d requeued, %d deferred%s",
                result.uploaded,
                result.failed,
                result.requeued,
                result.deferred,
                " (aborted: offline)" if result.aborted else "",
            )
        return result

    async def _drain(self, result: QueueRunResult) -> None:
        receipts = self.store.list_receipts(sync_status=SyncStatus.QUEUED)
        now = utc_now()

        for index, receipt in enumerate(receipts):
            if not self.network.is_connected:
                logger.info(
                    "Connectivity lost, leaving %d receipts queued", len(receipts) - index
                )
                result.aborted = True
                break

            if receipt.next_retry_after and receipt.next_retry_after > now:
                result.deferred += 1
                continue

            result.attempted.append(receipt.id)
            try:
                outcome = await self.upload_receipt(receipt)
            except sqlite3.Error as e:
                logger.error("Failed to persist upload state for receipt %s: %s", receipt.id, e)
                result.errors.append(f"Receipt {receipt.id}: {e}")
                self._release(receipt.id)
                continue

            if outcome is SyncStatus.UPLOADED:
                result.uploaded += 1
            elif outcome is SyncStatus.QUEUED:
                result.requeued += 1
            else:
                result.failed += 1
                result.errors.append(f"Receipt {receipt.id}: {self.state.last_error}")

    async def upload_receipt(self, receipt: ReceiptRecord) -> SyncStatus:
        """Upload one receipt's pages in order, then register it.

        A page failure abandons the remaining pages. Pages already stored keep
        their remote path even though the receipt is not registered; a later
        retry uploads them again to a fresh destination.

        Returns:
            The sync status the receipt was left in.
        """
        self.store.mark_uploading(receipt.id)
        logger.debug("Uploading receipt %s (%d pages)", receipt.id, len(receipt.pages))

        try:
            page_uploads: list[PageUpload] = []
            for page in receipt.sorted_pages:
                data = self.blobs.read(page.local_path)
                content_type = page.content_type.value

                destination = await self.api.get_upload_destination(
                    account_id=receipt.account_id,
                    file_name=page.file_name,
                    content_type=content_type,
                    file_size=len(data),
                )
                await asyncio.to_thread(
                    self.transport.put, data, destination.upload_url, content_type
                )

                self.store.set_page_remote_path(page.id, destination.file_path)
                page.remote_path = destination.file_path
                page_uploads.append(
                    PageUpload(
                        file_path=destination.file_path,
                        file_name=page.file_name,
                        file_size=len(data),
                        sort_order=page.sort_order,
                        content_type=content_type,
                    )
                )

            response = await self.api.create_receipt(
                CreateReceiptRequest(
                    account_id=receipt.account_id,
                    note=receipt.note,
                    trip_reference_id=receipt.trip_reference.id if receipt.trip_reference else None,
                    pages=page_uploads,
                )
            )

        except ReceiptAPIError as e:
            if e.kind is APIErrorKind.UNAUTHORIZED:
                logger.info("Receipt %s waiting for sign-in, back to queue", receipt.id)
                self.store.requeue(receipt.id)
                return SyncStatus.QUEUED
            return self._fail(receipt, e.user_message)
        except sqlite3.Error:
            raise
        except Exception as e:
            return self._fail(receipt, str(e))

        self.store.mark_uploaded(receipt.id, response.id)
        logger.info("Receipt %s uploaded as %s", receipt.id, response.id)
        return SyncStatus.UPLOADED

    def _fail(self, receipt: ReceiptRecord, message: str) -> SyncStatus:
        next_retry = utc_now() + retry_delay(receipt.retry_count + 1)
        self.store.mark_failed(receipt.id, message, next_retry_after=next_retry)
        self.state.last_error = message
        logger.warning("Upload failed for receipt %s: %s", receipt.id, message)
        return SyncStatus.FAILED

    def _release(self, receipt_id: str) -> None:
        # Nothing may stay in uploading once its pass is over
        try:
            self.store.requeue(receipt_id)
        except sqlite3.Error as e:
            logger.error("Failed to return receipt %s to the queue: %s", receipt_id, e)

    async def retry_receipt(self, receipt_id: str) -> QueueRunResult:
        """Requeue one failed receipt and run the queue.

        Receipts already uploaded (or mid-upload) are left alone.
        """
        receipt = self.store.get_receipt(receipt_id)
        if receipt is None:
            raise ReceiptNotFoundError(receipt_id)

        if receipt.sync_status in (SyncStatus.FAILED, SyncStatus.QUEUED):
            self.store.requeue(receipt_id, reset_retry=True)
        else:
            logger.warning(
                "Not retrying receipt %s in state %s", receipt_id, receipt.sync_status.value
            )
        return await self.process_queue()

    async def retry_all_failed(self) -> QueueRunResult:
        """Requeue every failed receipt in one transaction and run the queue."""
        count = self.store.requeue_all_failed()
        if count:
            logger.info("Requeued %d failed receipts", count)
        return await self.process_queue()

    def reset_stuck_uploads(self) -> int:
        """Reclaim receipts a previous process left in uploading state.

        Must run once at startup, before the first process_queue().
        """
        count = self.store.reset_stuck_uploads()
        if count:
            logger.warning("Reset %d receipts stuck in uploading state", count)
        return count

    async def handle_network_change(self, is_connected: bool) -> QueueRunResult | None:
        """Drain the queue when connectivity becomes available."""
        if not is_connected:
            return None
        return await self.process_queue()
