"""Tests for the upload queue.

These tests verify:
- Receipts are uploaded oldest capture first, pages in sort order
- The queued → uploading → {uploaded, queued, failed} state machine
- Single-flight processing and connectivity checks between receipts
- Explicit retry, bulk retry and crash recovery
"""

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from receipt_sync.api_client import APIErrorKind, ReceiptAPIError
from receipt_sync.schemas.receipt import ServerStatus, SyncStatus
from receipt_sync.services import ReceiptNotFoundError, UploadQueueService, retry_delay
from receipt_sync.state_store import utc_now
from receipt_sync.upload_transport import UploadFailedError


@pytest.fixture
def queue(store, blobs, api, transport, network, state) -> UploadQueueService:
    return UploadQueueService(store, blobs, api, transport, network, state)


class TestRetryDelay:
    def test_doubles_from_thirty_seconds(self):
        assert retry_delay(0) == timedelta(seconds=30)
        assert retry_delay(1) == timedelta(seconds=60)
        assert retry_delay(3) == timedelta(seconds=240)

    def test_capped_at_one_hour(self):
        assert retry_delay(7) == timedelta(hours=1)
        assert retry_delay(20) == timedelta(hours=1)


class TestProcessQueue:
    """Tests for a queue pass."""

    def test_uploads_pages_and_registers(self, queue, store, api, transport, make_receipt):
        receipt = make_receipt(pages=2, note="Hangar fee")

        result = asyncio.run(queue.process_queue())

        assert result.uploaded == 1
        assert result.success
        loaded = store.get_receipt(receipt.id)
        assert loaded.sync_status is SyncStatus.UPLOADED
        assert loaded.server_receipt_id == "srv-1"
        assert loaded.server_status is ServerStatus.PENDING
        assert [p.remote_path for p in loaded.pages] == [
            "acct-1/1/page-001.jpg",
            "acct-1/2/page-002.jpg",
        ]

        assert transport.put.call_count == 2
        first_put = transport.put.call_args_list[0].args
        assert first_put[1] == "https://storage.test/upload/1"
        assert first_put[2] == "image/jpeg"

        request = api.create_receipt.call_args.args[0]
        assert request.note == "Hangar fee"
        assert [p.sort_order for p in request.pages] == [0, 1]
        assert [p.file_path for p in request.pages] == [p.remote_path for p in loaded.pages]

    def test_oldest_capture_first(self, queue, api, make_receipt):
        now = utc_now()
        newer = make_receipt(captured_at=now)
        older = make_receipt(captured_at=now - timedelta(days=1))

        result = asyncio.run(queue.process_queue())

        assert result.attempted == [older.id, newer.id]
        assert api.create_receipt.call_count == 2

    def test_uploaded_receipts_not_reselected(self, queue, api, make_receipt):
        make_receipt()

        asyncio.run(queue.process_queue())
        second = asyncio.run(queue.process_queue())

        assert second.attempted == []
        assert api.create_receipt.call_count == 1

    def test_unauthorized_returns_to_queue(self, queue, store, api, state, make_receipt):
        receipt = make_receipt()
        api.create_receipt.side_effect = ReceiptAPIError(APIErrorKind.UNAUTHORIZED, 401)

        result = asyncio.run(queue.process_queue())

        assert result.requeued == 1
        assert result.failed == 0
        loaded = store.get_receipt(receipt.id)
        assert loaded.sync_status is SyncStatus.QUEUED
        assert loaded.sync_error is None
        assert state.last_error is None

    def test_server_error_marks_failed(self, queue, store, api, state, make_receipt):
        receipt = make_receipt()
        api.create_receipt.side_effect = ReceiptAPIError(APIErrorKind.SERVER_ERROR, 500)

        before = utc_now()
        result = asyncio.run(queue.process_queue())

        assert result.failed == 1
        assert not result.success
        loaded = store.get_receipt(receipt.id)
        assert loaded.sync_status is SyncStatus.FAILED
        assert loaded.sync_error == "Server error (500). Please try again later."
        assert loaded.retry_count == 1
        assert loaded.next_retry_after >= before + retry_delay(1)
        assert state.last_error == loaded.sync_error

    def test_failed_receipts_wait_for_explicit_retry(self, queue, api, make_receipt):
        make_receipt()
        api.create_receipt.side_effect = ReceiptAPIError(APIErrorKind.SERVER_ERROR, 500)

        asyncio.run(queue.process_queue())
        second = asyncio.run(queue.process_queue())

        assert second.attempted == []

    def test_missing_blob_fails_receipt(self, queue, store, blobs, api, make_receipt):
        receipt = make_receipt(pages=2)
        blobs.resolve(receipt.pages[1].local_path).unlink()

        asyncio.run(queue.process_queue())

        loaded = store.get_receipt(receipt.id)
        assert loaded.sync_status is SyncStatus.FAILED
        assert "Image not found" in loaded.sync_error
        api.create_receipt.assert_not_called()

    def test_page_failure_stops_remaining_pages(self, queue, store, api, transport, make_receipt):
        receipt = make_receipt(pages=3)
        transport.put.side_effect = [None, UploadFailedError(500)]

        asyncio.run(queue.process_queue())

        loaded = store.get_receipt(receipt.id)
        assert loaded.sync_status is SyncStatus.FAILED
        assert transport.put.call_count == 2
        assert api.get_upload_destination.call_count == 2
        api.create_receipt.assert_not_called()
        # The first page keeps its remote path even though nothing was registered
        assert loaded.pages[0].remote_path == "acct-1/1/page-001.jpg"
        assert loaded.pages[1].remote_path is None
        assert loaded.pages[2].remote_path is None

    def test_retry_after_partial_failure_reuploads_stored_pages(
        self, queue, store, api, transport, make_receipt
    ):
        """
        Known gap: pages stored before a failure are uploaded again on retry,
        and the first remote copy is no longer referenced anywhere.
        """
        receipt = make_receipt(pages=2)
        transport.put.side_effect = [None, UploadFailedError(500), None, None]
        asyncio.run(queue.process_queue())
        first_path = store.get_receipt(receipt.id).pages[0].remote_path

        asyncio.run(queue.retry_receipt(receipt.id))

        loaded = store.get_receipt(receipt.id)
        assert loaded.sync_status is SyncStatus.UPLOADED
        assert transport.put.call_count == 4
        assert loaded.pages[0].remote_path != first_path
        registered = [p.file_path for p in api.create_receipt.call_args.args[0].pages]
        assert first_path not in registered

    def test_single_flight(self, queue, api, transport, make_receipt):
        """A second call while a pass is running returns immediately."""
        make_receipt()
        make_receipt()
        original = api.get_upload_destination.side_effect

        async def scenario():
            release = asyncio.Event()
            entered = asyncio.Event()

            async def slow_destination(**kwargs):
                entered.set()
                await release.wait()
                return original(**kwargs)

            api.get_upload_destination.side_effect = slow_destination
            first = asyncio.create_task(queue.process_queue())
            await entered.wait()
            assert queue.is_processing
            second = await queue.process_queue()
            release.set()
            return await first, second

        first, second = asyncio.run(scenario())

        assert second.skipped_reason == "already_running"
        assert second.attempted == []
        assert first.uploaded == 2
        assert api.create_receipt.call_count == 2

    def test_offline_does_nothing(self, queue, network, api, make_receipt):
        make_receipt()
        network.update(False)

        result = asyncio.run(queue.process_queue())

        assert result.skipped_reason == "offline"
        api.get_upload_destination.assert_not_called()

    def test_connectivity_loss_stops_between_receipts(
        self, queue, store, network, api, make_receipt
    ):
        first = make_receipt()
        second = make_receipt()

        def register_then_drop(request):
            network.update(False)
            return original(request)

        original = api.create_receipt.side_effect
        api.create_receipt.side_effect = register_then_drop

        result = asyncio.run(queue.process_queue())

        assert result.aborted
        assert result.attempted == [first.id]
        assert store.get_receipt(first.id).sync_status is SyncStatus.UPLOADED
        assert store.get_receipt(second.id).sync_status is SyncStatus.QUEUED

    def test_backoff_window_defers_receipt(self, queue, store, make_receipt):
        receipt = make_receipt()
        store.mark_failed(receipt.id, "boom", next_retry_after=utc_now() + timedelta(minutes=5))
        store.requeue(receipt.id)

        result = asyncio.run(queue.process_queue())

        assert result.deferred == 1
        assert result.attempted == []
        assert store.get_receipt(receipt.id).sync_status is SyncStatus.QUEUED

    def test_syncing_flag_cleared(self, queue, state, make_receipt):
        make_receipt()
        asyncio.run(queue.process_queue())
        assert state.is_syncing is False

    def test_store_error_returns_receipt_to_queue(
        self, queue, store, api, make_receipt, monkeypatch
    ):
        """A failed state write never leaves the receipt in uploading."""
        receipt = make_receipt()
        api.create_receipt.side_effect = ReceiptAPIError(APIErrorKind.SERVER_ERROR, 500)

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store, "mark_failed", locked)

        result = asyncio.run(queue.process_queue())

        assert not result.success
        assert "database is locked" in result.errors[0]
        assert store.get_receipt(receipt.id).sync_status is SyncStatus.QUEUED

    def test_store_error_on_requeue_is_reported(
        self, queue, store, api, make_receipt, monkeypatch
    ):
        receipt = make_receipt()
        api.create_receipt.side_effect = ReceiptAPIError(APIErrorKind.UNAUTHORIZED, 401)

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store, "requeue", locked)

        result = asyncio.run(queue.process_queue())

        assert result.errors == [f"Receipt {receipt.id}: database is locked"]
        assert store.get_receipt(receipt.id).sync_status is SyncStatus.UPLOADING


class TestRetryAndRecovery:
    """Tests for retry and crash recovery."""

    def test_retry_receipt(self, queue, store, api, make_receipt):
        receipt = make_receipt()
        store.mark_failed(receipt.id, "boom", next_retry_after=utc_now() + timedelta(hours=1))

        result = asyncio.run(queue.retry_receipt(receipt.id))

        assert result.uploaded == 1
        assert store.get_receipt(receipt.id).sync_status is SyncStatus.UPLOADED

    def test_retry_unknown_receipt(self, queue):
        with pytest.raises(ReceiptNotFoundError):
            asyncio.run(queue.retry_receipt("nope"))

    def test_retry_leaves_uploaded_receipt_alone(self, queue, store, api, make_receipt):
        receipt = make_receipt()
        store.mark_uploaded(receipt.id, "srv-x")

        asyncio.run(queue.retry_receipt(receipt.id))

        loaded = store.get_receipt(receipt.id)
        assert loaded.sync_status is SyncStatus.UPLOADED
        assert loaded.server_receipt_id == "srv-x"
        api.create_receipt.assert_not_called()

    def test_retry_all_failed(self, queue, store, make_receipt):
        receipts = [make_receipt(), make_receipt()]
        for receipt in receipts:
            store.mark_failed(receipt.id, "boom")

        result = asyncio.run(queue.retry_all_failed())

        assert result.uploaded == 2
        assert all(
            store.get_receipt(r.id).sync_status is SyncStatus.UPLOADED for r in receipts
        )

    def test_reset_stuck_uploads_is_idempotent(self, queue, store, make_receipt):
        receipt = make_receipt()
        store.mark_uploading(receipt.id)

        assert queue.reset_stuck_uploads() == 1
        assert queue.reset_stuck_uploads() == 0

        result = asyncio.run(queue.process_queue())
        assert result.attempted == [receipt.id]

    def test_stuck_upload_not_selected_without_reset(self, queue, store, make_receipt):
        receipt = make_receipt()
        store.mark_uploading(receipt.id)

        result = asyncio.run(queue.process_queue())

        assert result.attempted == []

    def test_network_change(self, queue, network, api, make_receipt):
        make_receipt()

        assert asyncio.run(queue.handle_network_change(False)) is None
        api.create_receipt.assert_not_called()

        result = asyncio.run(queue.handle_network_change(True))
        assert result.uploaded == 1
