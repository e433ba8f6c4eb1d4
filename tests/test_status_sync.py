"""Tests for review status reconciliation and the remote mirror."""

import asyncio

import pytest

from receipt_sync.api_client import APIErrorKind, ReceiptAPIError, ReceiptConnectionError
from receipt_sync.schemas.api import ReceiptStatusResult, RemoteReceipt, RemoteReceiptImage
from receipt_sync.schemas.receipt import PageContentType, ServerStatus, SyncStatus
from receipt_sync.services import StatusSyncService, UploadQueueService


@pytest.fixture
def status_sync(store, blobs, api, network, state, config) -> StatusSyncService:
    """Status service with a batch size of 2 (see config fixture)."""
    return StatusSyncService(store, blobs, api, network, state, config)


@pytest.fixture
def uploaded(store, make_receipt):
    """Factory for receipts already registered as srv-<n>, pending review."""

    def factory(server_id: str):
        receipt = make_receipt()
        store.mark_uploaded(receipt.id, server_id)
        return store.get_receipt(receipt.id)

    return factory


def statuses(**by_id) -> list[ReceiptStatusResult]:
    return [ReceiptStatusResult(id=key, status=value) for key, value in by_id.items()]


class TestSyncReceiptStatuses:
    """Tests for polling review outcomes."""

    def test_applies_terminal_outcomes(self, status_sync, store, api, uploaded):
        processed = uploaded("srv-1")
        rejected = uploaded("srv-2")
        api.check_status.return_value = [
            ReceiptStatusResult(id="srv-1", status="processed", expense_id="exp-1"),
            ReceiptStatusResult(id="srv-2", status="rejected", rejection_reason="unreadable"),
        ]

        result = asyncio.run(status_sync.sync_receipt_statuses())

        assert (result.processed, result.rejected, result.still_pending) == (1, 1, 0)
        p = store.get_receipt(processed.id)
        r = store.get_receipt(rejected.id)
        assert p.server_status is ServerStatus.PROCESSED
        assert p.terminal_status_at is not None
        assert r.server_status is ServerStatus.REJECTED
        assert r.rejection_reason == "unreadable"

    def test_pending_and_unknown_statuses_left_pending(self, status_sync, store, api, uploaded):
        a = uploaded("srv-1")
        b = uploaded("srv-2")
        api.check_status.return_value = statuses(**{"srv-1": "pending", "srv-2": "in_review"})

        result = asyncio.run(status_sync.sync_receipt_statuses())

        assert result.still_pending == 2
        for receipt in (a, b):
            loaded = store.get_receipt(receipt.id)
            assert loaded.server_status is ServerStatus.PENDING
            assert loaded.terminal_status_at is None

    def test_batches_by_configured_size(self, status_sync, api, uploaded):
        for n in range(1, 6):
            uploaded(f"srv-{n}")

        asyncio.run(status_sync.sync_receipt_statuses())

        batches = [c.args[0] for c in api.check_status.call_args_list]
        assert [len(batch) for batch in batches] == [2, 2, 1]
        assert sorted(sum(batches, [])) == [f"srv-{n}" for n in range(1, 6)]

    def test_failed_batch_skipped_others_applied(self, status_sync, store, api, uploaded):
        receipts = [uploaded(f"srv-{n}") for n in range(1, 5)]
        api.check_status.side_effect = [
            ReceiptConnectionError("timeout"),
            statuses(**{"srv-3": "processed", "srv-4": "processed"}),
        ]

        result = asyncio.run(status_sync.sync_receipt_statuses())

        assert result.batches_failed == 1
        assert result.processed == 2
        assert not result.success
        server_statuses = [store.get_receipt(r.id).server_status for r in receipts]
        assert server_statuses == [
            ServerStatus.PENDING,
            ServerStatus.PENDING,
            ServerStatus.PROCESSED,
            ServerStatus.PROCESSED,
        ]

    def test_unauthorized_stops_remaining_batches(self, status_sync, api, state, uploaded):
        for n in range(1, 5):
            uploaded(f"srv-{n}")
        api.check_status.side_effect = ReceiptAPIError(APIErrorKind.UNAUTHORIZED, 401)

        result = asyncio.run(status_sync.sync_receipt_statuses())

        assert result.stopped
        assert api.check_status.call_count == 1
        assert state.last_error == "Authentication required. Please sign in again."

    def test_terminal_receipts_never_polled_again(self, status_sync, api, uploaded):
        uploaded("srv-1")
        api.check_status.return_value = statuses(**{"srv-1": "processed"})
        asyncio.run(status_sync.sync_receipt_statuses())

        api.check_status.reset_mock()
        asyncio.run(status_sync.sync_receipt_statuses())

        api.check_status.assert_not_called()

    def test_only_uploaded_receipts_polled(self, status_sync, api, make_receipt):
        make_receipt()

        result = asyncio.run(status_sync.sync_receipt_statuses())

        assert result.checked == 0
        api.check_status.assert_not_called()

    def test_offline_is_noop(self, status_sync, network, api, uploaded):
        uploaded("srv-1")
        network.update(False)

        result = asyncio.run(status_sync.sync_receipt_statuses())

        assert result.skipped_reason == "offline"
        api.check_status.assert_not_called()

    def test_migrate_terminal_timestamps(self, status_sync, store, uploaded):
        receipt = uploaded("srv-1")
        conn = store._get_connection()
        try:
            conn.execute(
                "UPDATE receipts SET server_status = 'rejected' WHERE id = ?", (receipt.id,)
            )
            conn.commit()
        finally:
            conn.close()

        assert status_sync.migrate_terminal_timestamps() == 1
        assert store.get_receipt(receipt.id).terminal_status_at is not None


class TestEndToEnd:
    def test_capture_upload_review_rejected(
        self, store, blobs, api, transport, network, state, config, make_receipt
    ):
        """A two-page receipt goes from queued to rejected with its reason."""
        receipt = make_receipt(pages=2)
        queue = UploadQueueService(store, blobs, api, transport, network, state)
        status_sync = StatusSyncService(store, blobs, api, network, state, config)

        asyncio.run(queue.process_queue())
        api.check_status.return_value = [
            ReceiptStatusResult(id="srv-1", status="rejected", rejection_reason="unreadable")
        ]
        asyncio.run(status_sync.sync_receipt_statuses())

        loaded = store.get_receipt(receipt.id)
        assert loaded.sync_status is SyncStatus.UPLOADED
        assert loaded.server_status is ServerStatus.REJECTED
        assert loaded.rejection_reason == "unreadable"
        assert all(page.remote_path for page in loaded.pages)


def remote_receipt(server_id: str, status: str = "pending", pages: int = 1, **fields):
    return RemoteReceipt(
        id=server_id,
        account_id="acct-1",
        status=status,
        created_at="2025-02-01T12:00:00Z",
        images=[
            RemoteReceiptImage(
                id=f"{server_id}-img-{n}",
                file_path=f"acct-1/{server_id}/page-{n}.jpg",
                file_name=f"page-{n}.jpg",
                sort_order=n * 10,
                content_type="image/jpeg",
            )
            for n in range(pages)
        ],
        **fields,
    )


class TestFetchRemoteReceipts:
    """Tests for mirroring the server's receipt list."""

    def test_creates_mirror_for_unknown_receipt(self, status_sync, store, api):
        api.list_receipts.return_value = [
            remote_receipt("srv-9", status="processed", pages=2, note="Parking")
        ]

        result = asyncio.run(status_sync.fetch_remote_receipts("acct-1"))

        assert result.created == 1
        mirror = store.get_receipt_by_server_id("srv-9")
        assert mirror.is_remote
        assert mirror.sync_status is SyncStatus.UPLOADED
        assert mirror.server_status is ServerStatus.PROCESSED
        assert mirror.terminal_status_at is not None
        assert mirror.note == "Parking"
        assert [p.sort_order for p in mirror.pages] == [0, 1]
        assert [p.image_downloaded for p in mirror.pages] == [False, False]
        assert mirror.pages[1].remote_path == "acct-1/srv-9/page-1.jpg"
        assert mirror.pages[0].local_path == f"receipts/{mirror.id}/page-001.jpg"
        assert mirror.pages[0].content_type is PageContentType.JPEG

    def test_updates_known_receipt(self, status_sync, store, api, uploaded):
        local = uploaded("srv-1")
        api.list_receipts.return_value = [
            remote_receipt(
                "srv-1",
                status="rejected",
                note="Edited on web",
                rejection_reason="duplicate",
                trip_reference_id="trip-4",
                trip_reference_name="Aspen",
            )
        ]

        result = asyncio.run(status_sync.fetch_remote_receipts("acct-1"))

        assert (result.created, result.updated) == (0, 1)
        loaded = store.get_receipt(local.id)
        assert loaded.is_remote is False
        assert loaded.note == "Edited on web"
        assert loaded.server_status is ServerStatus.REJECTED
        assert loaded.rejection_reason == "duplicate"
        assert loaded.trip_reference.name == "Aspen"
        assert loaded.last_synced_at is not None

    def test_unknown_remote_status_keeps_receipt_polled(
        self, status_sync, store, api, uploaded
    ):
        """An unrecognised status leaves the receipt pending for the next poll."""
        local = uploaded("srv-1")
        api.list_receipts.return_value = [remote_receipt("srv-1", status="in_review")]

        asyncio.run(status_sync.fetch_remote_receipts("acct-1"))

        assert store.get_receipt(local.id).server_status is ServerStatus.PENDING

        api.check_status.return_value = statuses(**{"srv-1": "processed"})
        asyncio.run(status_sync.sync_receipt_statuses())

        api.check_status.assert_awaited_once_with(["srv-1"])
        assert store.get_receipt(local.id).server_status is ServerStatus.PROCESSED

    def test_unknown_remote_status_keeps_terminal_outcome(
        self, status_sync, store, api, uploaded
    ):
        local = uploaded("srv-1")
        store.update_server_status(local.id, ServerStatus.REJECTED, rejection_reason="blurry")
        api.list_receipts.return_value = [remote_receipt("srv-1", status="archived")]

        asyncio.run(status_sync.fetch_remote_receipts("acct-1"))

        loaded = store.get_receipt(local.id)
        assert loaded.server_status is ServerStatus.REJECTED
        assert loaded.rejection_reason == "blurry"

    def test_mirror_with_unknown_status_is_pending(self, status_sync, store, api):
        api.list_receipts.return_value = [remote_receipt("srv-9", status="in_review")]

        asyncio.run(status_sync.fetch_remote_receipts("acct-1"))

        mirror = store.get_receipt_by_server_id("srv-9")
        assert mirror.server_status is ServerStatus.PENDING
        assert mirror.terminal_status_at is None

    def test_removes_vanished_mirrors_only(self, status_sync, store, blobs, api, uploaded):
        api.list_receipts.return_value = [remote_receipt("srv-9")]
        asyncio.run(status_sync.fetch_remote_receipts("acct-1"))
        mirror = store.get_receipt_by_server_id("srv-9")
        blobs.write(mirror.pages[0].local_path, b"downloaded")
        local = uploaded("srv-1")

        api.list_receipts.return_value = []
        result = asyncio.run(status_sync.fetch_remote_receipts("acct-1"))

        assert result.removed == 1
        assert store.get_receipt(mirror.id) is None
        assert not blobs.receipt_dir(mirror.id).exists()
        assert store.get_receipt(local.id) is not None

    def test_skips_receipts_without_images(self, status_sync, store, api):
        api.list_receipts.return_value = [remote_receipt("srv-9", pages=0)]

        result = asyncio.run(status_sync.fetch_remote_receipts("acct-1"))

        assert result.created == 0
        assert store.get_receipt_by_server_id("srv-9") is None

    def test_fetch_failure_is_reported(self, status_sync, store, api, uploaded):
        uploaded("srv-1")
        api.list_receipts.side_effect = ReceiptAPIError(APIErrorKind.SERVER_ERROR, 503)

        result = asyncio.run(status_sync.fetch_remote_receipts("acct-1"))

        assert not result.success
        assert result.removed == 0
        assert store.get_stats()["receipts_total"] == 1

    def test_uses_configured_limit(self, status_sync, api, config):
        asyncio.run(status_sync.fetch_remote_receipts("acct-1"))
        api.list_receipts.assert_awaited_once_with("acct-1", limit=config.sync.remote_fetch_limit)
