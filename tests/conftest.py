"""Test fixtures and utilities."""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from receipt_sync.api_client import ReceiptAPIClient
from receipt_sync.config import ApiConfig, Config, SyncConfig
from receipt_sync.schemas.api import CreateReceiptResponse, UploadDestination
from receipt_sync.schemas.receipt import PageContentType
from receipt_sync.services import EngineState, NetworkMonitor
from receipt_sync.state_store import PageRecord, ReceiptRecord, ReceiptStore
from receipt_sync.storage import BlobStore
from receipt_sync.upload_transport import ObjectStorageTransport

# Fake JPEG payload (SOI marker + filler)
SAMPLE_JPEG = b"\xff\xd8\xff\xe0" + b"receipt-page" * 8

BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> ReceiptStore:
    """Fresh receipt store in a temporary database."""
    return ReceiptStore(temp_db)


@pytest.fixture
def blobs(tmp_path) -> BlobStore:
    """Blob store rooted in a temporary directory."""
    return BlobStore(tmp_path / "storage")


@pytest.fixture
def config(tmp_path, temp_db) -> Config:
    """Create test configuration."""
    return Config(
        api=ApiConfig(base_url="http://receipts.test", token="test-token"),
        sync=SyncConfig(status_batch_size=2),
        storage_root=tmp_path / "storage",
        state_db_path=temp_db,
    )


@pytest.fixture
def network() -> NetworkMonitor:
    return NetworkMonitor(is_connected=True)


@pytest.fixture
def state() -> EngineState:
    return EngineState()


@pytest.fixture
def api() -> MagicMock:
    """
    Receipt API mock that hands out numbered upload destinations and
    numbered server receipt IDs.
    """
    mock = MagicMock(spec=ReceiptAPIClient)
    destinations = iter(range(1, 1000))
    server_ids = iter(range(1, 1000))

    def upload_destination(account_id, file_name, content_type, file_size):
        n = next(destinations)
        return UploadDestination(
            upload_url=f"https://storage.test/upload/{n}",
            file_path=f"{account_id}/{n}/{file_name}",
        )

    def create_receipt(request):
        return CreateReceiptResponse(
            id=f"srv-{next(server_ids)}", status="pending", created_at="2025-03-01T09:00:00Z"
        )

    mock.get_upload_destination.side_effect = upload_destination
    mock.create_receipt.side_effect = create_receipt
    mock.check_status.return_value = []
    mock.list_receipts.return_value = []
    return mock


@pytest.fixture
def transport() -> MagicMock:
    return MagicMock(spec=ObjectStorageTransport)


@pytest.fixture
def make_receipt(store, blobs) -> Callable[..., ReceiptRecord]:
    """
    Factory that writes page blobs, persists a receipt and returns it as
    stored. Receipts are captured one minute apart in creation order unless
    captured_at is given.
    """
    counter = iter(range(1000))

    def factory(pages: int = 1, account_id: str = "acct-1", **fields) -> ReceiptRecord:
        fields.setdefault("captured_at", BASE_TIME + timedelta(minutes=next(counter)))
        receipt = ReceiptRecord(account_id=account_id, **fields)
        for index in range(pages):
            local_path = blobs.save_page(
                receipt.id, index, SAMPLE_JPEG, PageContentType.JPEG, thumbnail=b"thumb"
            )
            receipt.pages.append(PageRecord(sort_order=index, local_path=local_path))
        store.add_receipt(receipt)
        return store.get_receipt(receipt.id)

    return factory
