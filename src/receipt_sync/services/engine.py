"""Offline-first sync engine.

SyncEngine owns one instance of each component and the state they share.
Hosts call start() once per process, before anything else, then drive the
engine from their own triggers (launch, foreground, connectivity change,
periodic timer). The engine never schedules work by itself.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from receipt_sync.api_client import ReceiptAPIClient, TokenProvider, static_token_provider
from receipt_sync.config import PREF_LAST_ACCOUNT_ID
from receipt_sync.services.connectivity import ConnectivitySource, NetworkMonitor
from receipt_sync.services.receipt_operations import ReceiptOperations
from receipt_sync.services.results import (
    CleanupResult,
    EngineState,
    QueueRunResult,
    RemoteFetchResult,
    StatusSyncResult,
)
from receipt_sync.services.retention import RetentionSweeper
from receipt_sync.services.status_sync import StatusSyncService
from receipt_sync.services.upload_queue import UploadQueueService
from receipt_sync.state_store import ReceiptStore
from receipt_sync.storage import BlobStore
from receipt_sync.upload_transport import ObjectStorageTransport

if TYPE_CHECKING:
    from receipt_sync.config import Config
    from receipt_sync.schemas.receipt import TripReference
    from receipt_sync.state_store import ReceiptRecord

logger = logging.getLogger(__name__)


class SyncEngine:
    """Facade over queue, status reconciler, operations and retention."""

    def __init__(
        self,
        config: Config,
        store: ReceiptStore,
        blobs: BlobStore,
        api: ReceiptAPIClient,
        transport: ObjectStorageTransport,
        network: ConnectivitySource,
    ) -> None:
        self.config = config
        self.store = store
        self.blobs = blobs
        self.api = api
        self.transport = transport
        self.network = network
        self.state = EngineState()

        self.queue = UploadQueueService(store, blobs, api, transport, network, self.state)
        self.status = StatusSyncService(store, blobs, api, network, self.state, config)
        self.operations = ReceiptOperations(store, blobs, api, transport)
        self.retention = RetentionSweeper(store, blobs, config)

    @classmethod
    def from_config(
        cls,
        config: Config,
        token_provider: TokenProvider | None = None,
        network: ConnectivitySource | None = None,
    ) -> SyncEngine:
        """
        Build an engine and its collaborators from configuration.

        Args:
            config: Application configuration
            token_provider: Session provider; defaults to the configured static token
            network: Connectivity signal; defaults to an always-online monitor
        """
        api = ReceiptAPIClient(
            base_url=config.api.base_url,
            token_provider=token_provider or static_token_provider(config.api.token),
            timeout=config.api.timeout_seconds,
            max_retries=config.api.max_retries,
        )
        return cls(
            config=config,
            store=ReceiptStore(config.state_db_path),
            blobs=BlobStore(Path(config.storage_root)),
            api=api,
            transport=ObjectStorageTransport(max_retries=config.api.max_retries),
            network=network or NetworkMonitor(),
        )

    async def aclose(self) -> None:
        await self.api.aclose()

    async def __aenter__(self) -> SyncEngine:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def is_syncing(self) -> bool:
        return self.state.is_syncing

    @property
    def last_error(self) -> str | None:
        return self.state.last_error

    def start(self) -> None:
        """Crash recovery; must run before the first process_queue()."""
        self.queue.reset_stuck_uploads()
        self.status.migrate_terminal_timestamps()

    # Queue

    async def process_queue(self) -> QueueRunResult:
        return await self.queue.process_queue()

    async def retry_receipt(self, receipt_id: str) -> QueueRunResult:
        return await self.queue.retry_receipt(receipt_id)

    async def retry_all_failed(self) -> QueueRunResult:
        return await self.queue.retry_all_failed()

    def reset_stuck_uploads(self) -> int:
        return self.queue.reset_stuck_uploads()

    async def handle_network_change(self, is_connected: bool) -> QueueRunResult | None:
        if isinstance(self.network, NetworkMonitor):
            self.network.update(is_connected)
        return await self.queue.handle_network_change(is_connected)

    # Status

    async def sync_receipt_statuses(self) -> StatusSyncResult:
        return await self.status.sync_receipt_statuses()

    async def fetch_remote_receipts(self, account_id: str) -> RemoteFetchResult:
        return await self.status.fetch_remote_receipts(account_id)

    # User operations

    async def delete_receipt(self, receipt_id: str) -> None:
        await self.operations.delete_receipt(receipt_id)

    async def update_receipt_metadata(
        self,
        receipt_id: str,
        note: str | None,
        trip_reference: TripReference | None,
    ) -> None:
        await self.operations.update_receipt_metadata(receipt_id, note, trip_reference)

    async def download_page_image(self, page_id: str) -> Path:
        return await self.operations.download_page_image(page_id)

    def import_files(self, account_id: str, paths: list[Path], **kwargs) -> ReceiptRecord:
        return self.operations.import_files(account_id, paths, **kwargs)

    # Retention

    def perform_cleanup(self) -> CleanupResult:
        return self.retention.perform_cleanup()

    async def run_sync_cycle(self) -> tuple[QueueRunResult, StatusSyncResult, CleanupResult]:
        """One full pass: drain the queue, poll review status, then clean up."""
        queue_result = await self.process_queue()
        status_result = await self.sync_receipt_statuses()
        cleanup_result = self.perform_cleanup()
        return queue_result, status_result, cleanup_result

    # Preferences

    @property
    def last_account_id(self) -> str | None:
        return self.store.get_preference(PREF_LAST_ACCOUNT_ID)

    def set_last_account_id(self, account_id: str) -> None:
        self.store.set_preference(PREF_LAST_ACCOUNT_ID, account_id)
