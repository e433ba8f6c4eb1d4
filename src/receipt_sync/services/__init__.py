"""Sync engine services: upload queue, status reconciliation, retention."""

from receipt_sync.services.connectivity import ConnectivitySource, NetworkMonitor
from receipt_sync.services.engine import SyncEngine
from receipt_sync.services.receipt_operations import ReceiptOperations
from receipt_sync.services.results import (
    BestEffortResult,
    CleanupResult,
    EngineState,
    PageNotAvailableError,
    QueueRunResult,
    ReceiptNotFoundError,
    RemoteFetchResult,
    StatusSyncResult,
)
from receipt_sync.services.retention import RetentionSweeper
from receipt_sync.services.status_sync import StatusSyncService
from receipt_sync.services.upload_queue import UploadQueueService, retry_delay

__all__ = [
    "SyncEngine",
    "UploadQueueService",
    "StatusSyncService",
    "ReceiptOperations",
    "RetentionSweeper",
    "ConnectivitySource",
    "NetworkMonitor",
    "EngineState",
    "BestEffortResult",
    "QueueRunResult",
    "StatusSyncResult",
    "RemoteFetchResult",
    "CleanupResult",
    "ReceiptNotFoundError",
    "PageNotAvailableError",
    "retry_delay",
]
