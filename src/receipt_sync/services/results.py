"""Outcome types for engine operations.

Two error policies exist and they are kept apart by type:

- Best-effort operations (queue draining, status polling, remote fetch,
  cleanup) converge over repeated runs. They never raise for remote or
  storage failures; they return a BestEffortResult subclass listing what
  went wrong.
- Must-propagate operations (delete, metadata update, page download) could
  leave local and remote state disagreeing. They return None and raise.
"""

from dataclasses import dataclass, field


class ReceiptNotFoundError(LookupError):
    """No local receipt (or page) with the given ID."""

    def __init__(self, receipt_id: str):
        self.receipt_id = receipt_id
        super().__init__(f"Receipt {receipt_id} not found")


class PageNotAvailableError(Exception):
    """A page has no remote copy to download."""

    def __init__(self, page_id: str):
        self.page_id = page_id
        super().__init__(f"Page {page_id} has no remote image")


@dataclass
class EngineState:
    """Mutable state shared by the engine components of one SyncEngine."""

    is_syncing: bool = False
    last_error: str | None = None


@dataclass
class BestEffortResult:
    """Base result of an operation whose failures are retried later."""

    errors: list[str] = field(default_factory=list)
    # Set when the operation did nothing (offline, already running, ...)
    skipped_reason: str | None = None

    @property
    def success(self) -> bool:
        """Return True if the operation completed without errors."""
        return len(self.errors) == 0

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


@dataclass
class QueueRunResult(BestEffortResult):
    """Result of one queue processing pass."""

    attempted: list[str] = field(default_factory=list)
    uploaded: int = 0
    failed: int = 0
    requeued: int = 0
    deferred: int = 0  # Still inside their retry backoff window
    aborted: bool = False  # Connectivity lost before the batch finished


@dataclass
class StatusSyncResult(BestEffortResult):
    """Result of one review status poll."""

    checked: int = 0
    processed: int = 0
    rejected: int = 0
    still_pending: int = 0
    batches_failed: int = 0
    stopped: bool = False  # Authorization failed; remaining batches not sent


@dataclass
class RemoteFetchResult(BestEffortResult):
    """Result of mirroring the server's receipt list."""

    created: int = 0
    updated: int = 0
    removed: int = 0


@dataclass
class CleanupResult(BestEffortResult):
    """Result of a retention sweep."""

    images_cleaned: int = 0
    receipts_purged: int = 0
    orphans_removed: int = 0
