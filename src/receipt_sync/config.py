"""
Configuration management (SSOT).

This module defines ALL configuration for the receipt sync engine.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The API token is only ever sent as a bearer header, never logged
- Retention windows are measured from the moment a terminal server status
  was first observed, not from capture time
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# Preference keys persisted in the receipt store (user-adjustable at runtime)
PREF_IMAGE_RETENTION_DAYS = "image_retention_days"
PREF_LAST_ACCOUNT_ID = "last_account_id"
PREF_LAST_ORPHAN_SWEEP = "last_orphan_sweep_at"


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ApiConfig:
    """Remote receipt API configuration."""

    base_url: str
    # Static bearer token used by the CLI session provider
    token: str = ""
    timeout_seconds: int = 30
    max_retries: int = 3


@dataclass
class SyncConfig:
    """Queue and status polling settings."""

    # Remote ids per status-check request
    status_batch_size: int = 50
    # Maximum receipts pulled by fetch-remote
    remote_fetch_limit: int = 200
    network_query_timeout_seconds: int = 15


@dataclass
class CleanupConfig:
    """Local storage retention settings.

    Phase 1 (always): after image_retention_days past terminal status, local
    page images are deleted and the receipt keeps its metadata.
    Phase 2 (purge_metadata only): after image_retention_days *
    metadata_retention_multiplier, the receipt row is deleted as well.
    """

    image_retention_days: int = 7
    purge_metadata: bool = False
    metadata_retention_multiplier: int = 2
    # Orphaned receipt directories are swept at most this often
    orphan_sweep_interval_days: int = 7


@dataclass
class Config:
    """Application configuration (SSOT)."""

    api: ApiConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    storage_root: Path = field(default_factory=lambda: Path("data"))
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.api.base_url:
            errors.append("api.base_url is required")
        if self.api.timeout_seconds <= 0:
            errors.append("api.timeout_seconds must be positive")

        if self.sync.status_batch_size < 1:
            errors.append("sync.status_batch_size must be at least 1")
        if self.sync.remote_fetch_limit < 1:
            errors.append("sync.remote_fetch_limit must be at least 1")

        if self.cleanup.image_retention_days < 0:
            errors.append("cleanup.image_retention_days must not be negative")
        if self.cleanup.metadata_retention_multiplier < 1:
            errors.append("cleanup.metadata_retention_multiplier must be at least 1")

        return errors


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default  # Keep default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - RECEIPT_SYNC_API_URL
    - RECEIPT_SYNC_API_TOKEN
    - RECEIPT_SYNC_RETENTION_DAYS
    - RECEIPT_SYNC_STATUS_BATCH_SIZE
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    api_data = data.get("api", {})
    api = ApiConfig(
        base_url=os.environ.get(
            "RECEIPT_SYNC_API_URL", api_data.get("base_url", "http://localhost:3000")
        ),
        token=os.environ.get("RECEIPT_SYNC_API_TOKEN", api_data.get("token", "")),
        timeout_seconds=api_data.get("timeout_seconds", 30),
        max_retries=api_data.get("max_retries", 3),
    )

    sync_data = data.get("sync", {})
    sync = SyncConfig(
        status_batch_size=_int_from_env(
            "RECEIPT_SYNC_STATUS_BATCH_SIZE", sync_data.get("status_batch_size", 50)
        ),
        remote_fetch_limit=sync_data.get("remote_fetch_limit", 200),
        network_query_timeout_seconds=sync_data.get("network_query_timeout_seconds", 15),
    )

    cleanup_data = data.get("cleanup", {})
    cleanup = CleanupConfig(
        image_retention_days=_int_from_env(
            "RECEIPT_SYNC_RETENTION_DAYS", cleanup_data.get("image_retention_days", 7)
        ),
        purge_metadata=cleanup_data.get("purge_metadata", False),
        metadata_retention_multiplier=cleanup_data.get("metadata_retention_multiplier", 2),
        orphan_sweep_interval_days=cleanup_data.get("orphan_sweep_interval_days", 7),
    )

    storage_root = Path(data.get("storage_root", "data"))
    state_db = data.get("state_db_path", str(storage_root / "state.db"))

    return Config(
        api=api,
        sync=sync,
        cleanup=cleanup,
        storage_root=storage_root,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Receipt Sync Configuration
#
# The API token can also be supplied via RECEIPT_SYNC_API_TOKEN.

api:
  base_url: "http://localhost:3000"      # Receipt service URL
  token: "YOUR_API_TOKEN"
  timeout_seconds: 30
  max_retries: 3

sync:
  status_batch_size: 50                  # Remote ids per status check request
  remote_fetch_limit: 200                # Receipts pulled by fetch-remote
  network_query_timeout_seconds: 15

cleanup:
  image_retention_days: 7                # Delete local images this long after review
  purge_metadata: false                  # Also delete receipt rows (phase 2)
  metadata_retention_multiplier: 2       # Phase 2 age = retention * multiplier
  orphan_sweep_interval_days: 7

# Local storage (page images live under <storage_root>/receipts/<id>/)
storage_root: "data"
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
