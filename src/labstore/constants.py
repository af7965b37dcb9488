"""Stable constants shared across the store, sync, and backup layers."""

from __future__ import annotations

from typing import Final

# Schema version of the store database.
STORE_SCHEMA_VERSION: Final[int] = 2

# Default file names (relative to the workspace root unless overridden by config).
DEFAULT_DB_FILENAME: Final[str] = "database.sqlite"
DEFAULT_BACKUP_DIRNAME: Final[str] = ".labcontrol-backups"
BACKUP_INDEX_FILENAME: Final[str] = "backup-metadata.json"
BACKUP_PAYLOAD_SUFFIX: Final[str] = ".json.gz"
BACKUP_SIDECAR_SUFFIX: Final[str] = ".meta"

# Deployment modes.
MODE_LOCAL: Final[str] = "local"
MODE_NETWORK: Final[str] = "network"
DEPLOYMENT_MODES: Final[tuple[str, ...]] = (MODE_LOCAL, MODE_NETWORK)

# Sync strategies.
SYNC_FULL: Final[str] = "full"
SYNC_DELTA: Final[str] = "delta"
SYNC_MODES: Final[tuple[str, ...]] = (SYNC_FULL, SYNC_DELTA)

# Connection governor.
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 10_000
DEFAULT_MAX_CONCURRENT_OPERATIONS: Final[int] = 3
DEFAULT_IDLE_VACUUM_DELAY_MS: Final[int] = 30_000

# Retry layer.
DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_RETRY_BASE_DELAY_MS: Final[int] = 100

# Checkpoint scheduler.
DEFAULT_CHECKPOINT_WRITE_THRESHOLD: Final[int] = 20
DEFAULT_CHECKPOINT_MIN_INTERVAL_MS: Final[int] = 2_000
DEFAULT_WAL_SIZE_THRESHOLD_BYTES: Final[int] = 512 * 1024

# Sync batching.
SYNC_BATCH_SIZE: Final[int] = 100

# Incremental backup engine.
DEFAULT_MAX_BACKUPS: Final[int] = 30
DEFAULT_MAX_AGE_DAYS: Final[int] = 30
DEFAULT_COMPRESSION_LEVEL: Final[int] = 6
DEFAULT_INCREMENTAL_THRESHOLD: Final[int] = 10

__all__ = [
    "BACKUP_INDEX_FILENAME",
    "BACKUP_PAYLOAD_SUFFIX",
    "BACKUP_SIDECAR_SUFFIX",
    "DEFAULT_BACKUP_DIRNAME",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "DEFAULT_CHECKPOINT_MIN_INTERVAL_MS",
    "DEFAULT_CHECKPOINT_WRITE_THRESHOLD",
    "DEFAULT_COMPRESSION_LEVEL",
    "DEFAULT_DB_FILENAME",
    "DEFAULT_IDLE_VACUUM_DELAY_MS",
    "DEFAULT_INCREMENTAL_THRESHOLD",
    "DEFAULT_MAX_AGE_DAYS",
    "DEFAULT_MAX_BACKUPS",
    "DEFAULT_MAX_CONCURRENT_OPERATIONS",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_BASE_DELAY_MS",
    "DEFAULT_WAL_SIZE_THRESHOLD_BYTES",
    "DEPLOYMENT_MODES",
    "MODE_LOCAL",
    "MODE_NETWORK",
    "STORE_SCHEMA_VERSION",
    "SYNC_BATCH_SIZE",
    "SYNC_DELTA",
    "SYNC_FULL",
    "SYNC_MODES",
]
