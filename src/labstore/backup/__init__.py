"""Incremental backup engine: change log, full/incremental artifacts, retention."""

from labstore.backup.engine import BackupStats, IncrementalBackupEngine, select_for_removal
from labstore.backup.models import (
    BackupArtifact,
    BackupConfig,
    BackupKind,
    ChangeOperation,
    ChangeRecord,
    format_bytes,
)

__all__ = [
    "BackupArtifact",
    "BackupConfig",
    "BackupKind",
    "BackupStats",
    "ChangeOperation",
    "ChangeRecord",
    "IncrementalBackupEngine",
    "format_bytes",
    "select_for_removal",
]
