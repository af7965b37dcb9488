"""
labstore — error taxonomy

File: src/labstore/errors.py

Purpose
- One exception hierarchy shared by the store, sync, and backup layers.

Propagation rules
- Business-mutation errors (lock exhaustion, validation, integrity) surface to the caller.
- Maintenance errors (checkpoint, compaction, auto-backup) are logged by the
  maintenance worker and never reach the caller.
- ``ConfigurationDrift`` is a soft record, not an exception.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


class LabStoreError(RuntimeError):
    """Base class for every labstore failure."""


class StoreError(LabStoreError):
    """Raised when a statement fails for a reason other than contention or integrity."""


class TransientLockError(StoreError):
    """Raised when SQLITE_BUSY/SQLITE_LOCKED persists past the retry budget."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class IntegrityError(StoreError):
    """Raised on uniqueness or referential constraint violations."""


class MigrationError(StoreError):
    """Raised when schema migrations cannot be applied safely."""


class ConfigurationError(LabStoreError):
    """Raised when the connection profile cannot be applied at initialization."""


class EngineStateError(LabStoreError):
    """Raised when the engine is used before ``initialize`` or after ``close``."""


class ValidationError(LabStoreError):
    """Raised when the validator rejects an entity; carries every collected error."""

    def __init__(self, errors: Sequence[str], *, entity: str | None = None) -> None:
        self.errors: tuple[str, ...] = tuple(errors)
        self.entity = entity
        prefix = f"invalid {entity}" if entity else "invalid data"
        super().__init__(f"{prefix}: {', '.join(self.errors)}")


class BackupIOError(LabStoreError):
    """Raised when a backup artifact cannot be read, written, or compressed."""


class RestoreError(LabStoreError):
    """Raised when a backup source fails validation before a restore."""


class IncrementalRestoreUnsupportedError(RestoreError):
    """Raised when asked to restore an incremental artifact directly."""


@dataclass(frozen=True, slots=True)
class ConfigurationDrift:
    """A PRAGMA that could not be applied because the store was busy."""

    pragma: str
    handle: str
    message: str


__all__ = [
    "BackupIOError",
    "ConfigurationDrift",
    "ConfigurationError",
    "EngineStateError",
    "IncrementalRestoreUnsupportedError",
    "IntegrityError",
    "LabStoreError",
    "MigrationError",
    "RestoreError",
    "StoreError",
    "TransientLockError",
    "ValidationError",
]
