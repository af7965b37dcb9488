"""
labstore — embedded SQLite durability and sync engine.

File: src/labstore/__init__.py

Purpose
- Package root. Exposes the store engine, configuration loader, and error types.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from labstore.config import LabStoreConfig, load_config
from labstore.errors import (
    BackupIOError,
    ConfigurationError,
    EngineStateError,
    IntegrityError,
    LabStoreError,
    RestoreError,
    StoreError,
    TransientLockError,
    ValidationError,
)
from labstore.persistence.engine import StoreEngine

__version__ = "0.1.0"

__all__ = [
    "BackupIOError",
    "ConfigurationError",
    "EngineStateError",
    "IntegrityError",
    "LabStoreConfig",
    "LabStoreError",
    "RestoreError",
    "StoreEngine",
    "StoreError",
    "TransientLockError",
    "ValidationError",
    "__version__",
    "load_config",
]
