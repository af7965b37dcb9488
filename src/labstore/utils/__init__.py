"""Utility exports for filesystem, hashing, and concurrency helpers."""

from labstore.utils.concurrency import BackgroundTaskSet, has_running_loop
from labstore.utils.fs import atomic_write, file_size, remove_file, residual_log_files, wal_path
from labstore.utils.hashing import (
    canonical_json,
    sha256_bytes,
    sha256_text,
)

__all__ = [
    "BackgroundTaskSet",
    "atomic_write",
    "canonical_json",
    "file_size",
    "has_running_loop",
    "remove_file",
    "residual_log_files",
    "sha256_bytes",
    "sha256_text",
    "wal_path",
]
