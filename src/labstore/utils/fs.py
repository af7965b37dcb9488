"""
labstore — filesystem helpers

File: src/labstore/utils/fs.py

Purpose
- Durable writes for backup payloads, sidecars, and the backup index.
- Sidecar-file discovery and cleanup for the store file (``-wal``/``-shm``/``-journal``).

Functional requirements
- Writes land via a temp file in the destination directory and ``os.replace``.
- A failed write never leaves a partially written target behind.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from typing import Final

PathLike = str | os.PathLike[str]

WAL_SUFFIX: Final[str] = "-wal"
SHM_SUFFIX: Final[str] = "-shm"
JOURNAL_SUFFIX: Final[str] = "-journal"

__all__ = [
    "JOURNAL_SUFFIX",
    "SHM_SUFFIX",
    "WAL_SUFFIX",
    "atomic_write",
    "file_size",
    "remove_file",
    "residual_log_files",
    "wal_path",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> int:
    """
    Atomically write ``data`` to ``path`` and return the number of bytes written.

    The parent directory must already exist. Data is fsynced before the rename
    and the directory entry is fsynced after it where the platform allows.
    """

    target = Path(path)
    parent = target.parent.resolve(strict=True)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(parent))
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise
    return len(payload)


def file_size(path: PathLike) -> int:
    """Return the size of ``path`` in bytes, or 0 when it does not exist."""

    try:
        return Path(path).stat().st_size
    except FileNotFoundError:
        return 0


def remove_file(path: PathLike) -> int:
    """Delete ``path`` if present; return the number of bytes released."""

    target = Path(path)
    size = file_size(target)
    try:
        target.unlink()
    except FileNotFoundError:
        return 0
    return size


def wal_path(db_path: PathLike) -> Path:
    db = Path(db_path)
    return db.with_name(db.name + WAL_SUFFIX)


def residual_log_files(db_path: PathLike) -> tuple[Path, ...]:
    """Return the ``-wal``/``-shm`` companions of ``db_path`` that currently exist."""

    db = Path(db_path)
    candidates = (db.with_name(db.name + WAL_SUFFIX), db.with_name(db.name + SHM_SUFFIX))
    return tuple(candidate for candidate in candidates if candidate.exists())


def _fsync_directory(path: Path) -> None:
    # Some platforms/filesystems (notably SMB shares) reject fsync on directories.
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
