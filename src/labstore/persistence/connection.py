"""
labstore — connection state and PRAGMA profiles.

File: src/labstore/persistence/connection.py

Purpose
- Own the single writable handle and the optional read-only handle.
- Apply the PRAGMA profile that matches the deployment mode.

Functional requirements
- Lock contention while applying a PRAGMA is recorded as drift, never fatal.
- Any other PRAGMA failure aborts initialization with ``ConfigurationError``.
- Closing in local mode truncates the WAL; closing in network mode removes
  residual ``-wal``/``-shm`` files.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

from labstore.constants import DEFAULT_BUSY_TIMEOUT_MS, DEPLOYMENT_MODES, MODE_LOCAL, MODE_NETWORK
from labstore.errors import ConfigurationDrift, ConfigurationError, StoreError
from labstore.utils.fs import remove_file, residual_log_files

_logger = logging.getLogger(__name__)

WRITER: Final[str] = "writer"
READER: Final[str] = "reader"

_SQLITE_LOCK_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_BUSY_TIMEOUT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_LOCK_SUBSTRINGS: Final[tuple[str, ...]] = (
    "sqlite_busy",
    "database is locked",
    "database table is locked",
    "database schema is locked",
    "database is busy",
)

Connector = Callable[..., sqlite3.Connection]


def network_profile() -> tuple[tuple[str, str], ...]:
    return (
        ("journal_mode", "DELETE"),
        ("busy_timeout", "{busy_timeout_ms}"),
        ("synchronous", "FULL"),
        ("mmap_size", "0"),
        ("cache_size", "20000"),
        ("temp_store", "MEMORY"),
        ("foreign_keys", "ON"),
    )


def local_profile() -> tuple[tuple[str, str], ...]:
    return (
        ("journal_mode", "WAL"),
        ("busy_timeout", "{busy_timeout_ms}"),
        ("synchronous", "FULL"),
        ("cache_size", "20000"),
        ("temp_store", "MEMORY"),
        ("mmap_size", "268435456"),
        ("wal_autocheckpoint", "100"),
        ("checkpoint_fullfsync", "ON"),
        ("foreign_keys", "ON"),
    )


def reader_profile(mode: str) -> tuple[tuple[str, str], ...]:
    pragmas: list[tuple[str, str]] = [("busy_timeout", "{busy_timeout_ms}")]
    if mode == MODE_NETWORK:
        pragmas.append(("mmap_size", "0"))
    return tuple(pragmas)


@dataclass(slots=True)
class ConnectionState:
    """Explicit, mutable state shared by the statement, transaction, and maintenance layers.

    ``write_gate`` serializes access to the writable handle: a transaction holds it
    from ``BEGIN`` to ``COMMIT``/``ROLLBACK``; standalone statements hold it per call.
    """

    path: Path
    mode: str
    writer: sqlite3.Connection
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    reader: sqlite3.Connection | None = None
    journal_mode: str = ""
    writes_since_checkpoint: int = 0
    last_checkpoint_time: float = 0.0
    transaction_depth: int = 0
    busy_on_init: bool = False
    drift: list[ConfigurationDrift] = field(default_factory=list)
    write_gate: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_local(self) -> bool:
        return self.mode == MODE_LOCAL

    @property
    def is_network(self) -> bool:
        return self.mode == MODE_NETWORK

    @property
    def in_transaction(self) -> bool:
        return self.transaction_depth > 0

    def mark_checkpoint(self, now: float) -> None:
        self.writes_since_checkpoint = 0
        self.last_checkpoint_time = now

    def record_drift(self, pragma: str, handle: str, exc: BaseException) -> None:
        note = ConfigurationDrift(pragma=pragma, handle=handle, message=str(exc))
        self.drift.append(note)
        self.busy_on_init = True
        _logger.warning(
            "store busy while applying pragma; keeping default",
            extra={"pragma": pragma, "handle": handle, "error": str(exc)},
        )


def is_lock_error(exc: BaseException) -> bool:
    """Classify SQLITE_BUSY/SQLITE_LOCKED by error code first, message second."""

    if not isinstance(exc, sqlite3.Error):
        return False
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in _SQLITE_LOCK_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _LOCK_SUBSTRINGS)


def open_writer(
    path: str | Path,
    *,
    mode: str,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    connect: Connector = sqlite3.connect,
) -> ConnectionState:
    """Open the writable handle and apply the profile for ``mode``."""

    if mode not in DEPLOYMENT_MODES:
        raise ConfigurationError(f"unsupported deployment mode {mode!r}")

    db_path = Path(path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        writer = connect(
            str(db_path),
            timeout=busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.Error as exc:
        raise ConfigurationError(f"unable to open store {db_path}: {exc}") from exc
    writer.row_factory = sqlite3.Row

    state = ConnectionState(path=db_path, mode=mode, writer=writer, busy_timeout_ms=busy_timeout_ms)
    profile = local_profile() if mode == MODE_LOCAL else network_profile()
    try:
        apply_pragmas(state, writer, profile, handle=WRITER)
    except ConfigurationError:
        writer.close()
        raise
    state.journal_mode = _current_journal_mode(writer)
    if mode == MODE_LOCAL and state.journal_mode != "wal":
        _logger.warning(
            "local profile requested WAL journaling but store reports %s",
            state.journal_mode,
            extra={"store_path": str(db_path)},
        )
    return state


def attach_reader(state: ConnectionState, *, connect: Connector = sqlite3.connect) -> bool:
    """Open the optional read-only handle; on failure reads fall back to the writer."""

    uri = f"{state.path.resolve().as_uri()}?mode=ro"
    try:
        reader = connect(
            uri,
            uri=True,
            timeout=state.busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.Error as exc:
        _logger.warning(
            "read-only handle unavailable; reads will use the writer",
            extra={"store_path": str(state.path), "error": str(exc)},
        )
        return False

    reader.row_factory = sqlite3.Row
    try:
        apply_pragmas(state, reader, reader_profile(state.mode), handle=READER)
    except ConfigurationError as exc:
        reader.close()
        _logger.warning(
            "read-only handle rejected its profile; reads will use the writer",
            extra={"store_path": str(state.path), "error": str(exc)},
        )
        return False
    state.reader = reader
    return True


def apply_pragmas(
    state: ConnectionState,
    conn: sqlite3.Connection,
    pragmas: tuple[tuple[str, str], ...],
    *,
    handle: str,
) -> None:
    for name, template in pragmas:
        value = template.format(busy_timeout_ms=state.busy_timeout_ms)
        try:
            conn.execute(f"PRAGMA {name}={value}").fetchall()
        except sqlite3.Error as exc:
            if is_lock_error(exc):
                state.record_drift(f"{name}={value}", handle, exc)
                continue
            raise ConfigurationError(
                f"failed to apply PRAGMA {name}={value} on {handle} handle for {state.path}: {exc}"
            ) from exc


def close_connection_state(state: ConnectionState) -> None:
    """Final checkpoint (local) or residual-file cleanup (network), then close both handles."""

    if state.is_local:
        try:
            state.writer.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchall()
        except sqlite3.Error as exc:
            _logger.warning(
                "final checkpoint failed",
                extra={"store_path": str(state.path), "error": str(exc)},
            )

    if state.reader is not None:
        try:
            state.reader.close()
        except sqlite3.Error as exc:
            _logger.warning("failed to close read-only handle", extra={"error": str(exc)})
        state.reader = None

    try:
        state.writer.close()
    except sqlite3.Error as exc:
        raise StoreError(f"failed to close store {state.path}: {exc}") from exc

    if state.is_network:
        for residual in residual_log_files(state.path):
            try:
                released = remove_file(residual)
            except OSError as exc:
                _logger.warning(
                    "failed to remove residual log file",
                    extra={"file": str(residual), "error": str(exc)},
                )
                continue
            _logger.info("removed residual log file", extra={"file": str(residual), "bytes": released})


def _current_journal_mode(conn: sqlite3.Connection) -> str:
    try:
        row = conn.execute("PRAGMA journal_mode").fetchone()
    except sqlite3.Error:
        return ""
    return str(row[0]).lower() if row is not None else ""


__all__ = [
    "READER",
    "WRITER",
    "ConnectionState",
    "Connector",
    "apply_pragmas",
    "attach_reader",
    "close_connection_state",
    "is_lock_error",
    "local_profile",
    "network_profile",
    "open_writer",
    "reader_profile",
]
