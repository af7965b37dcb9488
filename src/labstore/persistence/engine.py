"""
labstore — store engine facade.

File: src/labstore/persistence/engine.py

Purpose
- Own the connection state and wire the statement layer, transaction executor,
  maintenance worker, governor, sync strategies, validators, and backup engine.
- Expose the awaitable API a delegator drives: lifecycle, snapshot persist/load,
  granular mutations, database-file backup/restore, and backup delegation.

Functional requirements
- ``initialize`` must precede every other call; calls before it raise ``EngineStateError``.
- A second ``close`` is logged and ignored.
- Every mutation is mirrored into the backup change log after it commits.
- A failed restore leaves the active store untouched.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sqlite3
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from labstore.backup.engine import BackupStats, IncrementalBackupEngine
from labstore.backup.models import BackupArtifact, BackupConfig, ChangeOperation, ChangeRecord
from labstore.config.schema import LabStoreConfig
from labstore.constants import STORE_SCHEMA_VERSION, SYNC_MODES
from labstore.errors import (
    ConfigurationDrift,
    EngineStateError,
    RestoreError,
    StoreError,
    ValidationError,
)
from labstore.observability.logging import correlation_scope
from labstore.persistence import records
from labstore.persistence.checkpoint import CheckpointScheduler, CheckpointThresholds, MaintenanceWorker
from labstore.persistence.connection import (
    ConnectionState,
    Connector,
    attach_reader,
    close_connection_state,
    open_writer,
)
from labstore.persistence.governor import OperationGovernor
from labstore.persistence.schema import MIGRATIONS, migrate, schema_version
from labstore.persistence.statements import RetryPolicy, Row, StatementExecutor
from labstore.persistence.sync import SyncReport, persist_snapshot, strategy_for
from labstore.persistence.transactions import TransactionCallback, TransactionExecutor
from labstore.utils.fs import remove_file, residual_log_files
from labstore.validation import Validator, default_validators

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_INVENTORY_FIELDS = ("reagent", "manufacturer", "lot", "quantity", "validity")


@dataclass(slots=True)
class _Runtime:
    state: ConnectionState
    statements: StatementExecutor
    transactions: TransactionExecutor
    maintenance: MaintenanceWorker
    governor: OperationGovernor


@dataclass(slots=True)
class _Mutation:
    """Result of a transactional mutation plus the change records to log after commit."""

    value: Any = None
    changes: list[ChangeRecord] = field(default_factory=list)


class StoreEngine:
    """Single-writer SQLite store with sync strategies and incremental backups."""

    def __init__(
        self,
        config: LabStoreConfig,
        *,
        validators: Mapping[str, Validator] | None = None,
        backup: IncrementalBackupEngine | None = None,
        connect: Connector = sqlite3.connect,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._validators = dict(validators) if validators is not None else default_validators()
        self._backup = backup
        self._connect = connect
        self._clock = clock
        self._sync_mode = config.store.sync_mode
        self._auto_vacuum = config.store.auto_vacuum
        self._runtime: _Runtime | None = None
        self._closed = False

    # -- lifecycle ---------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._config.store.path

    @property
    def initialized(self) -> bool:
        return self._runtime is not None

    async def initialize(self) -> int:
        """Open the store, apply migrations, start maintenance; return the schema version."""

        if self._runtime is not None:
            raise EngineStateError(f"store {self.path} is already initialized")
        if self._closed:
            raise EngineStateError(f"store {self.path} has been closed")

        with correlation_scope(operation_id=_new_operation_id(), store_path=str(self.path)):
            version = await self._open()
            if self._backup is None:
                settings = self._config.backup
                self._backup = IncrementalBackupEngine(
                    settings.directory,
                    BackupConfig(
                        max_backups=settings.max_backups,
                        max_age_days=settings.max_age_days,
                        compression_level=settings.compression_level,
                        incremental_threshold=settings.incremental_threshold,
                    ),
                )
            _logger.info(
                "store initialized",
                extra={
                    "mode": self._config.store.mode,
                    "sync_mode": self._sync_mode,
                    "schema_version": version,
                    "busy_on_init": self.busy_on_init,
                },
            )
        return version

    async def close(self) -> None:
        if self._runtime is None:
            if self._closed:
                _logger.info("close called on an already closed store", extra={"store_path": str(self.path)})
                return
            raise EngineStateError(f"store {self.path} is not initialized")

        try:
            await self._shutdown()
        finally:
            self._closed = True
            if self._backup is not None:
                await self._backup.close()
        _logger.info("store closed", extra={"store_path": str(self.path)})

    async def _open(self) -> int:
        settings = self._config.store
        state = await asyncio.to_thread(
            open_writer,
            settings.path,
            mode=settings.mode,
            busy_timeout_ms=settings.busy_timeout_ms,
            connect=self._connect,
        )
        retry = RetryPolicy(
            max_retries=self._config.retry.max_retries,
            base_delay_ms=self._config.retry.base_delay_ms,
        )
        statements = StatementExecutor(state, retry=retry, on_write=self._signal)
        transactions = TransactionExecutor(statements, on_commit=self._signal, clock=self._clock)
        try:
            version = await migrate(transactions)
        except BaseException:
            await asyncio.to_thread(close_connection_state, state)
            raise

        if settings.read_only_handle:
            await asyncio.to_thread(attach_reader, state, connect=self._connect)

        checkpoint = self._config.checkpoint
        scheduler = CheckpointScheduler(
            state,
            CheckpointThresholds(
                write_threshold=checkpoint.write_threshold,
                min_interval_ms=checkpoint.min_interval_ms,
                wal_size_threshold_bytes=checkpoint.wal_size_threshold_bytes,
            ),
            clock=self._clock,
        )
        maintenance = MaintenanceWorker(scheduler, statements)
        maintenance.start()
        governor = OperationGovernor(
            limit=settings.max_concurrent_operations,
            auto_vacuum=self._auto_vacuum,
            idle_delay_ms=settings.idle_vacuum_delay_ms,
            on_idle=maintenance.request_vacuum,
        )
        self._runtime = _Runtime(
            state=state,
            statements=statements,
            transactions=transactions,
            maintenance=maintenance,
            governor=governor,
        )
        return version

    async def _shutdown(self) -> None:
        runtime = self._require()
        self._runtime = None
        runtime.governor.close()
        await runtime.maintenance.stop()
        async with runtime.state.write_gate:
            await asyncio.to_thread(close_connection_state, runtime.state)

    def _require(self) -> _Runtime:
        if self._runtime is None:
            state = "closed" if self._closed else "not initialized"
            raise EngineStateError(f"store {self.path} is {state}; call initialize() first")
        return self._runtime

    def _signal(self, reason: str) -> None:
        runtime = self._runtime
        if runtime is not None:
            runtime.maintenance.notify(reason)

    # -- state accessors ---------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._require().state

    @property
    def statements(self) -> StatementExecutor:
        return self._require().statements

    @property
    def governor(self) -> OperationGovernor:
        return self._require().governor

    @property
    def maintenance(self) -> MaintenanceWorker:
        return self._require().maintenance

    @property
    def backups(self) -> IncrementalBackupEngine:
        self._require()
        if self._backup is None:
            raise EngineStateError(f"store {self.path} has no backup engine attached")
        return self._backup

    @property
    def busy_on_init(self) -> bool:
        return self._require().state.busy_on_init

    @property
    def configuration_drift(self) -> tuple[ConfigurationDrift, ...]:
        return tuple(self._require().state.drift)

    @property
    def sync_mode(self) -> str:
        return self._sync_mode

    def set_sync_mode(self, mode: str) -> None:
        if mode not in SYNC_MODES:
            raise ValueError(f"unknown sync mode {mode!r}; expected one of {list(SYNC_MODES)}")
        self._sync_mode = mode
        _logger.info("sync mode changed", extra={"sync_mode": mode})

    def set_auto_vacuum(self, enabled: bool) -> None:
        self._auto_vacuum = enabled
        if self._runtime is not None:
            self._runtime.governor.set_auto_vacuum(enabled)

    async def wait_for_maintenance(self) -> None:
        """Wait for queued checkpoint/compaction requests and threshold-triggered backups."""

        await self._require().maintenance.drain()
        if self._backup is not None:
            await self._backup.wait_for_pending()

    async def schema_version(self) -> int:
        return await schema_version(self._require().statements)

    async def integrity_check(self) -> list[str]:
        rows = await self._require().statements.select("PRAGMA integrity_check")
        return [str(next(iter(row.values()))) for row in rows]

    # -- generic execution -------------------------------------------------

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the governor."""

        return await self._require().governor.submit(operation)

    async def transaction(self, callback: TransactionCallback[T]) -> T:
        runtime = self._require()
        return await runtime.governor.submit(lambda: runtime.transactions.transaction(callback))

    # -- snapshots ---------------------------------------------------------

    async def persist_snapshot(self, snapshot: Mapping[str, Any], *, mode: str | None = None) -> SyncReport:
        runtime = self._require()
        strategy = strategy_for(mode or self._sync_mode)
        with correlation_scope(operation_id=_new_operation_id(), sync_mode=strategy.name):
            return await runtime.governor.submit(
                lambda: persist_snapshot(
                    runtime.transactions,
                    strategy,
                    snapshot,
                    on_changes=self._log_changes,
                )
            )

    async def load_snapshot(self) -> dict[str, Any]:
        statements = self._require().statements
        snapshot: dict[str, Any] = {}

        lot_rows = await statements.select(
            f"SELECT {', '.join(records.ASSAY_LOTS.column_names)} FROM assay_lots "
            f"ORDER BY {records.ASSAY_LOTS.order_by}"
        )
        lots = records.group_lots(lot_rows)

        for spec in records.TABLE_SPECS:
            if spec.shape is records.SnapshotShape.CHILD:
                continue
            rows = await statements.select(
                f"SELECT {', '.join(spec.column_names)} FROM {spec.table} ORDER BY {spec.order_by}"
            )
            external = [spec.from_row(row) for row in rows]
            if spec is records.HISTORICAL_ASSAYS:
                for assay in external:
                    assay["lots"] = lots.get(assay["id"], {})
            if spec is records.SETTINGS:
                snapshot[spec.snapshot_key] = {item["key"]: item["value"] for item in external}
            elif spec is records.SYSTEM_USERS:
                snapshot[spec.snapshot_key] = {item["username"]: item for item in external}
            else:
                snapshot[spec.snapshot_key] = external
        return snapshot

    # -- inventory ---------------------------------------------------------

    async def add_inventory_item(self, item: Mapping[str, Any]) -> int:
        sanitized = self._validated("inventory", item)
        values = tuple(sanitized.get(name) for name in _INVENTORY_FIELDS)

        async def apply() -> int:
            result = await self.statements.execute(
                "INSERT INTO inventory (reagent, manufacturer, lot, quantity, validity) VALUES (?, ?, ?, ?, ?)",
                values,
            )
            if result.last_row_id is None:
                raise StoreError(f"inventory insert on {self.path} returned no row id")
            return result.last_row_id

        new_id = await self.run(apply)
        new_data = {**{name: sanitized.get(name) for name in _INVENTORY_FIELDS}, "id": new_id}
        self._log_changes([_change("inventory", ChangeOperation.INSERT, new_id, new_data=new_data)])
        return new_id

    async def update_inventory_item(self, item_id: int, updates: Mapping[str, Any]) -> None:
        unknown = sorted(set(updates) - set(_INVENTORY_FIELDS))
        if unknown:
            raise ValidationError([f"field '{name}' cannot be updated" for name in unknown], entity="inventory")

        async def apply(tx: StatementExecutor) -> _Mutation:
            old = await self._fetch_one(tx, records.INVENTORY, item_id)
            sanitized = self._validated("inventory", {**old, **updates})
            fields = [name for name in _INVENTORY_FIELDS if name in updates]
            if fields:
                assignments = ", ".join(f"{name} = ?" for name in fields)
                await tx.execute(
                    f"UPDATE inventory SET {assignments} WHERE id = ?",
                    (*(sanitized[name] for name in fields), item_id),
                )
            new = {**old, **{name: sanitized[name] for name in fields}}
            return _Mutation(changes=[_change("inventory", ChangeOperation.UPDATE, item_id, old, new)])

        self._log_changes((await self.transaction(apply)).changes)

    async def delete_inventory_item(self, item_id: int) -> bool:
        return await self._delete_by_key(records.INVENTORY, item_id)

    async def update_inventory_quantity(self, item_id: int, quantity: float) -> None:
        await self._adjust_quantity(item_id, "?", quantity)

    async def add_inventory_quantity(self, item_id: int, amount: float) -> None:
        await self._adjust_quantity(item_id, "quantity + ?", amount)

    async def remove_inventory_quantity(self, item_id: int, amount: float) -> None:
        await self._adjust_quantity(item_id, "MAX(0, quantity - ?)", amount)

    async def _adjust_quantity(self, item_id: int, expression: str, operand: float) -> None:
        if isinstance(operand, bool) or not isinstance(operand, (int, float)) or operand < 0:
            raise ValidationError(["field 'quantity' must be a non-negative number"], entity="inventory")

        async def apply(tx: StatementExecutor) -> _Mutation:
            old = await self._fetch_one(tx, records.INVENTORY, item_id)
            await tx.execute(f"UPDATE inventory SET quantity = {expression} WHERE id = ?", (operand, item_id))
            new = await self._fetch_one(tx, records.INVENTORY, item_id)
            return _Mutation(changes=[_change("inventory", ChangeOperation.UPDATE, item_id, old, new)])

        self._log_changes((await self.transaction(apply)).changes)

    # -- holidays ----------------------------------------------------------

    async def add_holiday(self, holiday: Mapping[str, Any]) -> int:
        sanitized = self._validated("holiday", holiday)
        values = (sanitized["name"], sanitized["startDate"], sanitized["endDate"])

        async def apply() -> int:
            result = await self.statements.execute(
                "INSERT INTO holidays (name, start_date, end_date) VALUES (?, ?, ?)", values
            )
            if result.last_row_id is None:
                raise StoreError(f"holiday insert on {self.path} returned no row id")
            return result.last_row_id

        new_id = await self.run(apply)
        new_data = {"id": new_id, "name": values[0], "startDate": values[1], "endDate": values[2]}
        self._log_changes([_change("holidays", ChangeOperation.INSERT, new_id, new_data=new_data)])
        return new_id

    async def delete_holiday(self, holiday_id: int) -> bool:
        return await self._delete_by_key(records.HOLIDAYS, holiday_id)

    # -- system users ------------------------------------------------------

    async def add_system_user(self, user: Mapping[str, Any]) -> str:
        sanitized = self._validated("system_user", user)
        row = records.SYSTEM_USERS.to_row(sanitized)
        username = str(row[0])

        async def apply() -> None:
            await self.statements.execute(
                "INSERT INTO system_users (username, type, display_name, permissions) VALUES (?, ?, ?, ?)",
                row,
            )

        await self.run(apply)
        new_data = records.SYSTEM_USERS.from_row(dict(zip(records.SYSTEM_USERS.column_names, row, strict=True)))
        self._log_changes([_change("system_users", ChangeOperation.INSERT, username, new_data=new_data)])
        return username

    async def update_system_user(self, username: str, updates: Mapping[str, Any]) -> None:
        spec = records.SYSTEM_USERS
        by_key = {column.key: column for column in spec.columns if column.name not in spec.primary_key}
        unknown = sorted(set(updates) - set(by_key))
        if unknown:
            raise ValidationError([f"field '{name}' cannot be updated" for name in unknown], entity="system user")

        async def apply(tx: StatementExecutor) -> _Mutation:
            old = await self._fetch_one(tx, spec, username)
            sanitized = self._validated("system_user", {**old, **updates})
            columns = [by_key[key] for key in updates]
            if columns:
                assignments = ", ".join(f"{column.name} = ?" for column in columns)
                await tx.execute(
                    f"UPDATE system_users SET {assignments} WHERE username = ?",
                    (*(column.to_storage(sanitized) for column in columns), username),
                )
            new = await self._fetch_one(tx, spec, username)
            return _Mutation(changes=[_change("system_users", ChangeOperation.UPDATE, username, old, new)])

        self._log_changes((await self.transaction(apply)).changes)

    async def delete_system_user(self, username: str) -> bool:
        return await self._delete_by_key(records.SYSTEM_USERS, username)

    # -- categories --------------------------------------------------------

    async def add_category(self, category: Mapping[str, Any], *, safety: bool = False) -> int | str:
        sanitized = self._validated("category", category)
        spec = records.SAFETY_CATEGORIES if safety else records.EFFICIENCY_CATEGORIES

        async def apply() -> int | str:
            if safety:
                category_id = str(sanitized.get("id") or uuid.uuid4().hex)
                await self.statements.execute(
                    "INSERT INTO safety_categories (id, name) VALUES (?, ?)", (category_id, sanitized["name"])
                )
                return category_id
            result = await self.statements.execute(
                "INSERT INTO efficiency_categories (name) VALUES (?)", (sanitized["name"],)
            )
            if result.last_row_id is None:
                raise StoreError(f"category insert on {self.path} returned no row id")
            return result.last_row_id

        new_id = await self.run(apply)
        new_data = {"id": new_id, "name": sanitized["name"]}
        self._log_changes([_change(spec.table, ChangeOperation.INSERT, new_id, new_data=new_data)])
        return new_id

    async def delete_category(self, category_id: int | str, *, safety: bool = False) -> bool:
        spec = records.SAFETY_CATEGORIES if safety else records.EFFICIENCY_CATEGORIES
        return await self._delete_by_key(spec, category_id)

    # -- settings ----------------------------------------------------------

    async def update_settings(self, updates: Mapping[str, Any]) -> None:
        """Validate the merged settings, then upsert only the supplied keys."""

        if not updates:
            return

        async def apply(tx: StatementExecutor) -> _Mutation:
            rows = await tx.select("SELECT key, value FROM settings")
            current = {row["key"]: records.SETTINGS.from_row(row)["value"] for row in rows}
            sanitized = self._validated("settings", {**current, **updates})
            mutation = _Mutation()
            for key in updates:
                value = sanitized[key]
                stored = records.SETTINGS.to_row({"key": key, "value": value})
                await tx.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    stored,
                )
                mutation.changes.append(
                    _change("settings", ChangeOperation.UPDATE, key, current.get(key), value)
                )
            return mutation

        self._log_changes((await self.transaction(apply)).changes)

    # -- database file backup / restore ------------------------------------

    async def backup_database(self, destination: str | Path) -> Path:
        """Copy the live store to ``destination`` with SQLite's online backup API."""

        runtime = self._require()
        target = Path(destination).expanduser()

        def copy() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            dest = self._connect(str(target))
            try:
                runtime.state.writer.backup(dest)
            finally:
                dest.close()

        try:
            async with runtime.state.write_gate:
                await asyncio.to_thread(copy)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"failed to back up {self.path} to {target}: {exc}") from exc
        _logger.info("store file backed up", extra={"store_path": str(self.path), "file": str(target)})
        return target

    async def restore_database(self, source: str | Path) -> None:
        """Replace the store file with ``source`` after verifying a staged copy; then reopen."""

        self._require()
        src = Path(source).expanduser()
        if not src.is_file():
            raise RestoreError(f"restore source not found: {src}")

        staging = await asyncio.to_thread(_stage_copy, src, self.path)
        try:
            await asyncio.to_thread(verify_database_file, staging, connect=self._connect)
        except BaseException:
            remove_file(staging)
            raise

        await self._shutdown()
        try:
            moved = await asyncio.to_thread(_swap_in, staging, self.path)
        except OSError as exc:
            await self._open()
            raise RestoreError(f"unable to swap {src} into {self.path}: {exc}") from exc

        try:
            await self._open()
        except Exception as exc:
            _logger.warning(
                "restored store failed to open; putting the previous file back",
                extra={"store_path": str(self.path), "file": str(src), "error": str(exc)},
            )
            await asyncio.to_thread(_roll_back, moved, self.path)
            await self._open()
            raise RestoreError(f"restored store {src} could not be opened: {exc}") from exc

        for aside, _original in moved:
            remove_file(aside)
        _logger.info("store file restored", extra={"store_path": str(self.path), "file": str(src)})

    # -- incremental backups -----------------------------------------------

    async def create_full_snapshot_backup(self) -> Path | None:
        with correlation_scope(operation_id=_new_operation_id(), backup_kind="full"):
            snapshot = await self.load_snapshot()
            return await self.backups.create_full_backup(snapshot)

    async def create_incremental_backup(self) -> Path | None:
        with correlation_scope(operation_id=_new_operation_id(), backup_kind="incremental"):
            return await self.backups.create_incremental_backup()

    def list_backups(self) -> list[BackupArtifact]:
        return self.backups.list_backups()

    def backup_stats(self) -> BackupStats:
        return self.backups.backup_stats()

    async def cleanup_old_backups(self) -> list[BackupArtifact]:
        return await self.backups.cleanup_old_backups()

    async def restore_backup(self, path: str | Path) -> Any:
        return await self.backups.restore_backup(path)

    # -- helpers -----------------------------------------------------------

    def _validated(self, kind: str, entity: Mapping[str, Any]) -> dict[str, Any]:
        validator = self._validators.get(kind)
        if validator is None:
            return dict(entity)
        result = validator.validate(entity)
        if not result.is_valid or result.sanitized_data is None:
            raise ValidationError(result.errors or ("validator returned no data",), entity=kind)
        return result.sanitized_data

    async def _fetch_one(self, tx: StatementExecutor, spec: records.TableSpec, key: int | str) -> dict[str, Any]:
        pk = spec.primary_key[0]
        row: Row | None = await tx.select_one(
            f"SELECT {', '.join(spec.column_names)} FROM {spec.table} WHERE {pk} = ?", (key,)
        )
        if row is None:
            raise StoreError(f"{spec.table} row {key!r} not found in {self.path}")
        return spec.from_row(row)

    async def _delete_by_key(self, spec: records.TableSpec, key: int | str) -> bool:
        pk = spec.primary_key[0]

        async def apply(tx: StatementExecutor) -> _Mutation:
            row = await tx.select_one(
                f"SELECT {', '.join(spec.column_names)} FROM {spec.table} WHERE {pk} = ?", (key,)
            )
            if row is None:
                return _Mutation(value=False)
            await tx.execute(f"DELETE FROM {spec.table} WHERE {pk} = ?", (key,))
            old = spec.from_row(row)
            return _Mutation(value=True, changes=[_change(spec.table, ChangeOperation.DELETE, key, old_data=old)])

        mutation = await self.transaction(apply)
        self._log_changes(mutation.changes)
        return bool(mutation.value)

    def _log_changes(self, changes: Sequence[ChangeRecord]) -> None:
        backup = self._backup
        if backup is None:
            return
        for change in changes:
            backup.log_change(change.table, change.operation, change.record_id, change.old_data, change.new_data)


def verify_database_file(path: Path, *, connect: Connector = sqlite3.connect) -> None:
    """Raise ``RestoreError`` unless ``path`` is a readable, intact SQLite store.

    The file is opened read-only and immutable, so no ``-wal``/``-shm`` companions are created.
    """

    if not path.is_file():
        raise RestoreError(f"restore source not found: {path}")
    try:
        conn = connect(f"{path.resolve().as_uri()}?mode=ro&immutable=1", uri=True)
    except sqlite3.Error as exc:
        raise RestoreError(f"restore source cannot be opened: {path}: {exc}") from exc
    history: list[Any] = []
    try:
        rows = conn.execute("PRAGMA integrity_check").fetchall()
        tables = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_versions'"
        ).fetchall()
        if tables:
            history = conn.execute("SELECT version, checksum FROM schema_versions ORDER BY version").fetchall()
    except sqlite3.Error as exc:
        raise RestoreError(f"restore source is not a valid store: {path}: {exc}") from exc
    finally:
        conn.close()

    verdict = [str(row[0]) for row in rows]
    if verdict != ["ok"]:
        raise RestoreError(f"restore source failed integrity check: {path}: {'; '.join(verdict)}")
    if not tables:
        raise RestoreError(f"restore source has no schema_versions table: {path}")

    known = {migration.version: migration.checksum for migration in MIGRATIONS}
    for version, checksum in history:
        if not isinstance(version, int) or version > STORE_SCHEMA_VERSION:
            raise RestoreError(
                f"restore source schema version {version!r} is not supported "
                f"(code={STORE_SCHEMA_VERSION}): {path}"
            )
        if known.get(version) != checksum:
            raise RestoreError(f"restore source migration checksum mismatch for version {version}: {path}")


def _stage_copy(source: Path, target: Path) -> Path:
    staging = target.with_name(f".{target.name}.restore")
    try:
        shutil.copyfile(source, staging)
        with staging.open("rb") as handle:
            os.fsync(handle.fileno())
    except OSError as exc:
        remove_file(staging)
        raise RestoreError(f"unable to stage restore source {source}: {exc}") from exc
    return staging


def _swap_in(staging: Path, target: Path) -> tuple[tuple[Path, Path], ...]:
    """Move ``target`` and its log companions aside, then move ``staging`` into place.

    Returns ``(aside, original)`` pairs so a failed reopen can put the previous store back.
    """

    moved: list[tuple[Path, Path]] = []
    try:
        for current in (target, *residual_log_files(target)):
            if current.exists():
                aside = current.with_name(f".{current.name}.previous")
                os.replace(current, aside)
                moved.append((aside, current))
        os.replace(staging, target)
    except BaseException:
        remove_file(staging)
        _put_back(moved)
        raise
    return tuple(moved)


def _roll_back(moved: Sequence[tuple[Path, Path]], target: Path) -> None:
    for residual in residual_log_files(target):
        remove_file(residual)
    remove_file(target)
    _put_back(moved)


def _put_back(moved: Sequence[tuple[Path, Path]]) -> None:
    for aside, original in moved:
        os.replace(aside, original)


def _change(
    table: str,
    operation: ChangeOperation,
    key: Any,
    old_data: Any = None,
    new_data: Any = None,
) -> ChangeRecord:
    return ChangeRecord(table=table, operation=operation, record_id=key, old_data=old_data, new_data=new_data)


def _new_operation_id() -> str:
    return uuid.uuid4().hex


__all__ = [
    "StoreEngine",
    "verify_database_file",
]
