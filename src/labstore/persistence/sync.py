"""
labstore — snapshot sync strategies.

File: src/labstore/persistence/sync.py

Purpose
- ``FullSync``: clear each table present in the snapshot and bulk-insert its rows.
- ``DeltaSync``: upsert every supplied row, then prune rows whose primary key is
  absent from the incoming set, mirroring each change as a ``ChangeRecord``.

Functional requirements
- One transaction per snapshot group; a failing group leaves earlier groups committed
  and its own tables at their previous state.
- ``assay_lots`` rows are removed before their parents and written after them.
- Applied to an empty store, both strategies produce identical rows.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Protocol, TypeVar

from labstore.backup.models import ChangeOperation, ChangeRecord
from labstore.constants import SYNC_BATCH_SIZE, SYNC_DELTA, SYNC_FULL
from labstore.errors import ValidationError
from labstore.persistence.records import (
    ASSAY_LOTS,
    HISTORICAL_ASSAYS,
    SPECS_BY_SNAPSHOT_KEY,
    Record,
    TableSpec,
    explode_lots,
    is_missing,
    record_id,
    snapshot_records,
)
from labstore.persistence.statements import SQLValue, StatementExecutor
from labstore.persistence.transactions import TransactionExecutor

_logger = logging.getLogger(__name__)

T = TypeVar("T")

SNAPSHOT_GROUPS: Final[tuple[tuple[str, ...], ...]] = (
    ("inventory", "settings"),
    ("historicalAssays",),
    ("scheduledAssays", "safetyScheduledAssays"),
    ("calibrations", "calibrationEquipments", "holidays"),
    ("efficiencyCategories", "safetyCategories", "systemUsers"),
)

Prepared = list[tuple[Record, tuple[SQLValue, ...]]]
ChangeSink = Callable[[Sequence[ChangeRecord]], None]


@dataclass(slots=True)
class TableOutcome:
    table: str
    written: int = 0
    deleted: int = 0
    changes: list[ChangeRecord] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SyncReport:
    strategy: str
    tables: tuple[TableOutcome, ...]

    @property
    def rows_written(self) -> int:
        return sum(outcome.written for outcome in self.tables)

    @property
    def rows_deleted(self) -> int:
        return sum(outcome.deleted for outcome in self.tables)

    @property
    def changes(self) -> tuple[ChangeRecord, ...]:
        return tuple(change for outcome in self.tables for change in outcome.changes)


class SyncStrategy(Protocol):
    name: str

    async def sync_table(
        self, tx: StatementExecutor, spec: TableSpec, records: Sequence[Record]
    ) -> list[TableOutcome]: ...


class FullSync:
    """Delete-then-insert every table present in the snapshot."""

    name = SYNC_FULL

    async def sync_table(
        self, tx: StatementExecutor, spec: TableSpec, records: Sequence[Record]
    ) -> list[TableOutcome]:
        prepared = _prepare(spec, records)
        if spec is HISTORICAL_ASSAYS:
            lots = explode_lots(record for record, _ in prepared)
            lots_outcome = TableOutcome(ASSAY_LOTS.table)
            lots_outcome.deleted = (await tx.execute(f"DELETE FROM {ASSAY_LOTS.table}")).changes
            outcome = await self._replace(tx, spec, prepared)
            lots_outcome.written = await _insert_rows(tx, ASSAY_LOTS, [row for _, row in lots], replace=True)
            return [outcome, lots_outcome]
        return [await self._replace(tx, spec, prepared)]

    async def _replace(self, tx: StatementExecutor, spec: TableSpec, prepared: Prepared) -> TableOutcome:
        outcome = TableOutcome(spec.table)
        outcome.deleted = (await tx.execute(f"DELETE FROM {spec.table}")).changes
        outcome.written = await _insert_rows(tx, spec, [row for _, row in prepared], replace=True)
        return outcome


class DeltaSync:
    """Upsert supplied rows and prune rows missing from the incoming set."""

    name = SYNC_DELTA

    async def sync_table(
        self, tx: StatementExecutor, spec: TableSpec, records: Sequence[Record]
    ) -> list[TableOutcome]:
        prepared = _prepare(spec, records)
        outcome = TableOutcome(spec.table)
        outcome.written = await _insert_rows(tx, spec, [row for _, row in prepared], replace=False)
        outcome.changes.extend(
            _change(spec, ChangeOperation.UPDATE, spec.key_of_values(row), new_data=record)
            for record, row in prepared
        )

        if spec is not HISTORICAL_ASSAYS:
            await self._prune(tx, spec, [spec.key_of_values(row)[0] for _, row in prepared], outcome)
            return [outcome]

        lots = explode_lots(record for record, _ in prepared)
        lots_outcome = TableOutcome(ASSAY_LOTS.table)
        await self._prune_lots(tx, {ASSAY_LOTS.key_of_values(row) for _, row in lots}, lots_outcome)
        await self._prune(tx, spec, [spec.key_of_values(row)[0] for _, row in prepared], outcome)
        lots_outcome.written = await _insert_rows(tx, ASSAY_LOTS, [row for _, row in lots], replace=False)
        lots_outcome.changes.extend(
            _change(ASSAY_LOTS, ChangeOperation.UPDATE, ASSAY_LOTS.key_of_values(row), new_data=lot)
            for lot, row in lots
        )
        return [outcome, lots_outcome]

    async def _prune(
        self,
        tx: StatementExecutor,
        spec: TableSpec,
        keep: Sequence[SQLValue],
        outcome: TableOutcome,
    ) -> None:
        pk = spec.primary_key[0]
        columns = ", ".join(spec.column_names)
        if keep:
            placeholders = ", ".join("?" for _ in keep)
            where, params = f" WHERE {pk} NOT IN ({placeholders})", tuple(keep)
        else:
            where, params = "", ()

        stale = await tx.select(f"SELECT {columns} FROM {spec.table}{where}", params)
        if not stale:
            return
        outcome.deleted += (await tx.execute(f"DELETE FROM {spec.table}{where}", params)).changes
        outcome.changes.extend(
            _change(spec, ChangeOperation.DELETE, spec.key_of(row), old_data=spec.from_row(row))
            for row in stale
        )

    async def _prune_lots(
        self,
        tx: StatementExecutor,
        keep: set[tuple[SQLValue, ...]],
        outcome: TableOutcome,
    ) -> None:
        columns = ", ".join(ASSAY_LOTS.column_names)
        existing = await tx.select(f"SELECT {columns} FROM {ASSAY_LOTS.table}")
        stale = [row for row in existing if ASSAY_LOTS.key_of(row) not in keep]
        if not stale:
            return
        conditions = " AND ".join(f"{name} = ?" for name in ASSAY_LOTS.primary_key)
        result = await tx.execute_many(
            f"DELETE FROM {ASSAY_LOTS.table} WHERE {conditions}",
            [ASSAY_LOTS.key_of(row) for row in stale],
        )
        outcome.deleted += result.changes
        outcome.changes.extend(
            _change(ASSAY_LOTS, ChangeOperation.DELETE, ASSAY_LOTS.key_of(row), old_data=ASSAY_LOTS.from_row(row))
            for row in stale
        )


STRATEGIES: Final[Mapping[str, SyncStrategy]] = {SYNC_FULL: FullSync(), SYNC_DELTA: DeltaSync()}


def strategy_for(mode: str) -> SyncStrategy:
    try:
        return STRATEGIES[mode]
    except KeyError:
        raise ValueError(f"unknown sync mode {mode!r}; expected one of {sorted(STRATEGIES)}") from None


def normalize_snapshot(snapshot: Mapping[str, Any]) -> dict[str, list[Record]]:
    """Convert every present, non-null snapshot entry to external record lists.

    Raises ``ValidationError`` listing every malformed entry; nothing is written.
    """

    if not isinstance(snapshot, Mapping):
        raise ValidationError([f"snapshot must be a mapping, got {type(snapshot).__name__}"], entity="snapshot")
    normalized: dict[str, list[Record]] = {}
    errors: list[str] = []
    for key, value in snapshot.items():
        spec = SPECS_BY_SNAPSHOT_KEY.get(key)
        if spec is None or value is None:
            continue
        try:
            normalized[key] = snapshot_records(spec, value)
        except TypeError as exc:
            errors.append(str(exc))
    if errors:
        raise ValidationError(errors, entity="snapshot")
    return normalized


async def persist_snapshot(
    transactions: TransactionExecutor,
    strategy: SyncStrategy,
    snapshot: Mapping[str, Any],
    *,
    on_changes: ChangeSink | None = None,
) -> SyncReport:
    """Apply ``snapshot`` group by group, each group in its own transaction.

    ``on_changes`` receives each group's change records after that group commits.
    """

    normalized = normalize_snapshot(snapshot)
    outcomes: list[TableOutcome] = []

    for group in SNAPSHOT_GROUPS:
        present = [key for key in group if key in normalized]
        if not present:
            continue

        async def apply(tx: StatementExecutor, present: list[str] = present) -> list[TableOutcome]:
            group_outcomes: list[TableOutcome] = []
            for key in present:
                spec = SPECS_BY_SNAPSHOT_KEY[key]
                group_outcomes.extend(await strategy.sync_table(tx, spec, normalized[key]))
            return group_outcomes

        committed = await transactions.transaction(apply)
        outcomes.extend(committed)
        if on_changes is not None:
            changes = [change for outcome in committed for change in outcome.changes]
            if changes:
                on_changes(changes)

    report = SyncReport(strategy=strategy.name, tables=tuple(outcomes))
    _logger.info(
        "snapshot persisted",
        extra={
            "sync_mode": strategy.name,
            "tables": len(report.tables),
            "rows_written": report.rows_written,
            "rows_deleted": report.rows_deleted,
        },
    )
    return report


async def _insert_rows(
    tx: StatementExecutor,
    spec: TableSpec,
    rows: Sequence[tuple[SQLValue, ...]],
    *,
    replace: bool,
) -> int:
    if not rows:
        return 0
    columns = ", ".join(spec.column_names)
    row_placeholder = "(" + ", ".join("?" for _ in spec.column_names) + ")"
    if replace:
        head, tail = f"INSERT OR REPLACE INTO {spec.table} ({columns}) VALUES ", ""
    else:
        head, tail = f"INSERT INTO {spec.table} ({columns}) VALUES ", _upsert_clause(spec)

    written = 0
    for batch in _batches(rows, SYNC_BATCH_SIZE):
        sql = head + ", ".join(row_placeholder for _ in batch) + tail
        params = tuple(value for row in batch for value in row)
        await tx.execute(sql, params)
        written += len(batch)
    return written


def _upsert_clause(spec: TableSpec) -> str:
    conflict = ", ".join(spec.primary_key)
    updates = ", ".join(f"{name} = excluded.{name}" for name in spec.value_columns)
    if not updates:
        return f" ON CONFLICT({conflict}) DO NOTHING"
    return f" ON CONFLICT({conflict}) DO UPDATE SET {updates}"


def _prepare(spec: TableSpec, records: Sequence[Record]) -> Prepared:
    prepared: Prepared = []
    skipped = 0
    for record in records:
        row = spec.to_row(record)
        if any(is_missing(value) for value in spec.key_of_values(row)):
            skipped += 1
            continue
        prepared.append((record, row))
    if skipped:
        _logger.warning(
            "skipped snapshot records without a primary key",
            extra={"table": spec.table, "skipped": skipped},
        )
    return prepared


def _change(
    spec: TableSpec,
    operation: ChangeOperation,
    key: tuple[SQLValue, ...],
    *,
    old_data: Any = None,
    new_data: Any = None,
) -> ChangeRecord:
    return ChangeRecord(
        table=spec.table,
        operation=operation,
        record_id=record_id(key),
        old_data=old_data,
        new_data=new_data,
    )


def _batches(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


__all__ = [
    "SNAPSHOT_GROUPS",
    "STRATEGIES",
    "DeltaSync",
    "FullSync",
    "SyncReport",
    "SyncStrategy",
    "TableOutcome",
    "normalize_snapshot",
    "persist_snapshot",
    "strategy_for",
]
