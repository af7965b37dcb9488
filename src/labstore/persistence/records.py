"""
labstore — per-table record specs and bidirectional field maps.

File: src/labstore/persistence/records.py

Purpose
- Describe every domain table as a ``TableSpec``: storage columns, the external
  (snapshot) key each column maps to, aliases accepted on input, and defaults.
- Convert snapshot records to storage rows and back without touching the store.

Snapshot shapes
- Most tables are lists of records keyed by ``id``.
- ``settings`` is a mapping ``{key: value}``; values are stored as JSON.
- ``systemUsers`` is a mapping ``{username: user}``.
- ``assay_lots`` rows are embedded in each historical assay as
  ``lots: {reagent_type: [{lot, cycles}, ...]}``.

A value is treated as missing when it is ``None`` or an empty string; ``0`` and
``False`` are kept as supplied. Defaults are deterministic so that persisting the
same snapshot twice produces the same rows.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

from labstore.persistence.statements import SQLValue
from labstore.utils.hashing import canonical_json

Record = dict[str, Any]
DefaultFactory = Callable[[Mapping[str, Any]], SQLValue]

NOT_SPECIFIED: Final[str] = "Não especificado"
EMPTY_LOT: Final[str] = "N/A"


class SnapshotShape(str, Enum):
    LIST = "list"
    MAPPING = "mapping"
    CHILD = "child"


def is_missing(value: object) -> bool:
    return value is None or value == ""


@dataclass(frozen=True, slots=True)
class Column:
    """One storage column and the external key it is read from and written to."""

    name: str
    external: str | None = None
    aliases: tuple[str, ...] = ()
    default: SQLValue | DefaultFactory = None
    json: bool = False
    # Stored exactly as supplied; missing values are not replaced by the default.
    raw: bool = False

    @property
    def key(self) -> str:
        return self.external or self.name

    def to_storage(self, record: Mapping[str, Any]) -> SQLValue:
        value: Any = None
        for candidate in (self.key, *self.aliases):
            value = record.get(candidate)
            if not is_missing(value):
                break
        if self.raw:
            return canonical_json(value) if self.json else value
        if is_missing(value):
            value = self.default(record) if callable(self.default) else self.default
            if value is None:
                return None
        if self.json:
            return canonical_json(value)
        if isinstance(value, (dict, list, tuple)):
            return canonical_json(value)
        return value

    def to_external(self, value: SQLValue) -> Any:
        if not self.json or value is None:
            return value
        if not isinstance(value, str):
            return value
        try:
            return json.loads(value)
        except ValueError:
            return value


@dataclass(frozen=True, slots=True)
class TableSpec:
    """Storage layout of one table and its place in the snapshot."""

    table: str
    snapshot_key: str
    columns: tuple[Column, ...]
    primary_key: tuple[str, ...] = ("id",)
    shape: SnapshotShape = SnapshotShape.LIST
    parent: str | None = None
    column_by_name: Mapping[str, Column] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "column_by_name", {column.name: column for column in self.columns})

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    @property
    def value_columns(self) -> tuple[str, ...]:
        return tuple(name for name in self.column_names if name not in self.primary_key)

    @property
    def order_by(self) -> str:
        return ", ".join(self.primary_key)

    def to_row(self, record: Mapping[str, Any]) -> tuple[SQLValue, ...]:
        return tuple(column.to_storage(record) for column in self.columns)

    def from_row(self, row: Mapping[str, Any]) -> Record:
        return {column.key: column.to_external(row.get(column.name)) for column in self.columns}

    def key_of(self, row: Mapping[str, Any]) -> tuple[SQLValue, ...]:
        """Primary key of a storage row (dict keyed by column name)."""

        return tuple(row.get(name) for name in self.primary_key)

    def key_of_values(self, values: tuple[SQLValue, ...]) -> tuple[SQLValue, ...]:
        names = self.column_names
        return tuple(values[names.index(name)] for name in self.primary_key)


def record_id(key: tuple[SQLValue, ...]) -> SQLValue:
    """Change-log identifier for a primary key; composite keys join with ``-``."""

    if len(key) == 1:
        return key[0]
    return "-".join(str(part) for part in key)


def _assay_columns(*, scheduled: bool, safety: bool) -> tuple[Column, ...]:
    columns: list[Column] = [
        Column("id"),
        Column("protocol", default=NOT_SPECIFIED),
        Column("orcamento", default=NOT_SPECIFIED),
    ]
    if scheduled:
        columns.append(Column("report_date", "reportDate", default=""))
    columns.extend(
        [
            Column("assay_manufacturer", "assayManufacturer", default=NOT_SPECIFIED),
            Column("model", default=NOT_SPECIFIED),
            Column("nominal_load", "nominalLoad", default=0),
            Column("tensao", default="0"),
            Column("start_date", "startDate", default=""),
            Column("end_date", "endDate", default=""),
            Column("setup", default="1" if safety else 1),
            Column("status", default="scheduled" if scheduled else "completed"),
            Column("type", default="safety" if safety else "efficiency"),
            Column("observacoes"),
            Column("cycles"),
        ]
    )
    if safety:
        columns.append(Column("sub_row_index", "subRowIndex", aliases=("sub_row_index",), default=0))
    if scheduled:
        columns.append(Column("planned_suppliers", "plannedSuppliers", json=True))
    else:
        columns.extend(
            [
                Column("report"),
                Column("consumption", json=True),
                Column("total_consumption", "totalConsumption"),
            ]
        )
    return tuple(columns)


INVENTORY: Final[TableSpec] = TableSpec(
    table="inventory",
    snapshot_key="inventory",
    columns=(
        Column("id"),
        Column("reagent", default=NOT_SPECIFIED),
        Column("manufacturer", default=NOT_SPECIFIED),
        Column("lot", default=NOT_SPECIFIED),
        Column("quantity", default=0),
        Column("validity", default=""),
    ),
)

HISTORICAL_ASSAYS: Final[TableSpec] = TableSpec(
    table="historical_assays",
    snapshot_key="historicalAssays",
    columns=_assay_columns(scheduled=False, safety=False),
)

ASSAY_LOTS: Final[TableSpec] = TableSpec(
    table="assay_lots",
    snapshot_key="lots",
    columns=(
        Column("assay_id"),
        Column("reagent_type"),
        Column("lot"),
        Column("cycles", default=0),
    ),
    primary_key=("assay_id", "reagent_type", "lot"),
    shape=SnapshotShape.CHILD,
    parent="historical_assays",
)

SCHEDULED_ASSAYS: Final[TableSpec] = TableSpec(
    table="scheduled_assays",
    snapshot_key="scheduledAssays",
    columns=_assay_columns(scheduled=True, safety=False),
)

SAFETY_SCHEDULED_ASSAYS: Final[TableSpec] = TableSpec(
    table="safety_scheduled_assays",
    snapshot_key="safetyScheduledAssays",
    columns=_assay_columns(scheduled=True, safety=True),
)

HOLIDAYS: Final[TableSpec] = TableSpec(
    table="holidays",
    snapshot_key="holidays",
    columns=(
        Column("id"),
        Column("name", default="Feriado"),
        Column("start_date", "startDate", aliases=("date",), default=""),
        Column("end_date", "endDate", aliases=("date",), default=""),
    ),
)

CALIBRATIONS: Final[TableSpec] = TableSpec(
    table="calibrations",
    snapshot_key="calibrations",
    columns=(
        Column("id"),
        Column("protocol", aliases=("equipment",), default=NOT_SPECIFIED),
        Column("start_date", "startDate", default=""),
        Column("end_date", "endDate", default=""),
        Column("type", default="calibration"),
        Column("status", default="scheduled"),
        Column(
            "affected_terminals",
            "affectedTerminals",
            aliases=("affected_terminals", "observacoes"),
            default="",
        ),
    ),
)

SETTINGS: Final[TableSpec] = TableSpec(
    table="settings",
    snapshot_key="settings",
    columns=(Column("key"), Column("value", json=True, raw=True)),
    primary_key=("key",),
    shape=SnapshotShape.MAPPING,
)

SYSTEM_USERS: Final[TableSpec] = TableSpec(
    table="system_users",
    snapshot_key="systemUsers",
    columns=(
        Column("username"),
        Column("type", default="user"),
        Column(
            "display_name",
            "displayName",
            aliases=("display_name",),
            default=lambda record: record.get("username"),
        ),
        Column("permissions", json=True, default=lambda record: []),
    ),
    primary_key=("username",),
    shape=SnapshotShape.MAPPING,
)

CALIBRATION_EQUIPMENTS: Final[TableSpec] = TableSpec(
    table="calibration_equipments",
    snapshot_key="calibrationEquipments",
    columns=(
        Column("id"),
        Column("tag", aliases=("name",), default=lambda record: f"TAG-{record.get('id')}"),
        Column("equipment", aliases=("name",), default="Equipamento"),
        Column("validity", default=""),
        Column("observations", default=""),
        Column("calibration_status", "calibrationStatus", default="disponivel"),
        Column("calibration_start_date", "calibrationStartDate"),
    ),
)

EFFICIENCY_CATEGORIES: Final[TableSpec] = TableSpec(
    table="efficiency_categories",
    snapshot_key="efficiencyCategories",
    columns=(Column("id"), Column("name", default="Categoria")),
)

SAFETY_CATEGORIES: Final[TableSpec] = TableSpec(
    table="safety_categories",
    snapshot_key="safetyCategories",
    columns=(Column("id"), Column("name", default="Categoria")),
)

TABLE_SPECS: Final[tuple[TableSpec, ...]] = (
    INVENTORY,
    SETTINGS,
    HISTORICAL_ASSAYS,
    ASSAY_LOTS,
    SCHEDULED_ASSAYS,
    SAFETY_SCHEDULED_ASSAYS,
    CALIBRATIONS,
    CALIBRATION_EQUIPMENTS,
    HOLIDAYS,
    EFFICIENCY_CATEGORIES,
    SAFETY_CATEGORIES,
    SYSTEM_USERS,
)

SPECS_BY_TABLE: Final[Mapping[str, TableSpec]] = {spec.table: spec for spec in TABLE_SPECS}
SPECS_BY_SNAPSHOT_KEY: Final[Mapping[str, TableSpec]] = {
    spec.snapshot_key: spec for spec in TABLE_SPECS if spec.shape is not SnapshotShape.CHILD
}


def snapshot_records(spec: TableSpec, value: object) -> list[Record]:
    """Normalize one snapshot entry to a list of external records."""

    if spec.shape is SnapshotShape.MAPPING:
        if not isinstance(value, Mapping):
            raise TypeError(f"snapshot key {spec.snapshot_key!r} must be a mapping")
        key_column = spec.primary_key[0]
        records: list[Record] = []
        for key, item in value.items():
            if spec is SETTINGS:
                records.append({"key": key, "value": item})
            else:
                body = dict(item) if isinstance(item, Mapping) else {}
                body[key_column] = key
                records.append(body)
        return records

    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise TypeError(f"snapshot key {spec.snapshot_key!r} must be a list of records")
    return [dict(item) for item in value if isinstance(item, Mapping)]


def explode_lots(assays: Iterable[Mapping[str, Any]]) -> list[tuple[Record, tuple[SQLValue, ...]]]:
    """Flatten embedded ``lots`` into (external lot, storage row) pairs.

    Lots without a value or marked ``N/A`` are dropped.
    """

    exploded: list[tuple[Record, tuple[SQLValue, ...]]] = []
    for assay in assays:
        lots = assay.get("lots")
        if not isinstance(lots, Mapping):
            continue
        assay_id = assay.get("id")
        if is_missing(assay_id):
            continue
        for reagent_type, entries in lots.items():
            if not isinstance(entries, Iterable) or isinstance(entries, (str, bytes)):
                continue
            for entry in entries:
                if not isinstance(entry, Mapping):
                    continue
                lot = entry.get("lot")
                if is_missing(lot) or lot == EMPTY_LOT:
                    continue
                child = {
                    "assay_id": assay_id,
                    "reagent_type": reagent_type,
                    "lot": lot,
                    "cycles": entry.get("cycles"),
                }
                exploded.append((dict(entry), ASSAY_LOTS.to_row(child)))
    return exploded


def group_lots(rows: Iterable[Mapping[str, Any]]) -> dict[SQLValue, dict[str, list[Record]]]:
    """Regroup ``assay_lots`` rows as ``{assay_id: {reagent_type: [{lot, cycles}]}}``."""

    grouped: dict[SQLValue, dict[str, list[Record]]] = {}
    for row in rows:
        per_assay = grouped.setdefault(row["assay_id"], {})
        per_reagent = per_assay.setdefault(str(row["reagent_type"]), [])
        entry = {"lot": row["lot"], "cycles": row["cycles"]}
        if entry not in per_reagent:
            per_reagent.append(entry)
    return grouped


__all__ = [
    "ASSAY_LOTS",
    "CALIBRATIONS",
    "CALIBRATION_EQUIPMENTS",
    "EFFICIENCY_CATEGORIES",
    "EMPTY_LOT",
    "HISTORICAL_ASSAYS",
    "HOLIDAYS",
    "INVENTORY",
    "NOT_SPECIFIED",
    "SAFETY_CATEGORIES",
    "SAFETY_SCHEDULED_ASSAYS",
    "SCHEDULED_ASSAYS",
    "SETTINGS",
    "SPECS_BY_SNAPSHOT_KEY",
    "SPECS_BY_TABLE",
    "SYSTEM_USERS",
    "TABLE_SPECS",
    "Column",
    "Record",
    "SnapshotShape",
    "TableSpec",
    "explode_lots",
    "group_lots",
    "is_missing",
    "record_id",
    "snapshot_records",
]
