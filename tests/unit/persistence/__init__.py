"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from labstore.config import LabStoreConfig, load_config
from labstore.persistence import records
from labstore.persistence.connection import ConnectionState
from labstore.persistence.engine import StoreEngine
from labstore.persistence.statements import RetryPolicy, StatementExecutor


def make_config(root: Path, **overrides: object) -> LabStoreConfig:
    """Config rooted at ``root`` with zero retry delay and no optional reader.

    Overrides use ``section__key`` names, e.g. ``store__mode="network"``.
    """

    dotted: dict[str, object] = {
        "store.path": str(root / "store" / "database.sqlite"),
        "store.mode": "local",
        "store.read_only_handle": False,
        "retry.base_delay_ms": 0,
        "backup.directory": str(root / "backups"),
        "logging.log_dir": str(root / "logs"),
    }
    dotted.update({key.replace("__", "."): value for key, value in overrides.items()})
    return load_config(overrides=dotted, environ={})


def inventory_item(item_id: int | None, **fields: Any) -> dict[str, Any]:
    item: dict[str, Any] = {
        "reagent": f"Reagent {item_id}",
        "manufacturer": "Acme",
        "lot": f"LOT-{item_id}",
        "quantity": 10,
        "validity": "2030-01-01",
    }
    if item_id is not None:
        item["id"] = item_id
    item.update(fields)
    return item


def historical_assay(assay_id: int, *, lots: Mapping[str, list[dict[str, Any]]] | None = None) -> dict[str, Any]:
    return {
        "id": assay_id,
        "protocol": f"PROT-{assay_id}",
        "orcamento": "ORC-1",
        "assayManufacturer": "WashCo",
        "model": "WM-100",
        "nominalLoad": 7.5,
        "tensao": "220",
        "startDate": "2026-01-05",
        "endDate": "2026-01-09",
        "setup": 1,
        "status": "completed",
        "type": "efficiency",
        "cycles": 12,
        "consumption": {"energy": 1.5},
        "totalConsumption": 18.0,
        "lots": dict(lots or {}),
    }


def sample_snapshot() -> dict[str, Any]:
    return {
        "inventory": [inventory_item(1), inventory_item(2, quantity=3)],
        "settings": {"notificationEmail": "lab@example.com", "alertThreshold": 30},
        "historicalAssays": [
            historical_assay(
                100,
                lots={"poBase": [{"lot": "PB-1", "cycles": 4}], "perborato": [{"lot": "N/A", "cycles": 0}]},
            ),
        ],
        "holidays": [{"id": 1, "name": "Carnaval", "startDate": "2026-02-16", "endDate": "2026-02-17"}],
        "efficiencyCategories": [{"id": 1, "name": "Lavadoras"}],
        "safetyCategories": [{"id": "cat-a", "name": "Secadoras"}],
        "systemUsers": {
            "ana": {"type": "administrador", "displayName": "Ana", "permissions": ["all"]},
        },
    }


class FakeConnection:
    """Stands in for ``sqlite3.Connection``; raises ``errors`` in order, then succeeds."""

    def __init__(self, errors: list[sqlite3.Error]) -> None:
        self._errors = list(errors)
        self.calls = 0

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> _FakeCursor:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return _FakeCursor()


class _FakeCursor:
    description = None
    lastrowid = 1
    rowcount = 1

    def fetchall(self) -> list[Any]:
        return []

    def close(self) -> None:
        return None


def fake_executor(
    tmp_path: Path,
    errors: list[sqlite3.Error],
    *,
    max_retries: int = 3,
    on_write: Callable[[str], None] | None = None,
) -> tuple[StatementExecutor, FakeConnection]:
    conn = FakeConnection(errors)
    state = ConnectionState(path=tmp_path / "fake.sqlite", mode="local", writer=conn)  # type: ignore[arg-type]
    retry = RetryPolicy(max_retries=max_retries, base_delay_ms=0)
    return StatementExecutor(state, retry=retry, on_write=on_write), conn


def locked_error() -> sqlite3.OperationalError:
    return sqlite3.OperationalError("database is locked")


@asynccontextmanager
async def running_engine(root: Path, **overrides: object) -> AsyncIterator[StoreEngine]:
    engine = StoreEngine(make_config(root, **overrides))
    await engine.initialize()
    try:
        yield engine
    finally:
        await engine.close()


async def table_rows(engine: StoreEngine, table: str) -> list[dict[str, Any]]:
    spec = records.SPECS_BY_TABLE[table]
    return await engine.statements.select(
        f"SELECT {', '.join(spec.column_names)} FROM {table} ORDER BY {spec.order_by}"
    )
