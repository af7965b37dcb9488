"""
labstore — store schema and deterministic migrations.

File: src/labstore/persistence/schema.py

Purpose
- Define the domain tables and their indexes as checksummed, ordered migrations.
- Apply pending migrations idempotently, one transaction per migration.

Functional requirements
- A recorded checksum that differs from the code raises ``MigrationError``.
- A database newer than ``STORE_SCHEMA_VERSION`` raises ``MigrationError``.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Final

from labstore.constants import STORE_SCHEMA_VERSION
from labstore.errors import MigrationError
from labstore.persistence.statements import StatementExecutor
from labstore.persistence.transactions import TransactionExecutor

_logger = logging.getLogger(__name__)

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS inventory (
        id INTEGER PRIMARY KEY,
        reagent TEXT NOT NULL,
        manufacturer TEXT NOT NULL,
        lot TEXT NOT NULL,
        quantity REAL NOT NULL,
        validity TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS historical_assays (
        id INTEGER PRIMARY KEY,
        protocol TEXT NOT NULL,
        orcamento TEXT,
        assay_manufacturer TEXT NOT NULL,
        model TEXT NOT NULL,
        nominal_load REAL NOT NULL,
        tensao TEXT NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        setup INTEGER NOT NULL,
        status TEXT NOT NULL,
        type TEXT NOT NULL,
        observacoes TEXT,
        cycles INTEGER,
        report TEXT,
        consumption TEXT,
        total_consumption REAL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_assays (
        id INTEGER PRIMARY KEY,
        protocol TEXT NOT NULL,
        orcamento TEXT,
        report_date TEXT NOT NULL,
        assay_manufacturer TEXT NOT NULL,
        model TEXT NOT NULL,
        nominal_load REAL NOT NULL,
        tensao TEXT NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        setup INTEGER NOT NULL,
        status TEXT NOT NULL,
        type TEXT NOT NULL,
        observacoes TEXT,
        cycles INTEGER,
        planned_suppliers TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS safety_scheduled_assays (
        id INTEGER PRIMARY KEY,
        protocol TEXT NOT NULL,
        orcamento TEXT NOT NULL,
        report_date TEXT NOT NULL,
        assay_manufacturer TEXT NOT NULL,
        model TEXT NOT NULL,
        nominal_load REAL NOT NULL,
        tensao TEXT NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        setup TEXT NOT NULL,
        status TEXT NOT NULL,
        type TEXT NOT NULL,
        observacoes TEXT,
        cycles INTEGER,
        sub_row_index INTEGER,
        planned_suppliers TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS holidays (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calibrations (
        id INTEGER PRIMARY KEY,
        protocol TEXT NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        affected_terminals TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS system_users (
        username TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        display_name TEXT NOT NULL,
        permissions TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calibration_equipments (
        id TEXT PRIMARY KEY,
        tag TEXT NOT NULL,
        equipment TEXT NOT NULL,
        validity TEXT NOT NULL,
        observations TEXT,
        calibration_status TEXT DEFAULT 'disponivel',
        calibration_start_date TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS efficiency_categories (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS safety_categories (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS assay_lots (
        assay_id INTEGER NOT NULL,
        reagent_type TEXT NOT NULL,
        lot TEXT NOT NULL,
        cycles INTEGER,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (assay_id, reagent_type, lot),
        FOREIGN KEY (assay_id) REFERENCES historical_assays (id)
    )
    """,
)

_MIGRATION_0002_STATEMENTS: Final[tuple[str, ...]] = (
    "CREATE INDEX IF NOT EXISTS idx_inventory_reagent ON inventory(reagent)",
    "CREATE INDEX IF NOT EXISTS idx_inventory_validity ON inventory(validity)",
    "CREATE INDEX IF NOT EXISTS idx_inventory_quantity ON inventory(quantity)",
    "CREATE INDEX IF NOT EXISTS idx_inventory_manufacturer ON inventory(manufacturer)",
    "CREATE INDEX IF NOT EXISTS idx_scheduled_assays_status ON scheduled_assays(status)",
    "CREATE INDEX IF NOT EXISTS idx_scheduled_assays_start_date ON scheduled_assays(start_date)",
    "CREATE INDEX IF NOT EXISTS idx_scheduled_assays_end_date ON scheduled_assays(end_date)",
    "CREATE INDEX IF NOT EXISTS idx_scheduled_assays_protocol ON scheduled_assays(protocol)",
    "CREATE INDEX IF NOT EXISTS idx_safety_scheduled_assays_status ON safety_scheduled_assays(status)",
    "CREATE INDEX IF NOT EXISTS idx_safety_scheduled_assays_start_date "
    "ON safety_scheduled_assays(start_date)",
    "CREATE INDEX IF NOT EXISTS idx_safety_scheduled_assays_end_date ON safety_scheduled_assays(end_date)",
    "CREATE INDEX IF NOT EXISTS idx_historical_assays_status ON historical_assays(status)",
    "CREATE INDEX IF NOT EXISTS idx_historical_assays_start_date ON historical_assays(start_date)",
    "CREATE INDEX IF NOT EXISTS idx_historical_assays_protocol ON historical_assays(protocol)",
    "CREATE INDEX IF NOT EXISTS idx_calibration_equipments_status "
    "ON calibration_equipments(calibration_status)",
    "CREATE INDEX IF NOT EXISTS idx_calibration_equipments_validity ON calibration_equipments(validity)",
    "CREATE INDEX IF NOT EXISTS idx_holidays_start_date ON holidays(start_date)",
    "CREATE INDEX IF NOT EXISTS idx_holidays_end_date ON holidays(end_date)",
    "CREATE INDEX IF NOT EXISTS idx_assay_lots_assay_id ON assay_lots(assay_id)",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.strip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


def _migration(version: int, name: str, statements: tuple[str, ...]) -> Migration:
    return Migration(
        version=version,
        name=name,
        statements=statements,
        checksum=migration_checksum(version, name, statements),
    )


MIGRATIONS: Final[tuple[Migration, ...]] = (
    _migration(1, "domain_tables", _MIGRATION_0001_STATEMENTS),
    _migration(2, "domain_indexes", _MIGRATION_0002_STATEMENTS),
)


async def migrate(
    transactions: TransactionExecutor,
    *,
    target_version: int = STORE_SCHEMA_VERSION,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> int:
    """Apply pending migrations up to ``target_version`` and return the schema version."""

    _validate_chain(migrations, target_version)
    statements = transactions.statements
    await statements.execute(_SCHEMA_VERSIONS_TABLE_SQL, track_write=False)

    applied = await load_history(statements)
    current_version = max(applied, default=0)
    if current_version > target_version:
        raise MigrationError(
            "database schema is newer than supported by this package "
            f"(db={current_version}, code={target_version}) at {statements.state.path}"
        )

    for migration in migrations:
        if migration.version > target_version:
            continue
        record = applied.get(migration.version)
        if record is not None:
            if record.checksum != migration.checksum:
                raise MigrationError(
                    "migration checksum mismatch for version "
                    f"{migration.version}: db={record.checksum} code={migration.checksum}"
                )
            continue

        applied_at = _utc_now_iso()

        async def apply(tx: StatementExecutor, migration: Migration = migration) -> None:
            for statement in migration.statements:
                await tx.execute(statement)
            await tx.execute(
                "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
                (migration.version, migration.name, migration.checksum, applied_at),
            )

        await transactions.transaction(apply)
        applied[migration.version] = MigrationRecord(
            version=migration.version,
            name=migration.name,
            checksum=migration.checksum,
            applied_at=applied_at,
        )
        _logger.info(
            "applied store migration",
            extra={"version": migration.version, "migration": migration.name},
        )

    return await schema_version(statements)


async def schema_version(statements: StatementExecutor) -> int:
    row = await statements.select_one("SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions")
    if row is None:
        return 0
    value = row["version"]
    if not isinstance(value, int):
        raise MigrationError("schema_versions.version must be an integer")
    return value


async def load_history(statements: StatementExecutor) -> dict[int, MigrationRecord]:
    rows = await statements.select(
        "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version ASC"
    )
    history: dict[int, MigrationRecord] = {}
    for row in rows:
        version = row.get("version")
        name = row.get("name")
        checksum = row.get("checksum")
        applied_at = row.get("applied_at")
        if not isinstance(version, int):
            raise MigrationError("schema_versions.version must be integer")
        if not isinstance(name, str) or not isinstance(checksum, str) or not isinstance(applied_at, str):
            raise MigrationError(f"schema_versions row {version} is malformed")
        history[version] = MigrationRecord(version=version, name=name, checksum=checksum, applied_at=applied_at)
    return history


def _validate_chain(migrations: Sequence[Migration], target_version: int) -> None:
    versions = [migration.version for migration in migrations]
    expected = list(range(1, len(versions) + 1))
    if versions != expected:
        raise MigrationError(f"migration versions must be contiguous from 1, got {versions}")
    if target_version > len(versions):
        raise MigrationError(
            f"target schema version {target_version} has no migration (latest={len(versions)})"
        )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "MIGRATIONS",
    "Migration",
    "MigrationRecord",
    "load_history",
    "migrate",
    "migration_checksum",
    "schema_version",
]
