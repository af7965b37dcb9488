"""Checksummed migrations: idempotence, drift detection, forward-version guard."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from dataclasses import replace
from typing import TYPE_CHECKING

import pytest

from labstore.constants import STORE_SCHEMA_VERSION
from labstore.errors import MigrationError
from labstore.persistence.connection import close_connection_state, open_writer
from labstore.persistence.schema import MIGRATIONS, migrate, migration_checksum, schema_version
from labstore.persistence.statements import StatementExecutor
from labstore.persistence.transactions import TransactionExecutor

if TYPE_CHECKING:
    from pathlib import Path


def _transactions(db_path: Path) -> TransactionExecutor:
    return TransactionExecutor(StatementExecutor(open_writer(db_path, mode="local")))


async def test_migrate_is_idempotent_and_records_every_version(tmp_path: Path) -> None:
    transactions = _transactions(tmp_path / "store.sqlite")
    try:
        first = await migrate(transactions)
        second = await migrate(transactions)
        rows = await transactions.statements.select("SELECT version, name, checksum FROM schema_versions")
        tables = {
            row["name"]
            for row in await transactions.statements.select("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        indexes = {
            row["name"]
            for row in await transactions.statements.select("SELECT name FROM sqlite_master WHERE type = 'index'")
        }
    finally:
        close_connection_state(transactions.statements.state)

    assert first == second == STORE_SCHEMA_VERSION
    assert [(row["version"], row["checksum"]) for row in rows] == [
        (migration.version, migration.checksum) for migration in MIGRATIONS
    ]
    assert {
        "inventory",
        "historical_assays",
        "assay_lots",
        "scheduled_assays",
        "safety_scheduled_assays",
        "holidays",
        "calibrations",
        "settings",
        "system_users",
        "calibration_equipments",
        "efficiency_categories",
        "safety_categories",
    } <= tables
    assert {"idx_inventory_reagent", "idx_assay_lots_assay_id", "idx_holidays_start_date"} <= indexes


async def test_partial_target_version_applies_only_earlier_migrations(tmp_path: Path) -> None:
    transactions = _transactions(tmp_path / "store.sqlite")
    try:
        assert await migrate(transactions, target_version=1) == 1
        assert await schema_version(transactions.statements) == 1
        assert await migrate(transactions) == STORE_SCHEMA_VERSION
    finally:
        close_connection_state(transactions.statements.state)


async def test_checksum_mismatch_is_rejected(tmp_path: Path) -> None:
    db_path = tmp_path / "store.sqlite"
    transactions = _transactions(db_path)
    try:
        await migrate(transactions)
    finally:
        close_connection_state(transactions.statements.state)

    with closing(sqlite3.connect(db_path)) as conn, conn:
        conn.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("0" * 64,))

    transactions = _transactions(db_path)
    try:
        with pytest.raises(MigrationError, match="checksum mismatch"):
            await migrate(transactions)
    finally:
        close_connection_state(transactions.statements.state)


async def test_database_newer_than_code_is_rejected(tmp_path: Path) -> None:
    db_path = tmp_path / "store.sqlite"
    transactions = _transactions(db_path)
    try:
        await migrate(transactions)
        await transactions.statements.execute(
            "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
            (STORE_SCHEMA_VERSION + 1, "future", "f" * 64, "2030-01-01T00:00:00Z"),
        )
        with pytest.raises(MigrationError, match="newer"):
            await migrate(transactions)
    finally:
        close_connection_state(transactions.statements.state)


async def test_non_contiguous_migration_chain_is_rejected(tmp_path: Path) -> None:
    transactions = _transactions(tmp_path / "store.sqlite")
    broken = (MIGRATIONS[0], replace(MIGRATIONS[1], version=3))
    try:
        with pytest.raises(MigrationError, match="contiguous"):
            await migrate(transactions, migrations=broken)
    finally:
        close_connection_state(transactions.statements.state)


def test_checksum_ignores_indentation_but_not_content() -> None:
    base = migration_checksum(1, "t", ["CREATE TABLE a (id INTEGER)"])

    assert migration_checksum(1, "t", ["   CREATE TABLE a (id INTEGER)   "]) == base
    assert migration_checksum(1, "t", ["CREATE TABLE b (id INTEGER)"]) != base
    assert migration_checksum(2, "t", ["CREATE TABLE a (id INTEGER)"]) != base
