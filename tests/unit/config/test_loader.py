"""
labstore — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and explicit overrides.

What this test file should cover
- Precedence: overrides > env > file > defaults.
- Env var path mapping and type coercion.
- Path normalization relative to the config file.
- Actionable errors for missing files, bad TOML, and bad env values.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from labstore.config import ConfigLoadError, ConfigValidationError, load_config
from labstore.constants import DEFAULT_BACKUP_DIRNAME


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)


def test_defaults_describe_a_network_store(tmp_path: Path) -> None:
    config = load_config(environ={})

    assert config.store.mode == "network"
    assert config.store.read_only_handle is True
    assert config.store.sync_mode == "delta"
    assert config.retry.max_retries == 3
    assert config.checkpoint.write_threshold == 20
    assert config.checkpoint.min_interval_ms == 2000
    assert config.checkpoint.wal_size_threshold_bytes == 512 * 1024
    assert config.backup.directory == tmp_path.resolve() / DEFAULT_BACKUP_DIRNAME


def test_precedence_overrides_env_file_defaults(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "labstore.toml",
        """
[store]
mode = "local"
busy_timeout_ms = 1000

[retry]
max_retries = 2
base_delay_ms = 10
""".strip(),
    )

    config = load_config(
        config_path,
        environ={"LABSTORE_RETRY_MAX_RETRIES": "1", "LABSTORE_STORE_BUSY_TIMEOUT_MS": "2500"},
        overrides={"retry.max_retries": 0},
    )

    assert config.store.mode == "local"
    assert config.store.busy_timeout_ms == 2500
    assert config.retry.max_retries == 0
    assert config.retry.base_delay_ms == 10


def test_nested_override_mappings_merge_with_sections() -> None:
    config = load_config(
        overrides={"backup": {"max_backups": 5}, "store.auto_vacuum": True},
        environ={},
    )

    assert config.backup.max_backups == 5
    assert config.backup.max_age_days == 30
    assert config.store.auto_vacuum is True


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("true", True), ("YES", True), ("1", True), ("off", False), (" no ", False)],
)
def test_env_booleans_are_coerced(raw: str, expected: bool) -> None:
    config = load_config(environ={"LABSTORE_STORE_READ_ONLY_HANDLE": raw})

    assert config.store.read_only_handle is expected


@pytest.mark.parametrize(
    ("name", "raw", "message"),
    [
        ("LABSTORE_STORE_READ_ONLY_HANDLE", "maybe", "must be a boolean"),
        ("LABSTORE_CHECKPOINT_WRITE_THRESHOLD", "twenty", "must be an integer"),
    ],
)
def test_invalid_env_values_are_rejected(name: str, raw: str, message: str) -> None:
    with pytest.raises(ConfigLoadError, match=message):
        load_config(environ={name: raw})


def test_env_values_are_validated_after_coercion() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(environ={"LABSTORE_STORE_MODE": "cloud"})

    assert [issue.path for issue in excinfo.value.issues] == ["store.mode"]


def test_relative_paths_resolve_against_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "conf" / "labstore.toml",
        """
[store]
path = "data/lab.sqlite"

[backup]
directory = "../backups"
""".strip(),
    )

    config = load_config(config_path, environ={})

    assert config.store.path == (tmp_path / "conf" / "data" / "lab.sqlite").resolve()
    assert config.backup.directory == (tmp_path / "backups").resolve()


def test_explicit_missing_config_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "missing.toml", environ={})


def test_invalid_toml_is_reported_with_path(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "labstore.toml", "[store\nmode = ")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_repeated_loads_are_equal(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "labstore.toml", '[logging]\nlevel = "debug"\n')

    first = load_config(config_path, environ={})
    second = load_config(config_path, environ={})

    assert first == second
    assert first.logging.level == "DEBUG"
