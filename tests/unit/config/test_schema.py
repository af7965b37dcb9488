"""
labstore — unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict schema behavior: structured errors, unknown keys, range checks, typed materialization.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from labstore.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    LabStoreConfig,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)


def _paths(config: object) -> list[str]:
    normalized, issues = validate_config(config)
    assert normalized is None
    return [issue.path for issue in issues]


def test_defaults_validate_and_materialize() -> None:
    config = LabStoreConfig.from_mapping(default_config())

    assert isinstance(config.store.path, Path)
    assert config.backup.incremental_threshold == 10
    assert config.backup.compression_level == 6


def test_default_config_is_a_deep_copy() -> None:
    copy = default_config()
    copy["store"]["mode"] = "local"

    assert DEFAULT_CONFIG["store"]["mode"] == "network"


def test_unknown_keys_are_rejected_with_paths() -> None:
    payload = merge_config(default_config(), {"store": {"journal": "wal"}, "metrics": {}})

    assert _paths(payload) == ["metrics", "store.journal"]


def test_missing_sections_and_fields_are_reported() -> None:
    payload = default_config()
    del payload["retry"]
    del payload["backup"]["max_backups"]

    assert _paths(payload) == ["retry", "backup.max_backups"]


@pytest.mark.parametrize(
    ("section", "key", "value", "path"),
    [
        ("store", "mode", "cloud", "store.mode"),
        ("store", "sync_mode", "mirror", "store.sync_mode"),
        ("store", "max_concurrent_operations", 0, "store.max_concurrent_operations"),
        ("store", "read_only_handle", "yes", "store.read_only_handle"),
        ("store", "path", "   ", "store.path"),
        ("retry", "max_retries", -1, "retry.max_retries"),
        ("retry", "base_delay_ms", True, "retry.base_delay_ms"),
        ("checkpoint", "write_threshold", 0, "checkpoint.write_threshold"),
        ("backup", "compression_level", 10, "backup.compression_level"),
        ("backup", "incremental_threshold", 1.5, "backup.incremental_threshold"),
        ("logging", "level", "TRACE", "logging.level"),
    ],
)
def test_invalid_values_report_their_field(section: str, key: str, value: object, path: str) -> None:
    payload = default_config()
    payload[section][key] = value

    assert _paths(payload) == [path]


def test_integral_floats_are_accepted_as_integers() -> None:
    payload = merge_config(default_config(), {"checkpoint": {"min_interval_ms": 1500.0}})

    assert assert_valid_config(payload)["checkpoint"]["min_interval_ms"] == 1500


def test_error_message_lists_every_issue() -> None:
    payload = merge_config(default_config(), {"store": {"mode": "cloud"}, "retry": {"max_retries": "3"}})

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(payload)

    message = str(excinfo.value)
    assert "store.mode" in message
    assert "retry.max_retries: expected integer, got str" in message
    assert len(excinfo.value.issues) == 2


def test_non_mapping_root_is_rejected() -> None:
    assert _paths(["store"]) == ["<root>"]
