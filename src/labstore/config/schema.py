"""
labstore — configuration schema and validation.

File: src/labstore/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.
- Materialize validated payloads into frozen dataclasses consumed by the engine.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown keys so typos never silently fall back to defaults.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from labstore.constants import (
    DEFAULT_BACKUP_DIRNAME,
    DEFAULT_BUSY_TIMEOUT_MS,
    DEFAULT_CHECKPOINT_MIN_INTERVAL_MS,
    DEFAULT_CHECKPOINT_WRITE_THRESHOLD,
    DEFAULT_COMPRESSION_LEVEL,
    DEFAULT_DB_FILENAME,
    DEFAULT_IDLE_VACUUM_DELAY_MS,
    DEFAULT_INCREMENTAL_THRESHOLD,
    DEFAULT_MAX_AGE_DAYS,
    DEFAULT_MAX_BACKUPS,
    DEFAULT_MAX_CONCURRENT_OPERATIONS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY_MS,
    DEFAULT_WAL_SIZE_THRESHOLD_BYTES,
    DEPLOYMENT_MODES,
    MODE_NETWORK,
    SYNC_DELTA,
    SYNC_MODES,
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("store", "path"),
    ("backup", "directory"),
    ("logging", "log_dir"),
)

DEFAULT_CONFIG: Final[dict[str, dict[str, Any]]] = {
    "store": {
        "path": DEFAULT_DB_FILENAME,
        "mode": MODE_NETWORK,
        "busy_timeout_ms": DEFAULT_BUSY_TIMEOUT_MS,
        "read_only_handle": True,
        "max_concurrent_operations": DEFAULT_MAX_CONCURRENT_OPERATIONS,
        "auto_vacuum": False,
        "idle_vacuum_delay_ms": DEFAULT_IDLE_VACUUM_DELAY_MS,
        "sync_mode": SYNC_DELTA,
    },
    "retry": {
        "max_retries": DEFAULT_MAX_RETRIES,
        "base_delay_ms": DEFAULT_RETRY_BASE_DELAY_MS,
    },
    "checkpoint": {
        "write_threshold": DEFAULT_CHECKPOINT_WRITE_THRESHOLD,
        "min_interval_ms": DEFAULT_CHECKPOINT_MIN_INTERVAL_MS,
        "wal_size_threshold_bytes": DEFAULT_WAL_SIZE_THRESHOLD_BYTES,
    },
    "backup": {
        "directory": DEFAULT_BACKUP_DIRNAME,
        "max_backups": DEFAULT_MAX_BACKUPS,
        "max_age_days": DEFAULT_MAX_AGE_DAYS,
        "compression_level": DEFAULT_COMPRESSION_LEVEL,
        "incremental_threshold": DEFAULT_INCREMENTAL_THRESHOLD,
    },
    "logging": {
        "level": "INFO",
        "log_dir": "logs",
        "log_to_stdout": False,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


@dataclass(frozen=True, slots=True)
class StoreSettings:
    path: Path
    mode: str
    busy_timeout_ms: int
    read_only_handle: bool
    max_concurrent_operations: int
    auto_vacuum: bool
    idle_vacuum_delay_ms: int
    sync_mode: str


@dataclass(frozen=True, slots=True)
class RetrySettings:
    max_retries: int
    base_delay_ms: int


@dataclass(frozen=True, slots=True)
class CheckpointSettings:
    write_threshold: int
    min_interval_ms: int
    wal_size_threshold_bytes: int


@dataclass(frozen=True, slots=True)
class BackupSettings:
    directory: Path
    max_backups: int
    max_age_days: int
    compression_level: int
    incremental_threshold: int


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str
    log_dir: Path
    log_to_stdout: bool


@dataclass(frozen=True, slots=True)
class LabStoreConfig:
    """Effective, validated runtime configuration."""

    store: StoreSettings
    retry: RetrySettings
    checkpoint: CheckpointSettings
    backup: BackupSettings
    logging: LoggingSettings

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> LabStoreConfig:
        validated = assert_valid_config(payload)
        store = dict(validated["store"])
        backup = dict(validated["backup"])
        logging_section = dict(validated["logging"])
        store["path"] = Path(store["path"])
        backup["directory"] = Path(backup["directory"])
        logging_section["log_dir"] = Path(logging_section["log_dir"])
        return cls(
            store=StoreSettings(**store),
            retry=RetrySettings(**validated["retry"]),
            checkpoint=CheckpointSettings(**validated["checkpoint"]),
            backup=BackupSettings(**backup),
            logging=LoggingSettings(**logging_section),
        )


def default_config() -> dict[str, dict[str, Any]]:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(
    config: Mapping[str, object] | object,
) -> tuple[dict[str, Any] | None, tuple[ConfigValidationIssue, ...]]:
    """Validate ``config``; return the normalized payload (or ``None``) and every issue found."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return None, issues.items()

    _reject_unknown_keys(root, set(DEFAULT_CONFIG), "", issues)
    out: dict[str, Any] = {}
    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "store": _validate_store,
        "retry": _validate_retry,
        "checkpoint": _validate_checkpoint,
        "backup": _validate_backup,
        "logging": _validate_logging,
    }
    for key, validator in validators.items():
        raw = root.get(key)
        if raw is None:
            issues.add(key, "missing required section")
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        _reject_unknown_keys(section, set(DEFAULT_CONFIG[key]), key, issues)
        _require_keys(section, set(DEFAULT_CONFIG[key]), key, issues)
        out[key] = validator(section, key, issues)

    if issues.has_issues:
        return None, issues.items()
    return out, ()


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    normalized, issues = validate_config(config)
    if normalized is None:
        raise ConfigValidationError(issues)
    return normalized


def _validate_store(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    _copy(out, payload, "path", _as_path_text, path, issues)
    if "mode" in payload:
        mode = _as_enum(payload["mode"], _join(path, "mode"), issues, allowed_values=DEPLOYMENT_MODES)
        if mode is not None:
            out["mode"] = mode
    if "sync_mode" in payload:
        sync_mode = _as_enum(
            payload["sync_mode"], _join(path, "sync_mode"), issues, allowed_values=SYNC_MODES
        )
        if sync_mode is not None:
            out["sync_mode"] = sync_mode
    _copy_int(out, payload, "busy_timeout_ms", path, issues, minimum=0)
    _copy_int(out, payload, "max_concurrent_operations", path, issues, minimum=1)
    _copy_int(out, payload, "idle_vacuum_delay_ms", path, issues, minimum=0)
    _copy(out, payload, "read_only_handle", _as_bool, path, issues)
    _copy(out, payload, "auto_vacuum", _as_bool, path, issues)
    return out


def _validate_retry(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    _copy_int(out, payload, "max_retries", path, issues, minimum=0)
    _copy_int(out, payload, "base_delay_ms", path, issues, minimum=0)
    return out


def _validate_checkpoint(
    payload: dict[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    _copy_int(out, payload, "write_threshold", path, issues, minimum=1)
    _copy_int(out, payload, "min_interval_ms", path, issues, minimum=0)
    _copy_int(out, payload, "wal_size_threshold_bytes", path, issues, minimum=1)
    return out


def _validate_backup(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    _copy(out, payload, "directory", _as_path_text, path, issues)
    _copy_int(out, payload, "max_backups", path, issues, minimum=1)
    _copy_int(out, payload, "max_age_days", path, issues, minimum=0)
    _copy_int(out, payload, "incremental_threshold", path, issues, minimum=1)
    if "compression_level" in payload:
        level = _as_int(payload["compression_level"], _join(path, "compression_level"), issues, minimum=0)
        if level is not None and level > 9:
            issues.add(_join(path, "compression_level"), "must be <= 9")
        elif level is not None:
            out["compression_level"] = level
    return out


def _validate_logging(payload: dict[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if "level" in payload:
        raw_level = payload["level"]
        candidate = raw_level.upper() if isinstance(raw_level, str) else raw_level
        level = _as_enum(
            candidate,
            _join(path, "level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if level is not None:
            out["level"] = level
    _copy(out, payload, "log_dir", _as_path_text, path, issues)
    _copy(out, payload, "log_to_stdout", _as_bool, path, issues)
    return out


def _copy(
    out: dict[str, Any],
    payload: Mapping[str, object],
    key: str,
    parser: Callable[[object, str, _IssueCollector], object | None],
    path: str,
    issues: _IssueCollector,
) -> None:
    if key not in payload:
        return
    parsed = parser(payload[key], _join(path, key), issues)
    if parsed is not None:
        out[key] = parsed


def _copy_int(
    out: dict[str, Any],
    payload: Mapping[str, object],
    key: str,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int,
) -> None:
    if key not in payload:
        return
    parsed = _as_int(payload[key], _join(path, key), issues, minimum=minimum)
    if parsed is not None:
        out[key] = parsed


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    if isinstance(value, Path):
        value = str(value)
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = copy.deepcopy(dict(existing)) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "BackupSettings",
    "CheckpointSettings",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG",
    "LabStoreConfig",
    "LoggingSettings",
    "PATH_FIELDS",
    "RetrySettings",
    "StoreSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
