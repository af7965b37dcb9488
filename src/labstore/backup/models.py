"""
labstore — backup data model and on-disk formats.

File: src/labstore/backup/models.py

Purpose
- ``ChangeRecord``: one mutation mirrored from the store into the change log.
- ``BackupArtifact``: metadata of one full or incremental backup.
- ``BackupConfig``: retention, compression, and auto-backup threshold.
- File naming and the YAML sidecar format.

Formats
- Payload: ``<kind>-backup-<timestamp with ':' and '.' replaced by '-'>.json.gz``.
- Sidecar: payload name + ``.meta``; a YAML mapping of the artifact fields.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, cast

import yaml

from labstore.constants import (
    BACKUP_PAYLOAD_SUFFIX,
    BACKUP_SIDECAR_SUFFIX,
    DEFAULT_COMPRESSION_LEVEL,
    DEFAULT_INCREMENTAL_THRESHOLD,
    DEFAULT_MAX_AGE_DAYS,
    DEFAULT_MAX_BACKUPS,
)
from labstore.utils.hashing import canonical_json


class ChangeOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class BackupKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True, slots=True)
class ChangeRecord:
    table: str
    operation: ChangeOperation
    record_id: str | int | float | None
    old_data: Any = None
    new_data: Any = None
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "operation": self.operation.value,
            "record_id": self.record_id,
            "old_data": _plain(self.old_data),
            "new_data": _plain(self.new_data),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ChangeRecord:
        return cls(
            table=str(payload["table"]),
            operation=ChangeOperation(payload["operation"]),
            record_id=payload.get("record_id"),
            old_data=payload.get("old_data"),
            new_data=payload.get("new_data"),
            timestamp=str(payload.get("timestamp", "")),
        )


@dataclass(frozen=True, slots=True)
class BackupConfig:
    max_backups: int = DEFAULT_MAX_BACKUPS
    max_age_days: int = DEFAULT_MAX_AGE_DAYS
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    incremental_threshold: int = DEFAULT_INCREMENTAL_THRESHOLD

    def __post_init__(self) -> None:
        if self.max_backups < 1:
            raise ValueError("max_backups must be >= 1")
        if self.max_age_days < 0:
            raise ValueError("max_age_days must be >= 0")
        if not 0 <= self.compression_level <= 9:
            raise ValueError("compression_level must be between 0 and 9")
        if self.incremental_threshold < 1:
            raise ValueError("incremental_threshold must be >= 1")


@dataclass(frozen=True, slots=True)
class BackupArtifact:
    timestamp: str
    kind: BackupKind
    size: int
    compressed_size: int
    checksum: str
    changes: tuple[ChangeRecord, ...] | None = None
    base_backup_hash: str | None = None
    path: Path | None = field(default=None, compare=False)

    @property
    def created_at(self) -> datetime:
        return parse_timestamp(self.timestamp)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "size": self.size,
            "compressed_size": self.compressed_size,
            "checksum": self.checksum,
        }
        if self.changes is not None:
            payload["changes"] = [change.to_dict() for change in self.changes]
        if self.base_backup_hash is not None:
            payload["base_backup_hash"] = self.base_backup_hash
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, path: Path | None = None) -> BackupArtifact:
        raw_changes = payload.get("changes")
        changes = (
            tuple(ChangeRecord.from_dict(item) for item in raw_changes)
            if isinstance(raw_changes, list)
            else None
        )
        timestamp = str(payload["timestamp"])
        parse_timestamp(timestamp)
        return cls(
            timestamp=timestamp,
            kind=BackupKind(payload["kind"]),
            size=int(payload["size"]),
            compressed_size=int(payload["compressed_size"]),
            checksum=str(payload["checksum"]),
            changes=changes,
            base_backup_hash=cast("str | None", payload.get("base_backup_hash")),
            path=path,
        )


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""

    utc = moment.astimezone(timezone.utc)
    return f"{utc:%Y-%m-%dT%H:%M:%S}.{utc.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def payload_filename(kind: BackupKind, timestamp: str) -> str:
    safe = timestamp.replace(":", "-").replace(".", "-")
    return f"{kind.value}-backup-{safe}{BACKUP_PAYLOAD_SUFFIX}"


def sidecar_path(payload_path: Path) -> Path:
    return payload_path.with_name(payload_path.name + BACKUP_SIDECAR_SUFFIX)


def payload_path_for(sidecar: Path) -> Path:
    return sidecar.with_name(sidecar.name[: -len(BACKUP_SIDECAR_SUFFIX)])


def render_sidecar(artifact: BackupArtifact) -> str:
    rendered = yaml.safe_dump(
        artifact.to_dict(),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=120,
    )
    if not rendered.endswith("\n"):
        rendered += "\n"
    return rendered


def parse_sidecar(text: str, *, path: Path | None = None) -> BackupArtifact:
    try:
        loaded = cast("object", yaml.safe_load(text))
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML ({exc})") from exc
    if not isinstance(loaded, Mapping):
        raise ValueError(f"expected a YAML mapping, got {type(loaded).__name__}")
    try:
        return BackupArtifact.from_dict(loaded, path=path)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"malformed backup metadata ({exc})") from exc


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB")
    exponent = 0
    while exponent < len(units) - 1 and size >= 1024 ** (exponent + 1):
        exponent += 1
    text = f"{size / (1024**exponent):.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[exponent]}"


def _plain(value: Any) -> Any:
    """Reduce ``value`` to JSON/YAML-safe builtins."""

    if value is None:
        return None
    return json.loads(canonical_json(value))


__all__ = [
    "BackupArtifact",
    "BackupConfig",
    "BackupKind",
    "ChangeOperation",
    "ChangeRecord",
    "format_bytes",
    "format_timestamp",
    "parse_sidecar",
    "parse_timestamp",
    "payload_filename",
    "payload_path_for",
    "render_sidecar",
    "sidecar_path",
]
