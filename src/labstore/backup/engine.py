"""
labstore — incremental backup engine.

File: src/labstore/backup/engine.py

Purpose
- Full backups of application snapshots, skipped when the canonical payload hash
  equals the last recorded one.
- An in-memory change log flushed into incremental backups, automatically once it
  reaches ``incremental_threshold`` entries.
- Retention by age, then by count, always keeping the newest artifact.

Functional requirements
- The change log is emptied exactly when a backup completes; a failed write puts
  the detached batch back at the head of the log.
- Threshold-triggered backups never raise into the caller of ``log_change``.
- Incremental artifacts cannot be restored directly.
"""

from __future__ import annotations

import asyncio
import gzip
import json
import logging
import zlib
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from labstore.backup.models import (
    BackupArtifact,
    BackupConfig,
    BackupKind,
    ChangeOperation,
    ChangeRecord,
    format_bytes,
    format_timestamp,
    parse_sidecar,
    payload_filename,
    payload_path_for,
    render_sidecar,
    sidecar_path,
)
from labstore.constants import BACKUP_INDEX_FILENAME, BACKUP_SIDECAR_SUFFIX
from labstore.errors import BackupIOError, IncrementalRestoreUnsupportedError, RestoreError
from labstore.utils.concurrency import BackgroundTaskSet, has_running_loop
from labstore.utils.fs import atomic_write, remove_file
from labstore.utils.hashing import canonical_json, sha256_text

_logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True, slots=True)
class BackupStats:
    total_backups: int
    full_backups: int
    incremental_backups: int
    total_size: str
    total_size_bytes: int
    oldest_backup: str | None
    newest_backup: str | None
    pending_changes: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def select_for_removal(
    artifacts: Sequence[BackupArtifact],
    *,
    now: datetime,
    max_age_days: int,
    max_backups: int,
) -> list[BackupArtifact]:
    """Artifacts to delete: older than ``max_age_days`` first, then beyond ``max_backups``.

    The newest artifact is never selected.
    """

    if not artifacts:
        return []
    ordered = sorted(artifacts, key=lambda artifact: artifact.created_at, reverse=True)
    newest, older = ordered[0], ordered[1:]
    max_age = timedelta(days=max_age_days)

    expired = [artifact for artifact in older if now - artifact.created_at > max_age]
    expired_ids = {id(artifact) for artifact in expired}
    survivors = [newest, *(artifact for artifact in older if id(artifact) not in expired_ids)]
    overflow = survivors[max(1, max_backups) :]
    return [*expired, *overflow]


class IncrementalBackupEngine:
    """Hash, compress, and retain snapshot backups plus the change log."""

    def __init__(
        self,
        backup_dir: str | Path,
        config: BackupConfig | None = None,
        *,
        clock: Clock = _utc_now,
    ) -> None:
        self._dir = Path(backup_dir).expanduser()
        self._config = config or BackupConfig()
        self._clock = clock
        self._change_log: list[ChangeRecord] = []
        self._last_backup_hash = ""
        self._tasks = BackgroundTaskSet("labstore.backup")
        self._dir.mkdir(parents=True, exist_ok=True)
        self._load_index()

    @property
    def backup_dir(self) -> Path:
        return self._dir

    @property
    def config(self) -> BackupConfig:
        return self._config

    @property
    def last_backup_hash(self) -> str:
        return self._last_backup_hash

    @property
    def pending_changes(self) -> tuple[ChangeRecord, ...]:
        return tuple(self._change_log)

    @property
    def index_path(self) -> Path:
        return self._dir / BACKUP_INDEX_FILENAME

    def log_change(
        self,
        table: str,
        operation: ChangeOperation | str,
        record_id: str | int | float | None,
        old_data: Any = None,
        new_data: Any = None,
    ) -> ChangeRecord:
        change = ChangeRecord(
            table=table,
            operation=ChangeOperation(operation),
            record_id=record_id,
            old_data=old_data,
            new_data=new_data,
            timestamp=format_timestamp(self._clock()),
        )
        self._change_log.append(change)

        if len(self._change_log) >= self._config.incremental_threshold:
            batch = self._detach()
            if has_running_loop():
                self._tasks.spawn(self._auto_incremental(batch), label="auto-incremental")
            else:
                try:
                    self._write_incremental(batch)
                except BackupIOError as exc:
                    self._requeue(batch, exc)
        return change

    async def wait_for_pending(self) -> None:
        """Wait for threshold-triggered backups that are still being written."""

        await self._tasks.drain()

    async def create_full_backup(self, payload: object) -> Path | None:
        text = canonical_json(payload)
        checksum = sha256_text(text)
        if checksum == self._last_backup_hash:
            _logger.debug("full backup skipped; payload unchanged", extra={"checksum": checksum})
            return None

        batch = self._detach()
        try:
            artifact = await asyncio.to_thread(self._write_artifact, BackupKind.FULL, text, checksum)
        except BackupIOError as exc:
            self._requeue(batch, exc)
            raise

        self._last_backup_hash = checksum
        await asyncio.to_thread(self._save_index, artifact)
        await self.cleanup_old_backups()
        _logger.info(
            "full backup written",
            extra={"backup_kind": "full", "file": str(artifact.path), "bytes": artifact.compressed_size},
        )
        return artifact.path

    async def create_incremental_backup(self) -> Path | None:
        if not self._change_log:
            return None
        batch = self._detach()
        try:
            artifact = await asyncio.to_thread(self._write_incremental, batch)
        except BackupIOError as exc:
            self._requeue(batch, exc)
            raise
        return artifact.path

    def list_backups(self) -> list[BackupArtifact]:
        artifacts: list[BackupArtifact] = []
        try:
            sidecars = sorted(self._dir.glob(f"*{BACKUP_SIDECAR_SUFFIX}"))
        except OSError as exc:
            raise BackupIOError(f"unable to scan backup directory {self._dir}: {exc}") from exc

        for sidecar in sidecars:
            try:
                text = sidecar.read_text(encoding="utf-8")
                artifacts.append(parse_sidecar(text, path=payload_path_for(sidecar)))
            except (OSError, ValueError) as exc:
                _logger.warning(
                    "skipping unreadable backup metadata",
                    extra={"file": str(sidecar), "error": str(exc)},
                )
        artifacts.sort(key=lambda artifact: artifact.created_at, reverse=True)
        return artifacts

    async def cleanup_old_backups(self) -> list[BackupArtifact]:
        doomed = select_for_removal(
            self.list_backups(),
            now=self._clock(),
            max_age_days=self._config.max_age_days,
            max_backups=self._config.max_backups,
        )
        if not doomed:
            return []
        released = await asyncio.to_thread(self._remove_artifacts, doomed)
        _logger.info(
            "removed old backups",
            extra={"removed": len(doomed), "bytes": released},
        )
        return doomed

    async def restore_backup(self, path: str | Path) -> Any:
        source = Path(path)
        sidecar = sidecar_path(source)
        if sidecar.exists():
            try:
                artifact = parse_sidecar(sidecar.read_text(encoding="utf-8"), path=source)
            except (OSError, ValueError):
                artifact = None
            if artifact is not None and artifact.kind is BackupKind.INCREMENTAL:
                raise IncrementalRestoreUnsupportedError(
                    f"{source} is an incremental backup; chained replay is not supported"
                )

        try:
            raw = await asyncio.to_thread(source.read_bytes)
        except OSError as exc:
            raise RestoreError(f"backup not readable: {source}: {exc}") from exc
        try:
            payload = json.loads(gzip.decompress(raw).decode("utf-8"))
        except (OSError, EOFError, ValueError, zlib.error) as exc:
            raise RestoreError(f"backup payload is corrupt: {source}: {exc}") from exc

        if isinstance(payload, dict) and "changes" in payload and "baseBackupHash" in payload:
            raise IncrementalRestoreUnsupportedError(
                f"{source} is an incremental backup; chained replay is not supported"
            )
        return payload

    def backup_stats(self) -> BackupStats:
        artifacts = self.list_backups()
        total = sum(artifact.compressed_size for artifact in artifacts)
        return BackupStats(
            total_backups=len(artifacts),
            full_backups=sum(1 for artifact in artifacts if artifact.kind is BackupKind.FULL),
            incremental_backups=sum(
                1 for artifact in artifacts if artifact.kind is BackupKind.INCREMENTAL
            ),
            total_size=format_bytes(total),
            total_size_bytes=total,
            oldest_backup=artifacts[-1].timestamp if artifacts else None,
            newest_backup=artifacts[0].timestamp if artifacts else None,
            pending_changes=len(self._change_log),
        )

    async def close(self) -> None:
        await self._tasks.drain()

    async def _auto_incremental(self, batch: list[ChangeRecord]) -> None:
        try:
            await asyncio.to_thread(self._write_incremental, batch)
        except BackupIOError as exc:
            self._requeue(batch, exc)

    def _detach(self) -> list[ChangeRecord]:
        batch, self._change_log = self._change_log, []
        return batch

    def _requeue(self, batch: list[ChangeRecord], exc: BaseException) -> None:
        self._change_log[:0] = batch
        _logger.error(
            "backup failed; change log retained",
            extra={"pending": len(self._change_log), "error": str(exc)},
        )

    def _write_incremental(self, batch: list[ChangeRecord]) -> BackupArtifact:
        timestamp = format_timestamp(self._clock())
        try:
            body = {
                "changes": [change.to_dict() for change in batch],
                "baseBackupHash": self._last_backup_hash,
                "timestamp": timestamp,
            }
            text = canonical_json(body)
        except (TypeError, ValueError) as exc:
            raise BackupIOError(f"unable to serialize {len(batch)} pending changes: {exc}") from exc
        artifact = self._write_artifact(
            BackupKind.INCREMENTAL,
            text,
            sha256_text(text),
            timestamp=timestamp,
            changes=tuple(batch),
        )
        self._save_index(artifact)
        _logger.info(
            "incremental backup written",
            extra={"backup_kind": "incremental", "file": str(artifact.path), "changes": len(batch)},
        )
        return artifact

    def _write_artifact(
        self,
        kind: BackupKind,
        text: str,
        checksum: str,
        *,
        timestamp: str | None = None,
        changes: tuple[ChangeRecord, ...] | None = None,
    ) -> BackupArtifact:
        stamp = timestamp or format_timestamp(self._clock())
        target = self._unique_payload_path(kind, stamp)
        data = text.encode("utf-8")
        try:
            compressed = gzip.compress(data, compresslevel=self._config.compression_level, mtime=0)
            atomic_write(target, compressed)
            artifact = BackupArtifact(
                timestamp=stamp,
                kind=kind,
                size=len(data),
                compressed_size=len(compressed),
                checksum=checksum,
                changes=changes,
                base_backup_hash=self._last_backup_hash if kind is BackupKind.INCREMENTAL else None,
                path=target,
            )
            atomic_write(sidecar_path(target), render_sidecar(artifact))
        except OSError as exc:
            with suppress(OSError):
                remove_file(target)
            raise BackupIOError(f"unable to write {kind.value} backup {target}: {exc}") from exc
        return artifact

    def _unique_payload_path(self, kind: BackupKind, timestamp: str) -> Path:
        candidate = self._dir / payload_filename(kind, timestamp)
        counter = 1
        while candidate.exists():
            stem = payload_filename(kind, timestamp).removesuffix(".json.gz")
            candidate = self._dir / f"{stem}-{counter}.json.gz"
            counter += 1
        return candidate

    def _remove_artifacts(self, artifacts: Sequence[BackupArtifact]) -> int:
        released = 0
        for artifact in artifacts:
            if artifact.path is None:
                continue
            for target in (artifact.path, sidecar_path(artifact.path)):
                try:
                    released += remove_file(target)
                except OSError as exc:
                    _logger.warning(
                        "failed to remove backup file",
                        extra={"file": str(target), "error": str(exc)},
                    )
        return released

    def _load_index(self) -> None:
        index = self.index_path
        if not index.exists():
            return
        try:
            payload = json.loads(index.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            _logger.warning("backup index unreadable", extra={"file": str(index), "error": str(exc)})
            return
        if isinstance(payload, dict) and isinstance(payload.get("lastBackupHash"), str):
            self._last_backup_hash = payload["lastBackupHash"]

    def _save_index(self, artifact: BackupArtifact) -> None:
        body = {
            "lastBackupHash": self._last_backup_hash,
            "lastBackup": artifact.to_dict(),
            "timestamp": format_timestamp(self._clock()),
        }
        try:
            atomic_write(self.index_path, json.dumps(body, indent=2, ensure_ascii=False) + "\n")
        except OSError as exc:
            _logger.error(
                "failed to update backup index",
                extra={"file": str(self.index_path), "error": str(exc)},
            )


__all__ = [
    "BackupStats",
    "IncrementalBackupEngine",
    "select_for_removal",
]
