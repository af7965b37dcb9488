"""Deterministic clocks and artifact builders for backup tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from labstore.backup.models import BackupArtifact, BackupKind, format_timestamp

EPOCH = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Returns ``start``, then advances by ``step`` on every call."""

    def __init__(self, start: datetime = EPOCH, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current


def fixed_clock(moment: datetime = EPOCH) -> Callable[[], datetime]:
    return lambda: moment


def artifact_at(moment: datetime, *, kind: BackupKind = BackupKind.FULL) -> BackupArtifact:
    return BackupArtifact(
        timestamp=format_timestamp(moment),
        kind=kind,
        size=100,
        compressed_size=40,
        checksum=f"sum-{moment.timestamp()}",
    )
