"""
AuditArchiver -- retention housekeeping for the audit trail.

Entries older than ``archive_after_days`` are flagged ``archived`` with an
``archive_date``. Nothing is ever deleted: archive flags are outside the
hashed fields, so archived chains still verify end to end. ``retention_days``
is reported for the operators' retention schedule; purging is not done here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from landreg_kernel.domain.audit import ArchiveConfig, ArchiveStatistics
from landreg_kernel.domain.clock import Clock, SystemClock
from landreg_kernel.logging_config import get_logger
from landreg_kernel.stores.base import AuditStore

logger = get_logger("services.audit_archiver")


@dataclass(frozen=True)
class ArchiveResult:
    archived_count: int
    cutoff: datetime
    archived_at: datetime


class AuditArchiver:
    def __init__(self, store: AuditStore, clock: Clock | None = None):
        self._store = store
        self._clock = clock or SystemClock()

    def archive_old_entries(self, config: ArchiveConfig | None = None) -> ArchiveResult:
        config = config or ArchiveConfig()
        now = self._clock.now()
        cutoff = now - timedelta(days=config.archive_after_days)
        count = self._store.archive_before(cutoff, now)
        logger.info(
            "audit_entries_archived",
            extra={
                "archived_count": count,
                "cutoff": cutoff.isoformat(),
                "retention_days": config.retention_days,
            },
        )
        return ArchiveResult(archived_count=count, cutoff=cutoff, archived_at=now)

    def statistics(self) -> ArchiveStatistics:
        return self._store.statistics()
