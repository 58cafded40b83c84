"""Entry point for the host's periodic background task scheduler"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from config import settings
from database import utcnow
from sync_service import SyncEngine, SyncResult

logger = logging.getLogger(__name__)


class BackgroundFetchResult(str, Enum):
    NEW_DATA = "new_data"
    NO_DATA = "no_data"
    FAILED = "failed"


@dataclass
class PendingSyncResult:
    reports_synced: int = 0
    photos_synced: int = 0
    videos_synced: int = 0
    voice_notes_synced: int = 0
    records_synced: int = 0
    deleted: int = 0
    deferred: int = 0
    conflicts: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None

    @property
    def total_synced(self) -> int:
        return (self.reports_synced + self.photos_synced + self.videos_synced
                + self.voice_notes_synced + self.records_synced + self.deleted)

    @classmethod
    def from_sync_result(cls, result: SyncResult) -> "PendingSyncResult":
        uploaded = result.uploaded
        return cls(
            reports_synced=uploaded["reports"],
            photos_synced=uploaded["photos"],
            videos_synced=uploaded["videos"],
            voice_notes_synced=uploaded["voice_notes"],
            records_synced=uploaded["defects"] + uploaded["roof_elements"] + uploaded["compliance"],
            deleted=result.deleted,
            deferred=result.deferred,
            conflicts=len(result.conflicts),
            errors=[e.message for e in result.errors],
            skipped=result.skipped,
            skip_reason=result.skip_reason,
        )


async def run_pending_sync(engine: SyncEngine) -> PendingSyncResult:
    """Push whatever is queued. Safe to call repeatedly and alongside a foreground sync."""
    if engine.store.pending_sync_count() == 0:
        logger.info("Background sync: nothing pending")
        return PendingSyncResult()

    result = await engine.sync(download=False)
    return PendingSyncResult.from_sync_result(result)


@dataclass
class SyncLogEntry:
    timestamp: datetime
    outcome: BackgroundFetchResult
    reports_synced: int
    photos_synced: int
    errors: List[str]
    message: str


class SyncLog:
    """Most recent background runs, newest first, capped in memory."""

    def __init__(self, limit: Optional[int] = None):
        self._entries = deque(maxlen=limit or settings.SYNC_LOG_LIMIT)

    def add(self, entry: SyncLogEntry) -> None:
        self._entries.appendleft(entry)

    def entries(self) -> List[SyncLogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class BackgroundSyncStatus:
    interval_seconds: int
    last_run_at: Optional[datetime]
    last_outcome: Optional[BackgroundFetchResult]
    pending: int
    recent_runs: List[SyncLogEntry]

    def to_dict(self) -> dict:
        return {
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "pending": self.pending,
            "recent_runs": [
                {"timestamp": e.timestamp.isoformat(), "outcome": e.outcome.value, "message": e.message}
                for e in self.recent_runs
            ],
        }


class BackgroundSync:
    def __init__(self, engine: SyncEngine, log: Optional[SyncLog] = None, interval: Optional[int] = None):
        self.engine = engine
        self.log = log or SyncLog()
        self.interval = max(interval or settings.BACKGROUND_SYNC_INTERVAL, settings.BACKGROUND_SYNC_INTERVAL)
        self.last_run_at: Optional[datetime] = None
        self.last_outcome: Optional[BackgroundFetchResult] = None

    async def run(self) -> BackgroundFetchResult:
        """Callback the host scheduler invokes; always answers with a tri-state outcome."""
        self.last_run_at = utcnow()
        try:
            result = await run_pending_sync(self.engine)
        except Exception as e:
            logger.error(f"Background sync failed: {e}", exc_info=True)
            return self._finish(BackgroundFetchResult.FAILED, PendingSyncResult(errors=[str(e)]), str(e))

        if result.skipped:
            outcome = BackgroundFetchResult.NO_DATA
            message = f"Skipped: {result.skip_reason}"
        elif result.total_synced > 0:
            outcome = BackgroundFetchResult.NEW_DATA
            message = f"Synced {result.total_synced} items"
        elif result.errors:
            outcome = BackgroundFetchResult.FAILED
            message = f"{len(result.errors)} errors"
        else:
            outcome = BackgroundFetchResult.NO_DATA
            message = "Nothing to sync"
        return self._finish(outcome, result, message)

    def _finish(self, outcome: BackgroundFetchResult, result: PendingSyncResult, message: str) -> BackgroundFetchResult:
        self.last_outcome = outcome
        self.log.add(
            SyncLogEntry(
                timestamp=self.last_run_at or utcnow(),
                outcome=outcome,
                reports_synced=result.reports_synced,
                photos_synced=result.photos_synced,
                errors=result.errors,
                message=message,
            )
        )
        logger.info(f"Background sync outcome: {outcome.value} ({message})")
        return outcome

    def status(self) -> BackgroundSyncStatus:
        return BackgroundSyncStatus(
            interval_seconds=self.interval,
            last_run_at=self.last_run_at,
            last_outcome=self.last_outcome,
            pending=self.engine.store.pending_sync_count(),
            recent_runs=self.log.entries(),
        )


async def background_sync_task(engine: SyncEngine, background: Optional[BackgroundSync] = None) -> BackgroundFetchResult:
    """What the host scheduler registers; builds a one-off runner when none is kept."""
    return await (background or BackgroundSync(engine)).run()
