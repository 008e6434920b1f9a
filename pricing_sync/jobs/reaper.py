"""Stuck-job reaper (operator-invoked, not a daemon).

A run still ``running`` long after any legitimate invocation could have
ended is a crash or host timeout. ``sweep`` force-finishes such runs as
``error`` and fails their queue entries so the game can be enqueued again.
Queue entries left ``running`` with no live run behind them are failed too.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from pricing_sync.config import REAPER_SETTINGS
from pricing_sync.jobs.queue import JobQueue
from pricing_sync.jobs.run_tracker import JobRunTracker
from pricing_sync.models.db import PricingJobQueueEntry, PricingJobRun
from pricing_sync.models.db.enums import JobQueueStatus, JobRunStatus
from pricing_sync.utils import get_logger, log_business_event
from pricing_sync.utils.time import utc_now, minutes_between

logger = get_logger(__name__)


@dataclass(slots=True)
class StuckRun:
    run_id: int
    game: str
    started_at: datetime
    minutes_running: int
    actual_batches: int
    expected_batches: int


class StuckJobReaper:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self._clock = clock
        self.tracker = JobRunTracker(db, clock=clock)
        self.queue = JobQueue(db, clock=clock)

    def _threshold(self, max_runtime_minutes: int | None) -> int:
        minutes = int(max_runtime_minutes if max_runtime_minutes is not None else REAPER_SETTINGS["stuck_job_max_minutes"])
        if minutes < 1:
            raise ValueError("max_runtime_minutes must be >= 1")
        return minutes

    def _stuck_runs(self, cutoff: datetime) -> list[PricingJobRun]:
        return (
            self.db.query(PricingJobRun)
            .filter(
                PricingJobRun.status == JobRunStatus.RUNNING.value,
                PricingJobRun.started_at < cutoff,
            )
            .order_by(PricingJobRun.started_at.asc())
            .all()
        )

    def list_stuck(self, max_runtime_minutes: int | None = None) -> list[StuckRun]:
        minutes = self._threshold(max_runtime_minutes)
        now = self._clock()
        return [
            StuckRun(
                run_id=r.id,
                game=r.game,
                started_at=r.started_at,
                minutes_running=minutes_between(r.started_at, now),
                actual_batches=r.actual_batches,
                expected_batches=r.expected_batches,
            )
            for r in self._stuck_runs(now - timedelta(minutes=minutes))
        ]

    def sweep(self, max_runtime_minutes: int | None = None) -> dict[str, int]:
        minutes = self._threshold(max_runtime_minutes)
        now = self._clock()
        cutoff = now - timedelta(minutes=minutes)
        message = f"Stuck job force-terminated after exceeding {minutes} minutes"

        runs_terminated = 0
        queue_entries_failed = 0
        for run in self._stuck_runs(cutoff):
            run_id, game, queue_job_id = run.id, run.game, run.queue_job_id
            if self.tracker.finish_run(run_id, JobRunStatus.ERROR, message):
                runs_terminated += 1
                logger.warning("Force-terminated stuck pricing run", run_id=run_id, game=game)
            if queue_job_id is not None and self.queue.complete(queue_job_id, JobQueueStatus.FAILED, message):
                queue_entries_failed += 1

        # Running queue entries whose run is gone (crash before the run started, or unlinked).
        live_entries = select(PricingJobRun.queue_job_id).where(
            PricingJobRun.status == JobRunStatus.RUNNING.value,
            PricingJobRun.queue_job_id.is_not(None),
        )
        orphans = (
            self.db.query(PricingJobQueueEntry)
            .filter(
                PricingJobQueueEntry.status == JobQueueStatus.RUNNING.value,
                PricingJobQueueEntry.started_at < cutoff,
                PricingJobQueueEntry.id.not_in(live_entries),
            )
            .update(
                {
                    PricingJobQueueEntry.status: JobQueueStatus.FAILED.value,
                    PricingJobQueueEntry.completed_at: now,
                    PricingJobQueueEntry.error_message: message,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        queue_entries_failed += orphans

        summary = {"runs_terminated": runs_terminated, "queue_entries_failed": queue_entries_failed}
        log_business_event("pricing_stuck_sweep", {**summary, "threshold_minutes": minutes})
        return summary


__all__ = ["StuckJobReaper", "StuckRun"]
