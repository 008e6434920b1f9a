"""Trigger glue: enqueue, dequeue, process one run, complete the queue entry.

Queue outcome per run status:
  completed          -> entry completed
  cancelled          -> entry completed ("cancelled by operator")
  preflight_ceiling  -> entry completed, continuation enqueued at the same priority
  error (breaker)    -> entry failed, successor at the breaker's next_attempt_at, same retry_count
  error (non-fatal)  -> entry failed, successor enqueued with backoff while retries remain
  error (fatal)      -> entry failed, never re-enqueued
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from pricing_sync.config import QUEUE_SETTINGS, RETRY_POLICY
from pricing_sync.integrations.justtcg import BatchPricingClient
from pricing_sync.jobs.queue import AlreadyQueuedOrRunning, JobQueue
from pricing_sync.models.db.enums import JobQueueStatus, JobRunStatus
from pricing_sync.services.batch_processor import RunResult, TimeGuardedBatchProcessor
from pricing_sync.utils import get_logger
from pricing_sync.utils.backoff import next_attempt_at
from pricing_sync.utils.time import utc_now

logger = get_logger(__name__)

CANCELLED_MESSAGE = "cancelled by operator"


@dataclass(slots=True)
class SchedulerOutcome:
    queue_job_id: int
    run: RunResult
    requeued_job_id: int | None = None


@dataclass(slots=True)
class ScheduleResult:
    queue_job_id: int | None
    already_active: bool
    outcome: SchedulerOutcome | None


class PricingScheduler:
    def __init__(
        self,
        db: Session,
        client: BatchPricingClient | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        processor: TimeGuardedBatchProcessor | None = None,
    ) -> None:
        if processor is None and client is None:
            raise ValueError("PricingScheduler needs a client or a processor")
        self.db = db
        self._clock = clock
        self.queue = JobQueue(db, clock=clock)
        self.processor = processor or TimeGuardedBatchProcessor(db, client, clock=clock)  # type: ignore[arg-type]

    def _requeue(
        self,
        game: str,
        priority: int,
        *,
        retry_count: int,
        max_retries: int,
        scheduled_at: datetime | None = None,
    ) -> int | None:
        try:
            return self.queue.enqueue(
                game,
                priority,
                scheduled_at=scheduled_at,
                retry_count=retry_count,
                max_retries=max_retries,
            )
        except AlreadyQueuedOrRunning as e:
            logger.info("Successor not enqueued, game already active", game=game, existing_id=e.existing_id)
            return None

    async def run_next(self, game: str | None = None) -> SchedulerOutcome | None:
        """Run one invocation: the next due entry (optionally for one game). None if nothing is due."""
        entry = self.queue.dequeue_next(game)
        if entry is None:
            return None
        job_id, job_game = entry.id, entry.game
        priority, retry_count, max_retries = entry.priority, entry.retry_count, entry.max_retries

        try:
            result = await self.processor.run(job_game, queue_job_id=job_id)
        except Exception as e:
            self.queue.complete(job_id, JobQueueStatus.FAILED, f"Unexpected error: {e}"[:500])
            raise

        requeued: int | None = None
        if result.status == JobRunStatus.COMPLETED:
            self.queue.complete(job_id, JobQueueStatus.COMPLETED)
        elif result.status == JobRunStatus.CANCELLED:
            self.queue.complete(job_id, JobQueueStatus.COMPLETED, CANCELLED_MESSAGE)
        elif result.status == JobRunStatus.PREFLIGHT_CEILING:
            self.queue.complete(job_id, JobQueueStatus.COMPLETED, result.error)
            if QUEUE_SETTINGS["requeue_on_ceiling"]:
                requeued = self._requeue(job_game, priority, retry_count=0, max_retries=max_retries)
        else:
            self.queue.complete(job_id, JobQueueStatus.FAILED, result.error)
            if result.breaker_blocked:
                # Breaker cool-down does not spend a job retry.
                requeued = self._requeue(
                    job_game, priority, retry_count=retry_count, max_retries=max_retries,
                    scheduled_at=result.retry_not_before,
                )
                logger.info(
                    "Successor deferred until circuit breaker recovery",
                    game=job_game,
                    run_id=result.run_id,
                    scheduled_at=result.retry_not_before.isoformat(),
                )
            elif not result.fatal and retry_count < max_retries:
                requeued = self._requeue(
                    job_game, priority, retry_count=retry_count + 1, max_retries=max_retries,
                    scheduled_at=next_attempt_at(self._clock(), retry_count + 1, RETRY_POLICY["job"]),
                )
            elif result.fatal:
                logger.error("Fatal pricing run error, not re-enqueued", game=job_game, run_id=result.run_id)

        return SchedulerOutcome(queue_job_id=job_id, run=result, requeued_job_id=requeued)

    async def schedule(self, game: str, priority: int | None = None) -> ScheduleResult:
        """Enqueue (an existing active entry is fine) and run that game's next due entry."""
        prio = int(priority if priority is not None else QUEUE_SETTINGS["scheduled_priority"])
        try:
            job_id: int | None = self.queue.enqueue(game, prio)
            already_active = False
        except AlreadyQueuedOrRunning as e:
            job_id, already_active = e.existing_id, True
        outcome = await self.run_next(game)
        return ScheduleResult(queue_job_id=job_id, already_active=already_active, outcome=outcome)


__all__ = ["PricingScheduler", "SchedulerOutcome", "ScheduleResult", "CANCELLED_MESSAGE"]
