"""Lifecycle bookkeeping for pricing job runs.

A run is created ``running``, checkpointed after every batch and finalized
exactly once: every write is conditional on ``status = 'running'`` so late or
duplicate calls (a reaper racing a processor, an operator force-finish) are
harmless no-ops.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from pricing_sync.models.db import PricingJobControl, PricingJobRun
from pricing_sync.models.db.enums import JobRunStatus
from pricing_sync.utils import get_logger, log_business_event, log_performance
from pricing_sync.utils.time import utc_now, ensure_aware

logger = get_logger(__name__)

ERROR_MAX_LENGTH = 500


class InvalidProgress(ValueError):
    """Progress update would violate monotonicity or the run's bounds."""


class JobRunTracker:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self._clock = clock

    def _running(self, run_id: int):
        return self.db.query(PricingJobRun).filter(
            PricingJobRun.id == run_id,
            PricingJobRun.status == JobRunStatus.RUNNING.value,
        )

    def get(self, run_id: int) -> PricingJobRun | None:
        return self.db.get(PricingJobRun, run_id)

    def start_run(self, game: str, expected_batches: int, *, queue_job_id: int | None = None) -> int:
        if expected_batches < 0:
            raise ValueError("expected_batches must be >= 0")
        run = PricingJobRun(
            game=game,
            queue_job_id=queue_job_id,
            status=JobRunStatus.RUNNING.value,
            expected_batches=expected_batches,
            actual_batches=0,
            items_processed=0,
            items_updated=0,
            started_at=self._clock(),
        )
        self.db.add(run)
        self.db.commit()
        logger.info(
            "Pricing job run started",
            run_id=run.id,
            game=game,
            expected_batches=expected_batches,
            queue_job_id=queue_job_id,
        )
        return run.id

    def set_expected_batches(self, run_id: int, expected_batches: int) -> None:
        run = self.get(run_id)
        if run is None:
            raise LookupError(f"Job run {run_id} not found")
        if expected_batches < run.actual_batches:
            raise InvalidProgress("expected_batches cannot drop below actual_batches")
        self._running(run_id).update(
            {PricingJobRun.expected_batches: expected_batches}, synchronize_session=False
        )
        self.db.commit()

    def record_progress(self, run_id: int, actual_batches: int, items_processed: int, items_updated: int) -> bool:
        """Checkpoint progress. Returns False when the run is no longer running."""
        run = self.get(run_id)
        if run is None:
            raise LookupError(f"Job run {run_id} not found")
        if items_updated > items_processed:
            raise InvalidProgress("items_updated cannot exceed items_processed")
        if actual_batches > run.expected_batches:
            raise InvalidProgress(
                f"actual_batches {actual_batches} exceeds expected_batches {run.expected_batches}"
            )
        if (
            actual_batches < run.actual_batches
            or items_processed < run.items_processed
            or items_updated < run.items_updated
        ):
            raise InvalidProgress("progress counters must be non-decreasing")

        updated = self._running(run_id).update(
            {
                PricingJobRun.actual_batches: actual_batches,
                PricingJobRun.items_processed: items_processed,
                PricingJobRun.items_updated: items_updated,
            },
            synchronize_session=False,
        )
        self.db.commit()
        return updated == 1

    def finish_run(self, run_id: int, status: JobRunStatus | str, error: str | None = None) -> bool:
        """Finalize a run exactly once. Subsequent calls return False and change nothing."""
        status = JobRunStatus(status)
        if status == JobRunStatus.RUNNING:
            raise ValueError("finish_run requires a terminal status")
        if error is not None:
            error = error[:ERROR_MAX_LENGTH]
        finished_at = self._clock()
        updated = self._running(run_id).update(
            {
                PricingJobRun.status: status.value,
                PricingJobRun.finished_at: finished_at,
                PricingJobRun.error: error,
            },
            synchronize_session=False,
        )
        self.db.commit()
        if not updated:
            logger.debug("finish_run ignored, run not running", run_id=run_id, status=status.value)
            return False

        run = self.get(run_id)
        if run is not None:
            duration_ms = (finished_at - ensure_aware(run.started_at)).total_seconds() * 1000
            log_business_event(
                "pricing_run_finished",
                {
                    "run_id": run_id,
                    "status": status.value,
                    "actual_batches": run.actual_batches,
                    "expected_batches": run.expected_batches,
                    "items_processed": run.items_processed,
                    "items_updated": run.items_updated,
                    "error": error,
                },
                game=run.game,
            )
            log_performance("pricing_run", round(duration_ms, 2), {"run_id": run_id, "status": status.value})
        return True

    def force_finish(self, run_id: int, status: JobRunStatus | str, error: str | None = None) -> bool:
        """Operator override; same exactly-once rule as finish_run."""
        try:
            status = JobRunStatus(status)
        except ValueError:
            raise ValueError(f"Invalid terminal status '{status}'") from None
        if status.value not in JobRunStatus.terminal():
            raise ValueError(f"Invalid terminal status '{status.value}'")
        if self.get(run_id) is None:
            raise LookupError(f"Job run {run_id} not found")
        finished = self.finish_run(run_id, status, error)
        if finished:
            logger.warning("Pricing job run force finished", run_id=run_id, status=status.value)
        return finished

    # ----------------------------- cancellation ----------------------------- #
    def is_cancelled(self, run_id: int) -> bool:
        return (
            self.db.query(PricingJobControl.job_run_id)
            .filter(PricingJobControl.job_run_id == run_id)
            .first()
            is not None
        )

    def request_cancel(self, run_id: int, reason: str | None = None) -> PricingJobControl:
        """Idempotent: re-requesting refreshes requested_at and keeps the first reason."""
        run = self.get(run_id)
        if run is None:
            raise LookupError(f"Job run {run_id} not found")
        now = self._clock()
        control = self.db.get(PricingJobControl, run_id)
        if control is None:
            control = PricingJobControl(job_run_id=run_id, reason=reason, requested_at=now)
            self.db.add(control)
        else:
            control.requested_at = now
            if control.reason is None:
                control.reason = reason
        self.db.commit()
        log_business_event(
            "pricing_run_cancel_requested",
            {"run_id": run_id, "reason": reason, "run_status": run.status},
            game=run.game,
        )
        return control

    def list_runs(self, *, game: str | None = None, status: str | None = None, limit: int = 50) -> list[PricingJobRun]:
        query = self.db.query(PricingJobRun)
        if game:
            query = query.filter(PricingJobRun.game == game)
        if status:
            query = query.filter(PricingJobRun.status == status)
        return query.order_by(PricingJobRun.started_at.desc(), PricingJobRun.id.desc()).limit(limit).all()


__all__ = ["JobRunTracker", "InvalidProgress", "ERROR_MAX_LENGTH"]
