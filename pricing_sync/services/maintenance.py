"""Operator maintenance: periodic cleanup, full reset and breaker/ledger overrides."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from pricing_sync.config import REAPER_SETTINGS
from pricing_sync.jobs.queue import JobQueue, validate_game
from pricing_sync.jobs.reaper import StuckJobReaper
from pricing_sync.models.db import (
    PricingCircuitBreaker,
    PricingJobControl,
    PricingJobRun,
)
from pricing_sync.models.db.enums import CircuitState, JobRunStatus
from pricing_sync.services.retry_ledger import RetryLedger
from pricing_sync.utils import get_logger, log_business_event
from pricing_sync.utils.circuit_breaker import CircuitBreaker
from pricing_sync.utils.time import utc_now

logger = get_logger(__name__)

ADMIN_RESET_MESSAGE = "Cancelled by admin"


class MaintenanceService:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self._clock = clock

    def auto_cleanup(self) -> dict[str, int]:
        now = self._clock()
        sweep = StuckJobReaper(self.db, clock=self._clock).sweep(int(REAPER_SETTINGS["auto_cleanup_max_minutes"]))

        retention_cutoff = now - timedelta(days=int(REAPER_SETTINGS["run_retention_days"]))
        old_runs = select(PricingJobRun.id).where(
            PricingJobRun.status.in_(JobRunStatus.terminal()),
            PricingJobRun.finished_at < retention_cutoff,
        )
        old_run_ids = [row[0] for row in self.db.execute(old_runs).all()]
        runs_deleted = 0
        if old_run_ids:
            self.db.query(PricingJobControl).filter(
                PricingJobControl.job_run_id.in_(old_run_ids)
            ).delete(synchronize_session=False)
            # ORM delete so api_usage rows cascade.
            for run in self.db.query(PricingJobRun).filter(PricingJobRun.id.in_(old_run_ids)).all():
                self.db.delete(run)
                runs_deleted += 1

        breakers_reset = (
            self.db.query(PricingCircuitBreaker)
            .filter(
                PricingCircuitBreaker.state != CircuitState.CLOSED.value,
                PricingCircuitBreaker.next_attempt_at <= now,
            )
            .update(
                {
                    PricingCircuitBreaker.state: CircuitState.CLOSED.value,
                    PricingCircuitBreaker.failure_count: 0,
                    PricingCircuitBreaker.next_attempt_at: None,
                    PricingCircuitBreaker.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

        summary = {
            "runs_terminated": sweep["runs_terminated"],
            "queue_entries_failed": sweep["queue_entries_failed"],
            "runs_deleted": runs_deleted,
            "breakers_reset": breakers_reset,
        }
        log_business_event("pricing_auto_cleanup", summary)
        return summary

    def reset_system(self) -> dict[str, int]:
        """Terminate every running run, fail every active queue entry, close every breaker."""
        now = self._clock()
        runs_terminated = (
            self.db.query(PricingJobRun)
            .filter(PricingJobRun.status == JobRunStatus.RUNNING.value)
            .update(
                {
                    PricingJobRun.status: JobRunStatus.ERROR.value,
                    PricingJobRun.finished_at: now,
                    PricingJobRun.error: ADMIN_RESET_MESSAGE,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        queue_entries_failed = JobQueue(self.db, clock=self._clock).fail_active(ADMIN_RESET_MESSAGE)
        breakers_reset = (
            self.db.query(PricingCircuitBreaker)
            .update(
                {
                    PricingCircuitBreaker.state: CircuitState.CLOSED.value,
                    PricingCircuitBreaker.failure_count: 0,
                    PricingCircuitBreaker.last_failure_at: None,
                    PricingCircuitBreaker.next_attempt_at: None,
                    PricingCircuitBreaker.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        summary = {
            "runs_terminated": runs_terminated,
            "queue_entries_failed": queue_entries_failed,
            "breakers_reset": breakers_reset,
        }
        logger.warning("Pricing sync system reset", **summary)
        log_business_event("pricing_system_reset", summary)
        return summary

    def reset_breaker(self, game: str) -> None:
        game = validate_game(game)
        CircuitBreaker(self.db, clock=self._clock).reset(game)
        log_business_event("pricing_breaker_reset", {}, game=game)

    def revive_dead(self, game: str, item_id: str | None = None) -> int:
        game = validate_game(game)
        return RetryLedger(self.db, clock=self._clock).revive_dead(game, item_id)


__all__ = ["MaintenanceService", "ADMIN_RESET_MESSAGE"]
