"""Durable per-game pricing job queue.

Features:
- Priority ordering (higher numeric priority runs first, ties by earliest scheduled_at).
- Delayed entries (``scheduled_at`` in the future are not dequeued yet).
- At most one active (queued or running) entry per game, enforced by a partial
  unique index rather than an in-process lock.

Dequeue is a claim loop: candidates are read in priority order and each one is
claimed with a conditional ``UPDATE ... WHERE status = 'queued'``. Whoever
gets rowcount 1 owns the entry; a caller that loses the race moves on to the
next candidate. Entries are never deleted, only status-transitioned.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pricing_sync.config import QUEUE_SETTINGS, RETRY_POLICY, SUPPORTED_GAMES
from pricing_sync.models.db import PricingJobQueueEntry
from pricing_sync.models.db.enums import JobQueueStatus
from pricing_sync.utils import get_logger, log_business_event
from pricing_sync.utils.time import utc_now

logger = get_logger(__name__)


class AlreadyQueuedOrRunning(Exception):
    """An active queue entry already exists for the game."""

    def __init__(self, game: str, existing_id: int | None):
        super().__init__(f"Pricing job for '{game}' is already queued or running (entry {existing_id})")
        self.game = game
        self.existing_id = existing_id


def validate_game(game: str) -> str:
    slug = (game or "").strip().lower()
    if slug not in SUPPORTED_GAMES:
        raise ValueError(f"Unsupported game '{game}'")
    return slug


class JobQueue:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self._clock = clock

    def _active_entry(self, game: str) -> PricingJobQueueEntry | None:
        return (
            self.db.query(PricingJobQueueEntry)
            .filter(
                PricingJobQueueEntry.game == game,
                PricingJobQueueEntry.status.in_(JobQueueStatus.active()),
            )
            .first()
        )

    # ----------------------------- public API ----------------------------- #
    def enqueue(
        self,
        game: str,
        priority: int | None = None,
        *,
        scheduled_at: datetime | None = None,
        retry_count: int = 0,
        max_retries: int | None = None,
    ) -> int:
        game = validate_game(game)
        now = self._clock()
        entry = PricingJobQueueEntry(
            game=game,
            status=JobQueueStatus.QUEUED.value,
            priority=int(priority if priority is not None else QUEUE_SETTINGS["default_priority"]),
            retry_count=retry_count,
            max_retries=int(max_retries if max_retries is not None else RETRY_POLICY["job"]["max_retries"]),
            scheduled_at=scheduled_at or now,
            created_at=now,
        )
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._active_entry(game)
            logger.info(
                "Enqueue ignored, game already has an active pricing job",
                game=game,
                existing_id=existing.id if existing else None,
            )
            raise AlreadyQueuedOrRunning(game, existing.id if existing else None)

        log_business_event(
            "pricing_job_enqueued",
            {"job_id": entry.id, "priority": entry.priority, "retry_count": retry_count},
            game=game,
        )
        return entry.id

    def claim(self, job_id: int) -> bool:
        """Atomically move a queued entry to running. True if this caller won it."""
        now = self._clock()
        claimed = (
            self.db.query(PricingJobQueueEntry)
            .filter(
                PricingJobQueueEntry.id == job_id,
                PricingJobQueueEntry.status == JobQueueStatus.QUEUED.value,
            )
            .update(
                {
                    PricingJobQueueEntry.status: JobQueueStatus.RUNNING.value,
                    PricingJobQueueEntry.started_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return claimed == 1

    def dequeue_next(self, game: str | None = None) -> PricingJobQueueEntry | None:
        now = self._clock()
        query = self.db.query(PricingJobQueueEntry.id).filter(
            PricingJobQueueEntry.status == JobQueueStatus.QUEUED.value,
            PricingJobQueueEntry.scheduled_at <= now,
        )
        if game is not None:
            query = query.filter(PricingJobQueueEntry.game == validate_game(game))
        candidates = [
            row.id
            for row in query.order_by(
                PricingJobQueueEntry.priority.desc(),
                PricingJobQueueEntry.scheduled_at.asc(),
                PricingJobQueueEntry.id.asc(),
            ).all()
        ]
        for job_id in candidates:
            if self.claim(job_id):
                entry = self.db.get(PricingJobQueueEntry, job_id)
                logger.info("Dequeued pricing job", job_id=job_id, game=entry.game if entry else None)
                return entry
            logger.debug("Lost claim race for queue entry", job_id=job_id)
        return None

    def complete(self, job_id: int, status: JobQueueStatus | str, error: str | None = None) -> bool:
        """Finish a running entry. No-op (returns False) if it is not running."""
        status = JobQueueStatus(status)
        if status not in (JobQueueStatus.COMPLETED, JobQueueStatus.FAILED):
            raise ValueError(f"Queue entries can only complete as completed/failed, got '{status.value}'")
        updated = (
            self.db.query(PricingJobQueueEntry)
            .filter(
                PricingJobQueueEntry.id == job_id,
                PricingJobQueueEntry.status == JobQueueStatus.RUNNING.value,
            )
            .update(
                {
                    PricingJobQueueEntry.status: status.value,
                    PricingJobQueueEntry.completed_at: self._clock(),
                    PricingJobQueueEntry.error_message: error,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def list_active(self) -> list[PricingJobQueueEntry]:
        return (
            self.db.query(PricingJobQueueEntry)
            .filter(PricingJobQueueEntry.status.in_(JobQueueStatus.active()))
            .order_by(PricingJobQueueEntry.priority.desc(), PricingJobQueueEntry.scheduled_at.asc())
            .all()
        )

    def fail_active(self, error: str, *, game: str | None = None) -> int:
        """Fail every queued/running entry (optionally for one game). Used by maintenance."""
        query = self.db.query(PricingJobQueueEntry).filter(
            PricingJobQueueEntry.status.in_(JobQueueStatus.active())
        )
        if game is not None:
            query = query.filter(PricingJobQueueEntry.game == game)
        count = query.update(
            {
                PricingJobQueueEntry.status: JobQueueStatus.FAILED.value,
                PricingJobQueueEntry.completed_at: self._clock(),
                PricingJobQueueEntry.error_message: error,
            },
            synchronize_session=False,
        )
        self.db.commit()
        return count


__all__ = ["JobQueue", "AlreadyQueuedOrRunning", "validate_game"]
