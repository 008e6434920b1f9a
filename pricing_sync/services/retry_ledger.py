"""Durable per-variant retry bookkeeping.

Each variant that came back unpriced gets one ledger row per game. The row's
``retry_count`` counts failed attempts; ``next_retry_at`` is scheduled on the
RETRY_POLICY["variant"] backoff curve. Once ``retry_count`` exceeds
``max_retries`` the row stays in place as a dead marker: the variant drops out
of the default work set until an operator revives it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from pricing_sync.config import RETRY_POLICY
from pricing_sync.models.db import PricingVariantRetry
from pricing_sync.utils import get_logger
from pricing_sync.utils.backoff import next_attempt_at
from pricing_sync.utils.time import utc_now

logger = get_logger(__name__)


@dataclass(slots=True)
class LedgerUpdate:
    item_id: str
    retry_count: int
    next_retry_at: datetime | None
    dead: bool


class RetryLedger:
    def __init__(
        self,
        db: Session,
        *,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int | None = None,
    ) -> None:
        self.db = db
        self._clock = clock
        self.policy = RETRY_POLICY["variant"]
        self.max_retries = int(max_retries if max_retries is not None else self.policy["max_retries"])

    def _entry(self, game: str, item_id: str) -> PricingVariantRetry | None:
        return (
            self.db.query(PricingVariantRetry)
            .filter(PricingVariantRetry.game == game, PricingVariantRetry.item_id == item_id)
            .first()
        )

    def register_failure(self, game: str, item_id: str, error: str | None = None, *, commit: bool = True) -> LedgerUpdate:
        now = self._clock()
        entry = self._entry(game, item_id)
        if entry is None:
            entry = PricingVariantRetry(
                game=game,
                item_id=item_id,
                retry_count=1,
                max_retries=self.max_retries,
                last_error=error,
                last_retry_at=now,
                next_retry_at=None if self.max_retries < 1 else next_attempt_at(now, 1, self.policy),
            )
            self.db.add(entry)
        else:
            self._increment(entry, now, error)
        if commit:
            self.db.commit()

        dead = entry.retry_count > entry.max_retries
        if dead:
            logger.warning(
                "Variant exceeded retry budget",
                game=game,
                item_id=item_id,
                retry_count=entry.retry_count,
                max_retries=entry.max_retries,
            )
        return LedgerUpdate(
            item_id=item_id,
            retry_count=entry.retry_count,
            next_retry_at=entry.next_retry_at,
            dead=dead,
        )

    def _increment(self, entry: PricingVariantRetry, now: datetime, error: str | None) -> None:
        entry.retry_count += 1
        entry.last_error = error
        entry.last_retry_at = now
        # Dead markers keep no schedule.
        entry.next_retry_at = None if entry.retry_count > entry.max_retries else next_attempt_at(now, entry.retry_count, self.policy)

    def register_failures(self, game: str, item_ids: Iterable[str], error: str | None = None) -> list[LedgerUpdate]:
        updates = [self.register_failure(game, item_id, error, commit=False) for item_id in item_ids]
        self.db.commit()
        return updates

    def clear(self, game: str, item_ids: Iterable[str], *, commit: bool = True) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        removed = (
            self.db.query(PricingVariantRetry)
            .filter(PricingVariantRetry.game == game, PricingVariantRetry.item_id.in_(ids))
            .delete(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return removed

    def due_for_retry(self, game: str) -> list[str]:
        now = self._clock()
        rows = (
            self.db.query(PricingVariantRetry.item_id)
            .filter(
                PricingVariantRetry.game == game,
                PricingVariantRetry.next_retry_at <= now,
                PricingVariantRetry.retry_count <= PricingVariantRetry.max_retries,
            )
            .order_by(PricingVariantRetry.next_retry_at.asc())
            .all()
        )
        return [r.item_id for r in rows]

    def entries(self, game: str) -> list[PricingVariantRetry]:
        return (
            self.db.query(PricingVariantRetry)
            .filter(PricingVariantRetry.game == game)
            .order_by(PricingVariantRetry.item_id)
            .all()
        )

    def revive_dead(self, game: str, item_id: str | None = None) -> int:
        query = self.db.query(PricingVariantRetry).filter(
            PricingVariantRetry.game == game,
            PricingVariantRetry.retry_count > PricingVariantRetry.max_retries,
        )
        if item_id is not None:
            query = query.filter(PricingVariantRetry.item_id == item_id)
        revived = query.delete(synchronize_session=False)
        self.db.commit()
        if revived:
            logger.info("Revived dead variants", game=game, count=revived, item_id=item_id)
        return revived


__all__ = ["RetryLedger", "LedgerUpdate"]
