"""Per-game circuit breaker for the upstream pricing API (store-backed).

State lives in ``pricing_circuit_breaker`` rows rather than process memory so
independent invocations observe the same breaker. Every transition is a single
conditional UPDATE whose rowcount decides who won; no read-modify-write.

closed -> open        failure_count reaches failure_threshold
open -> half_open     now >= next_attempt_at (grants exactly one trial call)
half_open -> closed   trial succeeds (failure_count reset)
half_open -> open     trial fails (next_attempt_at = now + recovery timeout)
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pricing_sync.config import CIRCUIT_BREAKER
from pricing_sync.models.db import PricingCircuitBreaker
from pricing_sync.models.db.enums import CircuitState
from pricing_sync.utils import get_logger
from pricing_sync.utils.time import utc_now, ensure_aware

logger = get_logger(__name__)


class CircuitBreaker:
    def __init__(
        self,
        db: Session,
        *,
        clock: Callable[[], datetime] = utc_now,
        failure_threshold: int | None = None,
        recovery_timeout_seconds: int | None = None,
    ):
        self.db = db
        self._clock = clock
        # Only applied when a game's row is first created.
        self._default_threshold = int(failure_threshold or CIRCUIT_BREAKER["failure_threshold"])
        self._default_recovery = int(recovery_timeout_seconds or CIRCUIT_BREAKER["recovery_timeout_seconds"])

    # ----------------------------- internal helpers ----------------------------- #
    def _query(self, game: str):
        return self.db.query(PricingCircuitBreaker).filter(PricingCircuitBreaker.game == game)

    def _get_or_create(self, game: str) -> PricingCircuitBreaker:
        # Always reload: another session may have moved the row since we last read it.
        row = self._query(game).populate_existing().first()
        if row is not None:
            return row
        try:
            row = PricingCircuitBreaker(
                game=game,
                state=CircuitState.CLOSED.value,
                failure_count=0,
                failure_threshold=self._default_threshold,
                recovery_timeout_seconds=self._default_recovery,
                updated_at=self._clock(),
            )
            self.db.add(row)
            self.db.commit()
        except IntegrityError:
            # Another invocation created it first
            self.db.rollback()
            row = self._query(game).one()
        return row

    def _grant_trial(self, game: str, expected: CircuitState, now: datetime, recovery_seconds: int) -> bool:
        col = PricingCircuitBreaker
        claimed = self._query(game).filter(
            col.state == expected.value,
            or_(col.next_attempt_at.is_(None), col.next_attempt_at <= now),
        ).update(
            {
                col.state: CircuitState.HALF_OPEN.value,
                col.next_attempt_at: now + timedelta(seconds=recovery_seconds),
                col.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()
        return claimed == 1

    # ----------------------------- public API ----------------------------- #
    def can_proceed(self, game: str) -> tuple[bool, CircuitState]:
        """Return (allowed, state). May transition open -> half_open as a side effect."""
        row = self._get_or_create(game)
        now = self._clock()
        state = CircuitState(row.state)
        if state == CircuitState.CLOSED:
            return True, state

        next_attempt = ensure_aware(row.next_attempt_at)
        if next_attempt is not None and now < next_attempt:
            return False, state

        # open: cooldown elapsed. half_open: the outstanding trial never reported back.
        if self._grant_trial(game, state, now, row.recovery_timeout_seconds):
            logger.info(
                "Circuit breaker granted trial call",
                game=game,
                previous_state=state.value,
            )
            return True, CircuitState.HALF_OPEN
        # Lost the race to a concurrent caller
        current = self._query(game).one()
        return False, CircuitState(current.state)

    def record_result(self, game: str, success: bool) -> CircuitState:
        row = self._get_or_create(game)
        now = self._clock()
        previous = CircuitState(row.state)
        recovery_seconds = row.recovery_timeout_seconds
        col = PricingCircuitBreaker
        if success:
            self._query(game).update(
                {
                    col.state: CircuitState.CLOSED.value,
                    col.failure_count: 0,
                    col.next_attempt_at: None,
                    col.updated_at: now,
                },
                synchronize_session=False,
            )
            self.db.commit()
            if previous != CircuitState.CLOSED:
                logger.info("Circuit breaker closed", game=game)
            return CircuitState.CLOSED

        self._query(game).update(
            {
                col.failure_count: col.failure_count + 1,
                col.last_failure_at: now,
                col.updated_at: now,
            },
            synchronize_session=False,
        )
        opened = self._query(game).filter(
            or_(
                and_(col.state == CircuitState.CLOSED.value, col.failure_count >= col.failure_threshold),
                col.state == CircuitState.HALF_OPEN.value,
            )
        ).update(
            {
                col.state: CircuitState.OPEN.value,
                col.next_attempt_at: now + timedelta(seconds=recovery_seconds),
            },
            synchronize_session=False,
        )
        self.db.commit()
        current = self._query(game).one()
        if opened:
            logger.warning(
                "Circuit breaker opened",
                game=game,
                failure_count=current.failure_count,
                next_attempt_at=current.next_attempt_at,
            )
        return CircuitState(current.state)

    def next_attempt_time(self, game: str) -> datetime | None:
        """When a blocked caller may try again; None for a closed or unknown breaker."""
        row = self._query(game).populate_existing().first()
        if row is None or row.state == CircuitState.CLOSED.value:
            return None
        return ensure_aware(row.next_attempt_at)

    def reset(self, game: str) -> None:
        self._get_or_create(game)
        col = PricingCircuitBreaker
        self._query(game).update(
            {
                col.state: CircuitState.CLOSED.value,
                col.failure_count: 0,
                col.last_failure_at: None,
                col.next_attempt_at: None,
                col.updated_at: self._clock(),
            },
            synchronize_session=False,
        )
        self.db.commit()
        logger.info("Circuit breaker reset", game=game)

    def snapshot(self) -> dict[str, dict[str, object]]:
        rows = self.db.query(PricingCircuitBreaker).order_by(PricingCircuitBreaker.game).all()
        return {
            r.game: {
                "state": r.state,
                "failure_count": r.failure_count,
                "failure_threshold": r.failure_threshold,
                "recovery_timeout_seconds": r.recovery_timeout_seconds,
                "last_failure_at": ensure_aware(r.last_failure_at).isoformat() if r.last_failure_at else None,
                "next_attempt_at": ensure_aware(r.next_attempt_at).isoformat() if r.next_attempt_at else None,
            }
            for r in rows
        }


__all__ = ["CircuitBreaker"]
