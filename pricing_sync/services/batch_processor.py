"""Time-guarded batch processor: executes one pricing job run.

Flow per run:
 1. Select the stale work set (capped at max_batches * batch_size) and
    partition it into fixed-size batches; start the JobRun.
 2. Before each batch:
      - time check: elapsed since run start >= time budget -> finish
        ``preflight_ceiling`` (resumable, unpriced items stay stale);
      - cancellation check -> finish ``cancelled``;
      - circuit check -> finish ``error`` without waiting for the breaker.
 3. Fetch the batch (rate limiter + backoff live in the client), record the
    breaker outcome, write snapshots for priced variants, register the rest
    in the retry ledger, then checkpoint progress.
 4. Short fixed delay between batches.

Credential failures end the run ``error`` immediately. Any unexpected
exception also finishes the run ``error`` and is re-raised to the caller.
Cancellation is only observed between batches; an in-flight request is never
aborted.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Sequence

from sqlalchemy.orm import Session

from pricing_sync.config import PROCESSOR_SETTINGS
from pricing_sync.integrations.justtcg import (
    BatchPricingClient,
    PriceResult,
    RequestRecord,
    UpstreamAuthError,
)
from pricing_sync.jobs.run_tracker import ERROR_MAX_LENGTH, JobRunTracker
from pricing_sync.models.db import CatalogVariant, PriceSnapshot, PricingApiUsage
from pricing_sync.models.db.enums import JobRunStatus
from pricing_sync.services.retry_ledger import RetryLedger
from pricing_sync.services.work_set import partition, select_work_set
from pricing_sync.utils import get_logger
from pricing_sync.utils.circuit_breaker import CircuitBreaker
from pricing_sync.utils.time import utc_now

logger = get_logger(__name__)


@dataclass(slots=True)
class RunResult:
    run_id: int
    game: str
    status: JobRunStatus
    expected_batches: int
    actual_batches: int
    items_processed: int
    items_updated: int
    error: str | None = None
    fatal: bool = False
    # Set when an open circuit breaker stopped the run: earliest useful retry.
    retry_not_before: datetime | None = None

    @property
    def breaker_blocked(self) -> bool:
        return self.retry_not_before is not None

    @property
    def resumable(self) -> bool:
        return self.status == JobRunStatus.PREFLIGHT_CEILING


class TimeGuardedBatchProcessor:
    def __init__(
        self,
        db: Session,
        client: BatchPricingClient,
        *,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        batch_size: int | None = None,
        time_budget_seconds: float | None = None,
        inter_batch_delay_seconds: float | None = None,
        max_batches: int | None = None,
        staleness_minutes: int | None = None,
        breaker: CircuitBreaker | None = None,
        ledger: RetryLedger | None = None,
        tracker: JobRunTracker | None = None,
    ) -> None:
        self.db = db
        self.client = client
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self.batch_size = int(batch_size or PROCESSOR_SETTINGS["batch_size"])
        self.time_budget_seconds = float(
            time_budget_seconds if time_budget_seconds is not None else PROCESSOR_SETTINGS["time_budget_seconds"]
        )
        self.inter_batch_delay_seconds = float(
            inter_batch_delay_seconds
            if inter_batch_delay_seconds is not None
            else PROCESSOR_SETTINGS["inter_batch_delay_seconds"]
        )
        self.max_batches = int(max_batches or PROCESSOR_SETTINGS["max_batches_per_run"])
        self.staleness_minutes = staleness_minutes
        self.breaker = breaker or CircuitBreaker(db, clock=clock)
        self.ledger = ledger or RetryLedger(db, clock=clock)
        self.tracker = tracker or JobRunTracker(db, clock=clock)
        self._current_run_id: int | None = None

    # ----------------------------- helpers ----------------------------- #
    def _record_api_usage(self, record: RequestRecord) -> None:
        self.db.add(
            PricingApiUsage(
                job_run_id=self._current_run_id,
                endpoint=record.endpoint,
                status_code=record.status_code,
                response_time_ms=record.response_time_ms,
                success=record.success,
                error_message=record.error_message,
                recorded_at=self._clock(),
            )
        )

    def _apply_prices(self, run_id: int, game: str, prices: Sequence[PriceResult]) -> int:
        """Write snapshots and refresh variant price fields. Returns variants updated."""
        by_id = {p.item_id: p for p in prices}
        if not by_id:
            return 0
        now = self._clock()
        variants = (
            self.db.query(CatalogVariant)
            .filter(CatalogVariant.game == game, CatalogVariant.id.in_(list(by_id)))
            .all()
        )
        for variant in variants:
            price = by_id[variant.id]
            self.db.add(
                PriceSnapshot(
                    variant_id=variant.id,
                    game=game,
                    job_run_id=run_id,
                    printing=price.printing or variant.printing,
                    condition=price.condition or variant.condition,
                    currency=price.currency,
                    price=price.price,
                    price_change_24h=price.price_change_24h,
                    source_updated_at=price.source_updated_at,
                    observed_at=now,
                    raw=price.raw or None,
                )
            )
            variant.price = price.price
            variant.currency = price.currency
            if price.printing:
                variant.printing = price.printing
            if price.condition:
                variant.condition = price.condition
            variant.last_priced_at = now
        self.ledger.clear(game, [v.id for v in variants], commit=False)
        return len(variants)

    def _finish(
        self,
        run_id: int,
        game: str,
        status: JobRunStatus,
        progress: tuple[int, int, int],
        expected: int,
        error: str | None = None,
        *,
        fatal: bool = False,
        retry_not_before: datetime | None = None,
    ) -> RunResult:
        self.tracker.finish_run(run_id, status, error)
        actual, processed, updated = progress
        return RunResult(
            run_id=run_id,
            game=game,
            status=status,
            expected_batches=expected,
            actual_batches=actual,
            items_processed=processed,
            items_updated=updated,
            error=error[:ERROR_MAX_LENGTH] if error else None,
            fatal=fatal,
            retry_not_before=retry_not_before,
        )

    # ----------------------------- public API ----------------------------- #
    async def run(self, game: str, *, queue_job_id: int | None = None) -> RunResult:
        started = self._monotonic()
        cap = self.max_batches * self.batch_size
        # One extra row tells us whether the ceiling truncated the work set.
        work = select_work_set(
            self.db,
            game,
            self._clock(),
            staleness_minutes=self.staleness_minutes,
            limit=cap + 1,
        )
        truncated = len(work) > cap
        batches = partition(work[:cap], self.batch_size)
        run_id = self.tracker.start_run(game, len(batches), queue_job_id=queue_job_id)
        logger.info(
            "Pricing run work set selected",
            run_id=run_id,
            game=game,
            items=min(len(work), cap),
            batches=len(batches),
            truncated=truncated,
        )
        return await self.process(run_id, game, batches, started=started, truncated=truncated)

    async def process(
        self,
        run_id: int,
        game: str,
        batches: Sequence[Sequence[str]],
        *,
        started: float | None = None,
        truncated: bool = False,
    ) -> RunResult:
        """Process pre-partitioned batches for a run already in ``running`` state."""
        started = self._monotonic() if started is None else started
        expected = len(batches)
        actual = processed = updated = 0
        previous_hook = self.client.on_request
        self._current_run_id = run_id
        self.client.on_request = self._record_api_usage
        try:
            for index, batch in enumerate(batches):
                elapsed = self._monotonic() - started
                if elapsed >= self.time_budget_seconds:
                    logger.warning(
                        "Time budget reached, stopping run for resumption",
                        run_id=run_id,
                        game=game,
                        elapsed_seconds=round(elapsed, 2),
                        completed_batches=actual,
                        expected_batches=expected,
                    )
                    return self._finish(
                        run_id, game, JobRunStatus.PREFLIGHT_CEILING, (actual, processed, updated), expected,
                        f"Time budget of {self.time_budget_seconds:g}s reached after {actual} of {expected} batches",
                    )

                if self.tracker.is_cancelled(run_id):
                    logger.info("Cancellation observed", run_id=run_id, game=game, completed_batches=actual)
                    return self._finish(
                        run_id, game, JobRunStatus.CANCELLED, (actual, processed, updated), expected,
                        "Cancelled by operator",
                    )

                allowed, state = self.breaker.can_proceed(game)
                if not allowed:
                    reopens_at = self.breaker.next_attempt_time(game) or self._clock()
                    logger.warning(
                        "Circuit breaker blocked run",
                        run_id=run_id,
                        game=game,
                        state=state.value,
                        next_attempt_at=reopens_at.isoformat(),
                    )
                    return self._finish(
                        run_id, game, JobRunStatus.ERROR, (actual, processed, updated), expected,
                        f"Circuit breaker {state.value} for {game}; upstream calls suspended",
                        retry_not_before=reopens_at,
                    )

                try:
                    result = await self.client.fetch_prices(batch)
                except UpstreamAuthError as e:
                    self.breaker.record_result(game, False)
                    logger.error("Fatal upstream credential error", run_id=run_id, game=game, error=str(e))
                    return self._finish(
                        run_id, game, JobRunStatus.ERROR, (actual, processed, updated), expected,
                        str(e), fatal=True,
                    )

                self.breaker.record_result(game, result.success)
                batch_updated = self._apply_prices(run_id, game, result.prices)
                if result.missing:
                    self.ledger.register_failures(
                        game, result.missing, result.error or "No price returned by upstream"
                    )

                actual += 1
                processed += len(batch)
                updated += batch_updated
                if not self.tracker.record_progress(run_id, actual, processed, updated):
                    # Finished out from under us (reaper or operator force-finish).
                    run = self.tracker.get(run_id)
                    logger.warning("Run no longer running, stopping", run_id=run_id, game=game)
                    return RunResult(
                        run_id=run_id,
                        game=game,
                        status=JobRunStatus(run.status) if run else JobRunStatus.ERROR,
                        expected_batches=expected,
                        actual_batches=actual,
                        items_processed=processed,
                        items_updated=updated,
                        error=run.error if run else None,
                    )
                logger.info(
                    "Batch complete",
                    run_id=run_id,
                    game=game,
                    batch=actual,
                    expected_batches=expected,
                    updated=batch_updated,
                    missing=len(result.missing),
                    requests=result.requests_made,
                )

                if index < expected - 1 and self.inter_batch_delay_seconds > 0:
                    await self._sleep(self.inter_batch_delay_seconds)

            if truncated:
                return self._finish(
                    run_id, game, JobRunStatus.PREFLIGHT_CEILING, (actual, processed, updated), expected,
                    f"Batch ceiling of {self.max_batches} reached; remaining items deferred",
                )
            return self._finish(run_id, game, JobRunStatus.COMPLETED, (actual, processed, updated), expected)
        except Exception as e:
            logger.error("Pricing run failed unexpectedly", run_id=run_id, game=game, error=str(e), exc_info=True)
            self.db.rollback()
            self.tracker.finish_run(run_id, JobRunStatus.ERROR, f"Unexpected error: {e}")
            raise
        finally:
            self.client.on_request = previous_hook
            self._current_run_id = None


__all__ = ["TimeGuardedBatchProcessor", "RunResult"]
