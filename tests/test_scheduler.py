import asyncio
from datetime import timedelta
import pytest
from conftest import priced_responder
from pricing_sync.jobs.queue import JobQueue
from pricing_sync.jobs.run_tracker import JobRunTracker
from pricing_sync.jobs.scheduler import CANCELLED_MESSAGE, PricingScheduler
from pricing_sync.models.db import PricingJobQueueEntry
from pricing_sync.models.db.enums import JobRunStatus
from pricing_sync.utils.circuit_breaker import CircuitBreaker
from pricing_sync.utils.time import ensure_aware


@pytest.fixture()
def scheduler_factory(db_session, clock, client_factory, processor_factory):
    def _create(responder=priced_responder, **processor_kwargs):
        client = client_factory(responder)
        return PricingScheduler(db_session, clock=clock.now, processor=processor_factory(client, **processor_kwargs))
    return _create


def _entry(db_session, job_id):
    db_session.expire_all()
    return db_session.get(PricingJobQueueEntry, job_id)


def test_nothing_due_returns_none(scheduler_factory):
    assert asyncio.run(scheduler_factory().run_next()) is None


def test_completed_run_completes_entry(db_session, clock, scheduler_factory, variant_factory):
    variant_factory(count=3)
    job_id = JobQueue(db_session, clock=clock.now).enqueue("pokemon")

    outcome = asyncio.run(scheduler_factory().run_next())
    assert outcome.queue_job_id == job_id
    assert outcome.run.status == JobRunStatus.COMPLETED
    assert outcome.requeued_job_id is None
    entry = _entry(db_session, job_id)
    assert entry.status == "completed"
    assert entry.error_message is None
    assert JobRunTracker(db_session).get(outcome.run.run_id).queue_job_id == job_id


def test_ceiling_run_enqueues_continuation(db_session, clock, scheduler_factory, variant_factory):
    variant_factory(count=3)
    job_id = JobQueue(db_session, clock=clock.now).enqueue("pokemon", 4)
    scheduler = scheduler_factory(batch_size=2, max_batches=1)

    outcome = asyncio.run(scheduler.run_next())
    assert outcome.run.status == JobRunStatus.PREFLIGHT_CEILING
    assert _entry(db_session, job_id).status == "completed"
    continuation = _entry(db_session, outcome.requeued_job_id)
    assert continuation.status == "queued"
    assert continuation.priority == 4
    assert continuation.retry_count == 0

    second = asyncio.run(scheduler.run_next())
    assert second.queue_job_id == continuation.id
    assert second.run.status == JobRunStatus.COMPLETED
    assert second.run.items_processed == 1


def _reaped_mid_run(db_session, clock, latest_run):
    """Responder that force-finishes the current run during its first fetch."""
    tracker = JobRunTracker(db_session, clock=clock.now)

    def responder(method, path, params, json):
        tracker.force_finish(latest_run().id, "error", "reaped")
        return priced_responder(method, path, params, json)
    return responder


def test_transient_error_requeues_with_delay(db_session, clock, scheduler_factory, variant_factory, latest_run):
    variant_factory(count=2)
    job_id = JobQueue(db_session, clock=clock.now).enqueue("pokemon", 2)
    scheduler = scheduler_factory(_reaped_mid_run(db_session, clock, latest_run))

    outcome = asyncio.run(scheduler.run_next())
    assert outcome.run.status == JobRunStatus.ERROR
    assert outcome.run.fatal is False
    assert outcome.run.breaker_blocked is False
    assert _entry(db_session, job_id).status == "failed"

    retry = _entry(db_session, outcome.requeued_job_id)
    assert retry.retry_count == 1
    assert retry.priority == 2
    assert ensure_aware(retry.scheduled_at) == clock.now() + timedelta(seconds=60)
    # Not due yet
    assert asyncio.run(scheduler.run_next()) is None


def test_retries_exhausted_not_requeued(db_session, clock, scheduler_factory, variant_factory, latest_run):
    variant_factory(count=2)
    JobQueue(db_session, clock=clock.now).enqueue("pokemon", retry_count=3, max_retries=3)
    scheduler = scheduler_factory(_reaped_mid_run(db_session, clock, latest_run))

    outcome = asyncio.run(scheduler.run_next())
    assert outcome.run.status == JobRunStatus.ERROR
    assert outcome.requeued_job_id is None
    assert JobQueue(db_session, clock=clock.now).list_active() == []


def test_open_breaker_defers_successor_until_recovery(db_session, clock, scheduler_factory, variant_factory):
    variant_factory(count=4)
    job_id = JobQueue(db_session, clock=clock.now).enqueue("pokemon", 2)
    upstream = {"healthy": False}

    def responder(method, path, params, json):
        if not upstream["healthy"]:
            return 500, {"error": "down"}
        return priced_responder(method, path, params, json)

    # Breaker opens after the first failed batch and blocks the second.
    breaker = CircuitBreaker(db_session, clock=clock.now, failure_threshold=1, recovery_timeout_seconds=1800)
    scheduler = scheduler_factory(responder, batch_size=2, breaker=breaker)

    outcome = asyncio.run(scheduler.run_next())
    assert outcome.run.status == JobRunStatus.ERROR
    assert outcome.run.breaker_blocked is True
    assert _entry(db_session, job_id).status == "failed"

    reopens_at = outcome.run.retry_not_before
    assert reopens_at == breaker.next_attempt_time("pokemon")
    successor = _entry(db_session, outcome.requeued_job_id)
    assert successor.retry_count == 0
    assert successor.priority == 2
    assert ensure_aware(successor.scheduled_at) == reopens_at

    # Nothing is attempted during the cool-down.
    clock.advance((reopens_at - clock.now()).total_seconds() - 1)
    assert asyncio.run(scheduler.run_next()) is None

    clock.advance(1)
    upstream["healthy"] = True
    recovered = asyncio.run(scheduler.run_next())
    assert recovered.queue_job_id == successor.id
    assert recovered.run.status == JobRunStatus.COMPLETED
    assert recovered.requeued_job_id is None
    assert breaker.snapshot()["pokemon"]["state"] == "closed"


def test_breaker_block_does_not_spend_exhausted_retries(db_session, clock, scheduler_factory, variant_factory):
    variant_factory(count=2)
    JobQueue(db_session, clock=clock.now).enqueue("pokemon", retry_count=3, max_retries=3)
    breaker = CircuitBreaker(db_session, clock=clock.now, failure_threshold=1, recovery_timeout_seconds=1800)
    breaker.record_result("pokemon", False)

    outcome = asyncio.run(scheduler_factory(breaker=breaker).run_next())
    assert outcome.run.breaker_blocked is True
    successor = _entry(db_session, outcome.requeued_job_id)
    assert successor.retry_count == 3
    assert ensure_aware(successor.scheduled_at) == clock.now() + timedelta(seconds=1800)


def test_fatal_error_never_requeued(db_session, clock, scheduler_factory, variant_factory):
    variant_factory(count=2)
    job_id = JobQueue(db_session, clock=clock.now).enqueue("pokemon")
    outcome = asyncio.run(scheduler_factory(lambda *a: (401, {"error": "bad key"})).run_next())

    assert outcome.run.fatal is True
    assert outcome.requeued_job_id is None
    assert _entry(db_session, job_id).status == "failed"
    assert JobQueue(db_session, clock=clock.now).list_active() == []


def test_cancelled_run_completes_entry_with_reason(db_session, clock, client_factory, processor_factory, variant_factory, latest_run):
    variant_factory(count=4)
    job_id = JobQueue(db_session, clock=clock.now).enqueue("pokemon")
    tracker = JobRunTracker(db_session, clock=clock.now)

    def responder(method, path, params, json):
        tracker.request_cancel(latest_run().id)
        return priced_responder(method, path, params, json)

    processor = processor_factory(client_factory(responder), batch_size=2)
    outcome = asyncio.run(PricingScheduler(db_session, clock=clock.now, processor=processor).run_next())
    assert outcome.run.status == JobRunStatus.CANCELLED
    entry = _entry(db_session, job_id)
    assert entry.status == "completed"
    assert entry.error_message == CANCELLED_MESSAGE
    assert outcome.requeued_job_id is None


def test_schedule_uses_existing_active_entry(db_session, clock, scheduler_factory, variant_factory):
    variant_factory(count=1)
    existing = JobQueue(db_session, clock=clock.now).enqueue("pokemon", 0)
    result = asyncio.run(scheduler_factory().schedule("pokemon"))
    assert result.already_active is True
    assert result.queue_job_id == existing
    assert result.outcome.queue_job_id == existing


def test_schedule_enqueues_at_scheduled_priority(db_session, scheduler_factory, variant_factory):
    variant_factory(count=1)
    result = asyncio.run(scheduler_factory().schedule("pokemon"))
    assert result.already_active is False
    assert _entry(db_session, result.queue_job_id).priority == 10
    assert result.outcome.run.status == JobRunStatus.COMPLETED


def test_unexpected_exception_fails_entry_and_propagates(db_session, clock, scheduler_factory, variant_factory):
    variant_factory(count=1)
    job_id = JobQueue(db_session, clock=clock.now).enqueue("pokemon")
    with pytest.raises(RuntimeError):
        asyncio.run(scheduler_factory(lambda *a: RuntimeError("boom")).run_next())
    entry = _entry(db_session, job_id)
    assert entry.status == "failed"
    assert entry.error_message == "Unexpected error: boom"
