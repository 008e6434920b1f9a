from datetime import timedelta
import pytest
from pricing_sync.jobs.queue import AlreadyQueuedOrRunning, JobQueue
from pricing_sync.models.db import PricingJobQueueEntry
from pricing_sync.models.db.enums import JobQueueStatus


def _entry(db_session, job_id):
    db_session.expire_all()
    return db_session.get(PricingJobQueueEntry, job_id)


def test_enqueue_normalizes_game_and_defaults(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    job_id = queue.enqueue("  Pokemon ")
    entry = _entry(db_session, job_id)
    assert entry.game == "pokemon"
    assert entry.status == JobQueueStatus.QUEUED.value
    assert entry.priority == 0
    assert entry.retry_count == 0
    assert entry.max_retries == 3


def test_second_active_entry_for_game_is_rejected(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    first = queue.enqueue("pokemon", 1)
    with pytest.raises(AlreadyQueuedOrRunning) as exc:
        queue.enqueue("pokemon", 9)
    assert exc.value.existing_id == first
    # Still rejected while running
    queue.dequeue_next()
    with pytest.raises(AlreadyQueuedOrRunning):
        queue.enqueue("pokemon")
    # Other games are independent
    assert queue.enqueue("yugioh") != first


def test_unsupported_game_rejected(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    with pytest.raises(ValueError):
        queue.enqueue("chess")


def test_dequeue_order_priority_then_scheduled_at(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    low = queue.enqueue("pokemon", 0)
    high_late = queue.enqueue("yugioh", 5)
    high_early = queue.enqueue("magic-the-gathering", 5, scheduled_at=clock.now() - timedelta(minutes=10))

    order = [queue.dequeue_next().id for _ in range(3)]
    assert order == [high_early, high_late, low]
    assert queue.dequeue_next() is None


def test_delayed_entry_not_dequeued_until_due(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    job_id = queue.enqueue("pokemon", scheduled_at=clock.now() + timedelta(minutes=5))
    assert queue.dequeue_next() is None
    clock.advance(5 * 60)
    entry = queue.dequeue_next()
    assert entry.id == job_id
    assert entry.status == JobQueueStatus.RUNNING.value
    assert entry.started_at is not None


def test_dequeue_filtered_by_game(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    queue.enqueue("pokemon", 10)
    lorcana = queue.enqueue("lorcana-tcg", 0)
    assert queue.dequeue_next("lorcana-tcg").id == lorcana
    assert queue.dequeue_next("lorcana-tcg") is None


def test_claim_has_exactly_one_winner(db_session, session_factory, clock):
    queue = JobQueue(db_session, clock=clock.now)
    job_id = queue.enqueue("pokemon")
    other = session_factory()
    try:
        rival = JobQueue(other, clock=clock.now)
        results = [queue.claim(job_id), rival.claim(job_id)]
    finally:
        other.close()
    assert results == [True, False]


def test_complete_only_from_running(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    job_id = queue.enqueue("pokemon")
    # Still queued
    assert queue.complete(job_id, JobQueueStatus.COMPLETED) is False

    queue.dequeue_next()
    assert queue.complete(job_id, JobQueueStatus.FAILED, "boom") is True
    assert queue.complete(job_id, JobQueueStatus.COMPLETED) is False
    entry = _entry(db_session, job_id)
    assert entry.status == "failed"
    assert entry.error_message == "boom"
    assert entry.completed_at is not None


def test_complete_rejects_non_terminal_status(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    with pytest.raises(ValueError):
        queue.complete(1, JobQueueStatus.RUNNING)


def test_game_can_be_enqueued_again_after_completion(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    first = queue.enqueue("pokemon")
    queue.dequeue_next()
    queue.complete(first, "completed")
    second = queue.enqueue("pokemon")
    assert second != first
    # Entries are never deleted
    assert db_session.query(PricingJobQueueEntry).count() == 2


def test_list_and_fail_active(db_session, clock):
    queue = JobQueue(db_session, clock=clock.now)
    queue.enqueue("pokemon", 1)
    queue.enqueue("yugioh", 7)
    done = queue.enqueue("digimon")
    queue.dequeue_next("digimon")
    queue.complete(done, "completed")

    assert [e.game for e in queue.list_active()] == ["yugioh", "pokemon"]
    assert queue.fail_active("reset", game="pokemon") == 1
    assert queue.fail_active("reset") == 1
    assert queue.list_active() == []
