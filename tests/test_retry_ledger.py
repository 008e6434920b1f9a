from datetime import timedelta
from pricing_sync.models.db import PricingVariantRetry
from pricing_sync.services.retry_ledger import RetryLedger
from pricing_sync.utils.time import ensure_aware


def _ledger(db_session, clock, max_retries=5):
    return RetryLedger(db_session, clock=clock.now, max_retries=max_retries)


def test_first_failure_creates_entry_with_backoff(db_session, clock):
    ledger = _ledger(db_session, clock)
    update = ledger.register_failure("pokemon", "v-1", "HTTP 500")
    assert update.retry_count == 1
    assert update.dead is False
    assert ensure_aware(update.next_retry_at) == clock.now() + timedelta(seconds=300)

    entry = ledger.entries("pokemon")[0]
    assert entry.last_error == "HTTP 500"
    assert entry.max_retries == 5


def test_repeat_failure_increments_and_grows_delay(db_session, clock):
    ledger = _ledger(db_session, clock)
    ledger.register_failure("pokemon", "v-1", "first")
    clock.advance(300)
    update = ledger.register_failure("pokemon", "v-1", "second")
    assert update.retry_count == 2
    assert ensure_aware(update.next_retry_at) == clock.now() + timedelta(seconds=600)
    assert ledger.entries("pokemon")[0].last_error == "second"
    assert db_session.query(PricingVariantRetry).count() == 1


def test_due_for_retry_waits_for_schedule(db_session, clock):
    ledger = _ledger(db_session, clock)
    ledger.register_failures("pokemon", ["v-1", "v-2"], "missing")
    assert ledger.due_for_retry("pokemon") == []
    clock.advance(300)
    assert sorted(ledger.due_for_retry("pokemon")) == ["v-1", "v-2"]
    assert ledger.due_for_retry("yugioh") == []


def test_item_never_retried_more_than_max_retries(db_session, clock):
    ledger = _ledger(db_session, clock, max_retries=5)
    ledger.register_failure("pokemon", "v-1", "missing")
    retries = 0
    for _ in range(20):
        clock.advance(7 * 3600)
        if "v-1" not in ledger.due_for_retry("pokemon"):
            break
        ledger.register_failure("pokemon", "v-1", "missing")
        retries += 1
    assert retries == 5

    entry = ledger.entries("pokemon")[0]
    assert entry.retry_count == 6
    assert entry.is_dead
    assert entry.next_retry_at is None


def test_dead_marker_is_kept_and_reported(db_session, clock):
    ledger = _ledger(db_session, clock, max_retries=1)
    ledger.register_failure("pokemon", "v-1")
    update = ledger.register_failure("pokemon", "v-1")
    assert update.dead is True
    assert update.next_retry_at is None
    assert len(ledger.entries("pokemon")) == 1


def test_clear_removes_entries(db_session, clock):
    ledger = _ledger(db_session, clock)
    ledger.register_failures("pokemon", ["v-1", "v-2", "v-3"])
    assert ledger.clear("pokemon", ["v-1", "v-3"]) == 2
    assert [e.item_id for e in ledger.entries("pokemon")] == ["v-2"]
    assert ledger.clear("pokemon", []) == 0


def test_revive_dead_only_touches_dead_entries(db_session, clock):
    ledger = _ledger(db_session, clock, max_retries=1)
    for item in ("v-1", "v-2"):
        ledger.register_failure("pokemon", item)
        ledger.register_failure("pokemon", item)
    ledger.register_failure("pokemon", "v-3")

    assert ledger.revive_dead("pokemon", "v-1") == 1
    assert ledger.revive_dead("pokemon") == 1
    assert [e.item_id for e in ledger.entries("pokemon")] == ["v-3"]
