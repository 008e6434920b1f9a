from datetime import timedelta
import pytest
from pricing_sync.services.retry_ledger import RetryLedger
from pricing_sync.services.work_set import partition, select_work_set


def test_never_priced_first_then_stalest(db_session, clock, variant_factory):
    now = clock.now()
    variant_factory(count=1, prefix="old", last_priced_at=now - timedelta(hours=5))
    variant_factory(count=1, prefix="older", last_priced_at=now - timedelta(hours=9))
    variant_factory(count=1, prefix="fresh", last_priced_at=now - timedelta(minutes=10))
    variant_factory(count=2, prefix="new")

    work = select_work_set(db_session, "pokemon", now, staleness_minutes=60)
    assert work == ["new-000", "new-001", "older-000", "old-000"]


def test_other_games_excluded(db_session, clock, variant_factory):
    variant_factory(game="pokemon", count=2, prefix="p")
    variant_factory(game="yugioh", count=3, prefix="y")
    assert select_work_set(db_session, "yugioh", clock.now()) == ["y-000", "y-001", "y-002"]


def test_retry_ledger_filters_work_set(db_session, clock, variant_factory):
    ids = variant_factory(count=4)
    ledger = RetryLedger(db_session, clock=clock.now, max_retries=1)
    ledger.register_failure("pokemon", ids[0])           # not due yet
    ledger.register_failure("pokemon", ids[1])
    ledger.register_failure("pokemon", ids[1])           # dead
    assert select_work_set(db_session, "pokemon", clock.now()) == [ids[2], ids[3]]

    clock.advance(300)
    # Due again, dead stays out
    assert select_work_set(db_session, "pokemon", clock.now()) == [ids[0], ids[2], ids[3]]


def test_limit_caps_selection(db_session, clock, variant_factory):
    variant_factory(count=10)
    assert len(select_work_set(db_session, "pokemon", clock.now(), limit=4)) == 4


def test_partition():
    assert partition(["a", "b", "c", "d", "e"], 2) == [["a", "b"], ["c", "d"], ["e"]]
    assert partition([], 3) == []
    with pytest.raises(ValueError):
        partition(["a"], 0)
