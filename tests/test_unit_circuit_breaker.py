from datetime import timedelta
from pricing_sync.models.db import PricingCircuitBreaker
from pricing_sync.models.db.enums import CircuitState
from pricing_sync.utils.circuit_breaker import CircuitBreaker
from pricing_sync.utils.time import ensure_aware


def _breaker(db_session, clock, **kwargs):
    kwargs.setdefault("failure_threshold", 3)
    kwargs.setdefault("recovery_timeout_seconds", 600)
    return CircuitBreaker(db_session, clock=clock.now, **kwargs)


def _row(db_session, game="pokemon"):
    return db_session.query(PricingCircuitBreaker).filter_by(game=game).one()


def test_closed_breaker_allows_calls(db_session, clock):
    cb = _breaker(db_session, clock)
    assert cb.can_proceed("pokemon") == (True, CircuitState.CLOSED)
    assert _row(db_session).failure_threshold == 3


def test_threshold_failures_open_the_breaker(db_session, clock):
    cb = _breaker(db_session, clock)
    assert cb.record_result("pokemon", False) == CircuitState.CLOSED
    assert cb.record_result("pokemon", False) == CircuitState.CLOSED
    assert cb.record_result("pokemon", False) == CircuitState.OPEN
    row = _row(db_session)
    assert row.failure_count == 3
    assert ensure_aware(row.next_attempt_at) == clock.now() + timedelta(seconds=600)
    assert cb.can_proceed("pokemon") == (False, CircuitState.OPEN)


def test_open_rejects_until_timeout_then_grants_single_trial(db_session, clock):
    cb = _breaker(db_session, clock)
    for _ in range(3):
        cb.record_result("pokemon", False)

    clock.advance(599)
    assert cb.can_proceed("pokemon") == (False, CircuitState.OPEN)

    clock.advance(1)
    assert cb.can_proceed("pokemon") == (True, CircuitState.HALF_OPEN)
    # Only one trial before the outcome is recorded
    assert cb.can_proceed("pokemon") == (False, CircuitState.HALF_OPEN)
    assert cb.can_proceed("pokemon") == (False, CircuitState.HALF_OPEN)


def test_half_open_success_closes_and_resets(db_session, clock):
    cb = _breaker(db_session, clock)
    for _ in range(3):
        cb.record_result("pokemon", False)
    clock.advance(600)
    assert cb.can_proceed("pokemon")[0] is True

    assert cb.record_result("pokemon", True) == CircuitState.CLOSED
    row = _row(db_session)
    assert row.failure_count == 0
    assert row.next_attempt_at is None
    assert cb.can_proceed("pokemon") == (True, CircuitState.CLOSED)


def test_half_open_failure_reopens_with_fresh_timeout(db_session, clock):
    cb = _breaker(db_session, clock)
    for _ in range(3):
        cb.record_result("pokemon", False)
    clock.advance(600)
    cb.can_proceed("pokemon")

    clock.advance(5)
    assert cb.record_result("pokemon", False) == CircuitState.OPEN
    row = _row(db_session)
    assert ensure_aware(row.next_attempt_at) == clock.now() + timedelta(seconds=600)
    assert cb.can_proceed("pokemon") == (False, CircuitState.OPEN)


def test_abandoned_trial_is_regranted_after_timeout(db_session, clock):
    cb = _breaker(db_session, clock)
    for _ in range(3):
        cb.record_result("pokemon", False)
    clock.advance(600)
    assert cb.can_proceed("pokemon")[0] is True
    # Trial never reports back (crashed invocation)
    clock.advance(600)
    assert cb.can_proceed("pokemon") == (True, CircuitState.HALF_OPEN)


def test_concurrent_callers_share_one_trial(db_session, session_factory, clock):
    first = _breaker(db_session, clock)
    for _ in range(3):
        first.record_result("pokemon", False)
    clock.advance(600)

    other_session = session_factory()
    try:
        second = _breaker(other_session, clock)
        results = [first.can_proceed("pokemon")[0], second.can_proceed("pokemon")[0]]
    finally:
        other_session.close()
    assert sorted(results) == [False, True]


def test_breakers_are_per_game(db_session, clock):
    cb = _breaker(db_session, clock)
    for _ in range(3):
        cb.record_result("pokemon", False)
    assert cb.can_proceed("pokemon")[0] is False
    assert cb.can_proceed("yugioh") == (True, CircuitState.CLOSED)


def test_success_while_closed_resets_failure_count(db_session, clock):
    cb = _breaker(db_session, clock)
    cb.record_result("pokemon", False)
    cb.record_result("pokemon", False)
    cb.record_result("pokemon", True)
    cb.record_result("pokemon", False)
    assert _row(db_session).failure_count == 1
    assert cb.can_proceed("pokemon")[0] is True


def test_reset_and_snapshot(db_session, clock):
    cb = _breaker(db_session, clock)
    for _ in range(3):
        cb.record_result("pokemon", False)
    snap = cb.snapshot()
    assert snap["pokemon"]["state"] == "open"
    assert snap["pokemon"]["failure_count"] == 3
    assert snap["pokemon"]["next_attempt_at"] is not None

    cb.reset("pokemon")
    snap = cb.snapshot()
    assert snap["pokemon"]["state"] == "closed"
    assert snap["pokemon"]["failure_count"] == 0
    assert snap["pokemon"]["last_failure_at"] is None


def test_record_result_sees_changes_from_another_session(db_session, session_factory, clock):
    cb = _breaker(db_session, clock)
    assert cb.can_proceed("pokemon") == (True, CircuitState.CLOSED)

    other = session_factory()
    try:
        row = other.query(PricingCircuitBreaker).filter_by(game="pokemon").one()
        row.state = CircuitState.HALF_OPEN.value
        row.recovery_timeout_seconds = 60
        other.commit()
    finally:
        other.close()

    assert cb.record_result("pokemon", False) == CircuitState.OPEN
    assert ensure_aware(_row(db_session).next_attempt_at) == clock.now() + timedelta(seconds=60)


def test_next_attempt_time_only_for_tripped_breaker(db_session, clock):
    cb = _breaker(db_session, clock, failure_threshold=1)
    assert cb.next_attempt_time("pokemon") is None
    cb.can_proceed("pokemon")
    assert cb.next_attempt_time("pokemon") is None

    cb.record_result("pokemon", False)
    assert cb.next_attempt_time("pokemon") == clock.now() + timedelta(seconds=600)
