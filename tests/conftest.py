"""Pytest fixtures and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise back_populates targets might not exist yet.
Importing pricing_sync.models.db below takes care of that.
"""
from datetime import datetime, timedelta, timezone
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pricing_sync.main import app
from pricing_sync.database import Base
from pricing_sync.api import deps
from pricing_sync.models.db import CatalogVariant, PricingJobRun
from pricing_sync.integrations.justtcg import BatchPricingClient
from pricing_sync.services.batch_processor import TimeGuardedBatchProcessor
from pricing_sync.utils.ratelimiter import WindowRateLimiter


class FakeClock:
    """Drives wall-clock, monotonic time and async sleep together; nothing really waits."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.mono = 1000.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.mono += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class StubTransportClient(BatchPricingClient):
    """Real client logic with the HTTP transport replaced by a responder callable.

    responder(method, path, params, json) returns (status, payload) or an exception to raise.
    """

    def __init__(self, responder, **kwargs):
        kwargs.setdefault("api_key", "test-key")
        super().__init__(**kwargs)
        self.responder = responder
        self.calls: list[tuple] = []

    async def _send(self, method, path, *, params=None, json=None):
        self.calls.append((method, path, params, json))
        result = self.responder(method, path, params, json)
        if isinstance(result, BaseException):
            raise result
        return result


def variant_payload(ids, price=2.5):
    return {
        "data": [
            {
                "id": f"card-{i}",
                "name": f"Card {i}",
                "variants": [
                    {
                        "id": i,
                        "price": price,
                        "priceChange24h": 0.1,
                        "printing": "Foil",
                        "condition": "NM",
                        "lastUpdated": 1735732800,
                    }
                ],
            }
            for i in ids
        ]
    }


def batch_ids(json_body):
    return [item["variantId"] for item in json_body]


def priced_responder(method, path, params, json):
    """Prices every requested variant."""
    if method == "POST":
        return 200, variant_payload(batch_ids(json))
    return 200, variant_payload([params["variantId"]])


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client_factory(clock):
    def _create(responder=priced_responder, **kwargs):
        kwargs.setdefault("sleep", clock.sleep)
        kwargs.setdefault("monotonic", clock.monotonic)
        kwargs.setdefault(
            "rate_limiter",
            WindowRateLimiter(limit=500, window_seconds=60, clock=clock.monotonic, sleep=clock.sleep),
        )
        return StubTransportClient(responder, **kwargs)
    return _create


@pytest.fixture()
def processor_factory(db_session, clock):
    def _create(pricing_client, **kwargs):
        return TimeGuardedBatchProcessor(
            db_session,
            pricing_client,
            clock=clock.now,
            monotonic=clock.monotonic,
            sleep=clock.sleep,
            **kwargs,
        )
    return _create


# ---------- Data factory helpers ----------

@pytest.fixture()
def variant_factory(db_session):
    def _create(game: str = "pokemon", count: int = 1, *, prefix: str = "v", last_priced_at=None):
        ids = []
        for i in range(count):
            variant_id = f"{prefix}-{i:03d}"
            db_session.add(
                CatalogVariant(
                    id=variant_id,
                    game=game,
                    card_id=f"card-{variant_id}",
                    printing="normal",
                    condition="near_mint",
                    currency="USD",
                    last_priced_at=last_priced_at,
                )
            )
            ids.append(variant_id)
        db_session.commit()
        return ids
    return _create


@pytest.fixture()
def latest_run(db_session):
    def _get():
        return db_session.query(PricingJobRun).order_by(PricingJobRun.id.desc()).first()
    return _get


# ---------- API client ----------

@pytest.fixture()
def api_client(session_factory, client_factory):
    """TestClient with the DB and upstream client dependencies overridden."""
    stub = client_factory()

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    async def _override_get_pricing_client():
        yield stub

    app.dependency_overrides[deps.get_db] = _override_get_db
    app.dependency_overrides[deps.get_pricing_client] = _override_get_pricing_client
    client = TestClient(app)
    client.stub = stub  # type: ignore[attr-defined]
    yield client
    app.dependency_overrides.clear()
