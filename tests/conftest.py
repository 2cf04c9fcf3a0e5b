"""
Shared fixtures: a seeded SQLite event store, in-memory cache store and a
small admission controller.
"""
from datetime import datetime, timezone

import pytest

from funnel_api.admission import AdmissionController, ScalingThresholds
from funnel_api.cache import ChunkedRangeCache, InMemoryStore
from funnel_api.datasource import SqlDataSource
from funnel_api.db import create_db_engine, create_session_factory, init_db
from funnel_api.metrics import CacheWarmer, MetricsFacade
from funnel_api.models import Currency, PageView


def ts(day: str, hour: int = 12) -> int:
    """Unix seconds for day at hour:00 UTC."""
    return int(datetime.fromisoformat(day).replace(hour=hour, tzinfo=timezone.utc).timestamp())


# Three bookings across January and February 2025:
#   c1 books B1 (200 USD) in January and B3 (50 usd) in February
#   c2 books B2 (100 EUR at 1.1) in January
#   c3 and c4 only search
SEED_EVENTS = [
    dict(time=ts("2025-01-10", 9), client_id="c1", channel="google", logged_in=False, booking_step="search"),
    dict(time=ts("2025-01-10", 10), client_id="c1", channel="google", logged_in=False, booking_step="room_select"),
    dict(time=ts("2025-01-10", 11), client_id="c1", channel="google", logged_in=False, booking_step="checkout"),
    dict(time=ts("2025-01-10", 12), client_id="c1", channel="google", logged_in=False, booking_step="confirmation",
         confirmation_no="B1", nights=2, payment=200.0, currency="USD"),
    dict(time=ts("2025-01-20", 9), client_id="c2", channel="direct", logged_in=True, booking_step="search"),
    dict(time=ts("2025-01-20", 10), client_id="c2", channel="direct", logged_in=True, booking_step="confirmation",
         confirmation_no="B2", nights=3, payment=100.0, currency="EUR"),
    dict(time=ts("2025-02-05"), client_id="c3", channel="google", logged_in=False, booking_step="search"),
    dict(time=ts("2025-02-14"), client_id="c1", channel="email", logged_in=True, booking_step="confirmation",
         confirmation_no="B3", nights=1, payment=50.0, currency="usd"),
    dict(time=ts("2025-03-01"), client_id="c4", channel=None, logged_in=False, booking_step="search"),
]

SEED_CURRENCIES = [
    dict(code="EUR", exchange_rate_to_usd=1.1),
    dict(code="GBP", exchange_rate_to_usd=1.25),
]


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so every worker thread gets its own connection."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'funnel.db'}")
    init_db(engine)
    session_factory = create_session_factory(engine)
    with session_factory() as session:
        session.add_all([PageView(**event) for event in SEED_EVENTS])
        session.add_all([Currency(**currency) for currency in SEED_CURRENCIES])
        session.commit()
    yield engine
    engine.dispose()


@pytest.fixture
def data_source(engine):
    return SqlDataSource(create_session_factory(engine))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def admission():
    controller = AdmissionController(
        max_concurrent=10,
        thresholds=ScalingThresholds(green=6, yellow=8, orange=9),
        queue_timeout=5.0,
        poll_interval=0.01,
    )
    yield controller
    controller.stop_monitoring()


@pytest.fixture
def cache(store, admission):
    return ChunkedRangeCache(store, admission=admission, key_prefix="test")


@pytest.fixture
def facade(cache, data_source):
    facade = MetricsFacade(cache, data_source)
    yield facade
    facade.close()


@pytest.fixture
def warmer(facade):
    return CacheWarmer(facade, batch_size=2)
