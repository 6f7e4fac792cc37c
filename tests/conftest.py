from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import dependencies
from app.core.locks import KeyedLocks
from app.database import get_db
from app.db.base import Base
from app.main import app
from app.models import market  # noqa: F401
from app.services.cache import TTLCache
from app.services.contribution_service import ContributionStore
from app.services.market_service import MarketService
from app.services.market_sources import FixtureSourceAdapter, MarketDataCache


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=datetime(2024, 7, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter():
    return FixtureSourceAdapter()


@pytest.fixture
def snapshot_cache(clock):
    return TTLCache(timedelta(hours=24), clock=clock, name="snapshots")


@pytest.fixture
def snapshots(adapter, snapshot_cache):
    return MarketDataCache(adapter, snapshot_cache)


@pytest.fixture
def analysis_cache(clock):
    return TTLCache(timedelta(hours=4), clock=clock, name="analysis")


@pytest.fixture
def store(db, clock):
    return ContributionStore(db, locks=KeyedLocks(), clock=clock)


@pytest.fixture
def market(db, snapshots, analysis_cache, store):
    return MarketService(db, snapshots, analysis_cache, contributions=store)


@pytest.fixture
def contribute(store):
    """Shortcut for adding a contribution with sensible defaults."""

    def _contribute(postcode="M14 5TH", property_type="flat", bedrooms=2, monthly_rent=850, **extra):
        record, _ = store.add_contribution(
            postcode=postcode,
            property_type=property_type,
            bedrooms=bedrooms,
            monthly_rent=monthly_rent,
            **extra,
        )
        return record

    return _contribute


@pytest.fixture
def client(db, adapter, clock):
    def _get_db():
        yield db

    snapshot_cache = TTLCache(timedelta(hours=24), clock=clock, name="snapshots")
    analysis_cache = TTLCache(timedelta(hours=4), clock=clock, name="analysis")
    match_cache = TTLCache(timedelta(seconds=300), clock=clock, max_entries=100, name="matches")
    area_locks, user_locks = KeyedLocks(), KeyedLocks()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[dependencies.get_source_adapter] = lambda: adapter
    app.dependency_overrides[dependencies.get_snapshot_cache] = lambda: snapshot_cache
    app.dependency_overrides[dependencies.get_analysis_cache] = lambda: analysis_cache
    app.dependency_overrides[dependencies.get_match_cache] = lambda: match_cache
    app.dependency_overrides[dependencies.get_area_locks] = lambda: area_locks
    app.dependency_overrides[dependencies.get_user_locks] = lambda: user_locks

    yield TestClient(app)

    app.dependency_overrides.clear()
