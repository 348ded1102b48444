# tests/conftest.py
"""
Shared fixtures.

Every test gets a fresh in-memory SQLite database, an in-memory cache on a
controllable clock, and an analytics service writing to an in-memory sink.
"""

import os

os.environ.setdefault("CI", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("MOYASAR_MOCK", "true")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ludus.core.config import settings
from ludus.database import Base, get_db
from ludus.integrations.moyasar_client import FakeMoyasarClient, MoyasarPaymentGateway
import ludus.models  # noqa: F401
from ludus.models.activity import Activity, ActivityStatus
from ludus.services.activity_service import ActivityService
from ludus.services.analytics_service import AnalyticsService, InMemoryEventSink
from ludus.services.booking_service import BookingService
from ludus.services.cache_service import CacheService

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> Iterator[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def cache(fake_clock: FakeClock) -> CacheService:
    return CacheService(clock=fake_clock)


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def analytics(event_sink: InMemoryEventSink) -> AnalyticsService:
    config = settings.model_copy(update={"analytics_enabled": True})
    return AnalyticsService([event_sink], config=config)


@pytest.fixture
def moyasar_client() -> FakeMoyasarClient:
    return FakeMoyasarClient()


@pytest.fixture
def payment_gateway(moyasar_client: FakeMoyasarClient) -> MoyasarPaymentGateway:
    return MoyasarPaymentGateway(moyasar_client)


@pytest.fixture
def make_activity(db: Session) -> Callable[..., Activity]:
    def _make(
        vendor_id: str = "vendor-1",
        *,
        approved: bool = True,
        capacity: int = 10,
        base_price: str = "150.00",
        **overrides: Any,
    ) -> Activity:
        activity = Activity(
            vendor_id=vendor_id,
            title=overrides.pop("title", "Desert kayaking"),
            category=overrides.pop("category", "outdoors"),
            base_price=Decimal(base_price),
            currency="SAR",
            capacity=capacity,
            is_active=True,
            moderation_status=(
                ActivityStatus.APPROVED.value if approved else ActivityStatus.PENDING.value
            ),
            **overrides,
        )
        db.add(activity)
        db.commit()
        return activity

    return _make


@pytest.fixture
def booking_service(
    db: Session,
    cache: CacheService,
    analytics: AnalyticsService,
    payment_gateway: MoyasarPaymentGateway,
) -> BookingService:
    return BookingService(db, cache, analytics, payment_gateway, clock=lambda: NOW)


@pytest.fixture
def activity_service(
    db: Session, cache: CacheService, analytics: AnalyticsService
) -> ActivityService:
    return ActivityService(db, cache, analytics, clock=lambda: NOW)


@pytest.fixture
def future_date() -> datetime:
    return NOW + timedelta(days=5)


@pytest.fixture
def app(
    db: Session,
    cache: CacheService,
    analytics: AnalyticsService,
    payment_gateway: MoyasarPaymentGateway,
):
    """Application with state wired to the test doubles; the lifespan is not run."""
    from ludus.main import create_app

    application = create_app()
    application.state.cache_service = cache
    application.state.analytics_service = analytics
    application.state.payment_gateway = payment_gateway

    def _get_test_db() -> Iterator[Session]:
        yield db

    application.dependency_overrides[get_db] = _get_test_db
    return application


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
