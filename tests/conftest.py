import asyncio
import sys
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.domain.bookings import db_models as booking_db_models
from app.domain.bookings.repository import BookingRepository
from app.domain.bookings.service import BookingLifecycleOrchestrator
from app.domain.identity import AuthContext, UserRole
from app.domain.payments import db_models as payment_db_models  # noqa: F401
from app.domain.payments.service import LedgerGateway, PaymentService
from app.infra.auth import create_access_token
from app.infra.db import Base, get_db_session
from app.infra.locks import InMemoryCalendarLock
from app.infra.security import InMemoryRateLimiter
from app.main import app
from app.settings import settings

MASTER_ID = "master-1"
OTHER_MASTER_ID = "master-2"
CLIENT_ID = "client-1"
OTHER_CLIENT_ID = "client-2"
ADMIN_ID = "admin-1"
SERVICE_ID = "service-manual"
AUTO_SERVICE_ID = "service-auto"
INACTIVE_SERVICE_ID = "service-inactive"
OTHER_SERVICE_ID = "service-other"
BASE_PRICE = Decimal("1000.00")
WORK_START = time(hour=8)
WORK_END = time(hour=22)

# 2026-03-02 04:00 in Asia/Bishkek (UTC+6); Monday.
NOW = datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc)

CLIENT = AuthContext(user_id=CLIENT_ID, role=UserRole.CLIENT)
OTHER_CLIENT = AuthContext(user_id=OTHER_CLIENT_ID, role=UserRole.CLIENT)
MASTER = AuthContext(user_id=MASTER_ID, role=UserRole.MASTER)
ADMIN = AuthContext(user_id=ADMIN_ID, role=UserRole.ADMIN)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def local_dt(day: int, hour: int, minute: int = 0) -> datetime:
    """Wall-clock time in the booking timezone on 2026-03-<day>, as UTC."""
    return datetime(2026, 3, day, hour, minute, tzinfo=settings.local_tz).astimezone(timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@dataclass
class RecordingNotifier:
    sent: list[tuple[str, str, str]] = field(default_factory=list)
    fail: bool = False

    async def notify(self, user_id, booking, notification_type) -> bool:
        self.sent.append((user_id, booking.booking_id, notification_type.value))
        return not self.fail


class FailingGateway:
    async def charge(self, **kwargs) -> str:
        raise RuntimeError("card_declined")

    async def refund(self, **kwargs) -> str:
        raise RuntimeError("refund_rejected")


async def _seed(conn) -> None:
    await conn.execute(
        sa.insert(booking_db_models.Master),
        [
            {"master_id": MASTER_ID, "display_name": "Aibek", "rating": Decimal("4.80"), "response_time_minutes": 10},
            {"master_id": OTHER_MASTER_ID, "display_name": "Nurlan", "rating": None, "response_time_minutes": None},
        ],
    )
    await conn.execute(
        sa.insert(booking_db_models.MasterService),
        [
            {
                "service_id": SERVICE_ID,
                "master_id": MASTER_ID,
                "name": "Haircut",
                "category": "beauty",
                "base_price": BASE_PRICE,
                "instant_booking_enabled": True,
                "auto_confirm": False,
                "is_active": True,
            },
            {
                "service_id": AUTO_SERVICE_ID,
                "master_id": MASTER_ID,
                "name": "Beard trim",
                "category": "beauty",
                "base_price": BASE_PRICE,
                "instant_booking_enabled": True,
                "auto_confirm": True,
                "is_active": True,
            },
            {
                "service_id": INACTIVE_SERVICE_ID,
                "master_id": MASTER_ID,
                "name": "Coloring",
                "category": None,
                "base_price": BASE_PRICE,
                "instant_booking_enabled": True,
                "auto_confirm": False,
                "is_active": False,
            },
            {
                "service_id": OTHER_SERVICE_ID,
                "master_id": OTHER_MASTER_ID,
                "name": "Massage",
                "category": "wellness",
                "base_price": Decimal("500.00"),
                "instant_booking_enabled": True,
                "auto_confirm": True,
                "is_active": True,
            },
        ],
    )
    await conn.execute(
        sa.insert(booking_db_models.MasterWorkingHours),
        [
            {
                "master_id": MASTER_ID,
                "day_of_week": day,
                "start_time": WORK_START,
                "end_time": WORK_END,
                "is_available": True,
            }
            for day in range(7)
        ],
    )


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {
        name: getattr(settings, name)
        for name in (
            "testing",
            "app_env",
            "auto_confirm_enabled",
            "pending_expiry_minutes",
            "booking_rate_limit_per_minute",
            "metrics_enabled",
            "metrics_token",
            "auth_secret_key",
            "payment_mode",
        )
    }
    settings.testing = True
    settings.app_env = "dev"
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())
            await _seed(conn)

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def clock():
    return FakeClock(NOW)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def calendar_lock():
    return InMemoryCalendarLock(timeout_seconds=5)


@pytest.fixture()
def build_orchestrator(clock, notifier, calendar_lock):
    def _build(session, gateway=None) -> BookingLifecycleOrchestrator:
        return BookingLifecycleOrchestrator(
            BookingRepository(session, calendar_lock),
            PaymentService(session, gateway or LedgerGateway(), "kgs"),
            notifier,
            app_settings=settings,
            now=clock,
        )

    return _build


@pytest.fixture()
def auth_headers():
    def _headers(user_id: str = CLIENT_ID, role: str = "client") -> dict[str, str]:
        token = create_access_token(user_id, role, settings.auth_token_ttl_minutes, settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def client(async_session_maker, clock):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    app.state.clock = clock
    app.state.calendar_lock = InMemoryCalendarLock(timeout_seconds=5)
    app.state.rate_limiter = InMemoryRateLimiter(settings.booking_rate_limit_per_minute)
    app.state.notifier = None
    app.state.payment_gateway = None
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.clock = None
    app.state.stripe_client = None
