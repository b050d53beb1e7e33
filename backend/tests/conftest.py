"""
Pytest configuration and fixtures for the backend tests.
"""
import os
import tempfile

# Settings are read at import time, so the environment has to be in place first
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OTP_HASH_ROUNDS", "4")
os.environ.setdefault("PIN_HASH_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="bhishak-auth-logs-"))

from datetime import datetime, timedelta
from typing import AsyncGenerator, List, Tuple

import pytest
from faker import Faker
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from main import app
from api.dependencies import get_otp_service
from db.base import initialize_database
from db.session import get_db_session
from services.otp_service import OtpPolicy, OtpService
from utils.sms import SmsDeliveryAdapter

# Initialize Faker for test data generation
fake = Faker("en_IN")

T0 = datetime(2026, 1, 15, 10, 0, 0)


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSmsAdapter(SmsDeliveryAdapter):
    """Keeps every code it is asked to deliver."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: List[Tuple[str, str]] = []

    async def send_otp(self, phone: str, otp_code: str) -> bool:
        self.sent.append((phone, otp_code))
        return self.succeed

    def last_code(self, phone: str) -> str:
        return [code for p, code in self.sent if p == phone][-1]


@pytest.fixture
async def db_session(tmp_path) -> AsyncGenerator[AsyncSession, None]:
    """A fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", future=True)
    await initialize_database(bind=engine)
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
        await session.rollback()
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sms_adapter() -> RecordingSmsAdapter:
    return RecordingSmsAdapter()


@pytest.fixture
def otp_policy() -> OtpPolicy:
    return OtpPolicy(hash_rounds=4)


@pytest.fixture
def otp_service(sms_adapter, otp_policy, clock) -> OtpService:
    return OtpService(sms_adapter=sms_adapter, policy=otp_policy, clock=clock)


@pytest.fixture
async def async_client(db_session: AsyncSession, otp_service: OtpService) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database and OTP service wired in."""
    def override_get_db():
        return db_session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_otp_service] = lambda: otp_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def phone() -> str:
    return "9876543210"


@pytest.fixture
def signup_data(phone):
    return {
        "phone": phone,
        "fullName": fake.name(),
        "age": fake.pyint(min_value=18, max_value=90),
        "gender": "FEMALE",
        "pin": "482913",
    }
