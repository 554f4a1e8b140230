"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- HTTP test client with DB override
- Fake Redis and a fake Whop client
- Test data factories (cases, events)
"""
# סודות לפני ייבוא app — הולידטור דורש WHOP_WEBHOOK_SECRET כש-DEBUG=False
import os
os.environ.setdefault("WHOP_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

from datetime import datetime
from typing import Any, AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.time_utils import utc_now
from app.db.database import Base, get_db
from app.db.models.event import Event
from app.db.models.recovery_case import CaseStatus, RecoveryCase, generate_case_id
from app.main import app
from tests.helpers import TEST_ADMIN_KEY, TEST_COMPANY_ID, TEST_WEBHOOK_SECRET, FakeWhopClient


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_KEY, "X-Company-Id": TEST_COMPANY_ID}


# ============================================================================
# Process-level state reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """ה-cache של ההגדרות משותף לתהליך — כל בדיקה מתחילה ריק"""
    from app.domain.services.settings_service import get_settings_cache
    get_settings_cache().invalidate()
    yield
    get_settings_cache().invalidate()


@pytest.fixture(autouse=True)
def test_secrets():
    with patch.object(settings, "WHOP_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_KEY), \
         patch.object(settings, "WHOP_APP_ID", TEST_COMPANY_ID):
        yield


class FakeRedis:
    """תחליף ל-Redis לבדיקות — in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.eval_calls: list[tuple] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def eval(self, script: str, numkeys: int, *keys_and_args: str) -> int:
        """תומך רק בסקריפט compare-and-delete של שחרור נעילה; רץ כצעד אחד"""
        self.eval_calls.append(keys_and_args)
        key, token = keys_and_args[0], keys_and_args[numkeys]
        if self._store.get(key) != token:
            return 0
        await self.delete(key)
        return 1

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Fake Whop client
# ============================================================================

@pytest.fixture
def fake_whop() -> FakeWhopClient:
    return FakeWhopClient()


@pytest.fixture
def patch_whop_client(fake_whop):
    """שירותים שיוצרים WhopClient() בעצמם (ה-API, ה-job handlers) מקבלים את ה-fake"""
    targets = [
        "app.domain.services.case_service.WhopClient",
        "app.domain.services.nudge_service.WhopClient",
        "app.domain.services.incentive_service.WhopClient",
        "app.domain.services.reminder_scheduler.WhopClient",
    ]
    patchers = [patch(target, return_value=fake_whop) for target in targets]
    for p in patchers:
        p.start()
    yield fake_whop
    for p in patchers:
        p.stop()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def case_factory(db_session: AsyncSession):
    """Factory for creating recovery cases"""
    async def _create_case(
        membership_id: str = "mem_test_1",
        company_id: str = TEST_COMPANY_ID,
        user_id: str = "user_test_1",
        status: CaseStatus = CaseStatus.OPEN,
        first_failure_at: datetime | None = None,
        attempts: int = 0,
        incentive_days: int = 0,
        failure_reason: str | None = "card_declined",
    ) -> RecoveryCase:
        recovery_case = RecoveryCase(
            id=generate_case_id(),
            company_id=company_id,
            membership_id=membership_id,
            user_id=user_id,
            status=status,
            first_failure_at=first_failure_at or utc_now(),
            attempts=attempts,
            incentive_days=incentive_days,
            failure_reason=failure_reason,
        )
        db_session.add(recovery_case)
        await db_session.commit()
        await db_session.refresh(recovery_case)
        return recovery_case

    return _create_case


@pytest.fixture
def event_factory(db_session: AsyncSession):
    """Factory for storing webhook events directly (without the HTTP layer)"""
    async def _create_event(
        payload: dict[str, Any],
        company_id: str | None = TEST_COMPANY_ID,
        occurred_at: datetime | None = None,
        received_at: datetime | None = None,
        processed: bool = False,
    ) -> Event:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        membership = data.get("membership") or {}
        event = Event(
            whop_event_id=payload["id"],
            type=payload["type"],
            membership_id=membership.get("id") or data.get("membership_id") or "unknown",
            company_id=company_id,
            payload=payload,
            occurred_at=occurred_at or utc_now(),
            received_at=received_at or utc_now(),
            processed=processed,
        )
        db_session.add(event)
        await db_session.commit()
        await db_session.refresh(event)
        return event

    return _create_event


@pytest.fixture
def configure_company(db_session: AsyncSession):
    """שמירת הגדרות לחברת הבדיקות (ברירת מחדל: push ו-DM פעילים, בלי תמריץ)"""
    from app.domain.services.settings_service import SettingsService

    async def _configure(company_id: str = TEST_COMPANY_ID, **overrides: Any):
        values = {
            "enable_push": True,
            "enable_dm": True,
            "incentive_days": 0,
            "reminder_offsets_days": [0, 2, 4],
        }
        values.update(overrides)
        return await SettingsService(db_session).upsert(company_id, **values)

    return _configure
