"""
בדיקות יחידה ל-Health Check endpoints — liveness ו-readiness.
"""
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.job import Job, JobStatus, JobType
from app.domain.services.health_service import check_readiness


@pytest.fixture
def patch_health_db(async_engine):
    """בדיקת ה-DB של readiness רצה מול מנוע הבדיקות"""
    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    with patch("app.domain.services.health_service.AsyncSessionLocal", session_maker):
        yield


# ============================================================================
# Liveness Probe — GET /health
# ============================================================================


class TestLivenessProbe:

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        """liveness probe מחזיר status=healthy תמיד."""
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


# ============================================================================
# Readiness Probe — GET /health/ready
# ============================================================================


class TestReadinessProbe:

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient, patch_health_db) -> None:
        response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "db": "ok",
            "redis": "ok",
            "dead_letter_jobs": 0,
        }

    @pytest.mark.unit
    async def test_dead_letter_reported_without_degrading(
        self, test_client: httpx.AsyncClient, patch_health_db, db_session
    ) -> None:
        db_session.add(Job(job_type=JobType.WEBHOOK_PROCESSING, payload={}, status=JobStatus.FAILED))
        await db_session.commit()

        response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["dead_letter_jobs"] == 1

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        """כש-DB לא זמין — status=degraded ו-HTTP 503."""
        with patch(
            "app.domain.services.health_service._check_db",
            new_callable=AsyncMock,
            return_value=("error: db_unavailable", None),
        ):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["db"] == "error: db_unavailable"
        assert data["dead_letter_jobs"] is None

    @pytest.mark.unit
    async def test_readiness_redis_down(self, test_client: httpx.AsyncClient, patch_health_db) -> None:
        async def broken_redis():
            raise ConnectionError("redis://:secret@10.0.0.5:6379 refused")

        with patch("app.domain.services.health_service.get_redis", broken_redis):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["redis"] == "error: redis_unavailable"
        # פרטי תשתית לא דולפים לתשובה
        assert "10.0.0.5" not in response.text


class TestCheckReadiness:

    @pytest.mark.unit
    async def test_db_exception_is_contained(self) -> None:
        def broken_session():
            raise OSError("connection refused")

        with patch("app.domain.services.health_service.AsyncSessionLocal", broken_session):
            result = await check_readiness()

        assert result["db"] == "error: db_unavailable"
        assert result["status"] == "degraded"
