"""
בדיקות ל-endpoint של webhooks — POST /api/webhooks/whop

מכסה:
- 200 עם eventId ויצירת job עיבוד
- משלוח חוזר: אירוע אחד ו-job אחד
- 401 על חתימה חסרה/שגויה/timestamp ישן
- 400 על JSON לא תקין או שדות חסרים
- 429 עם Retry-After
- כשלון פנימי אחרי קבלה מוחזר כ-200
"""
import time
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.db.models.event import Event
from app.db.models.job import Job, JobStatus, JobType
from app.domain.services.webhook_ingestor import WebhookIngestor
from tests.helpers import TEST_COMPANY_ID, encode, make_payload, signed_headers

WEBHOOK_URL = "/api/webhooks/whop"


async def _count(db_session, model) -> int:
    return await db_session.scalar(select(func.count()).select_from(model))


class TestWebhookAccepted:

    @pytest.mark.unit
    @pytest.mark.parametrize("fmt", ["sha256", "v1", "hex"])
    async def test_valid_webhook_is_stored_and_enqueued(self, test_client, db_session, fmt: str) -> None:
        body = encode(make_payload(event_id="evt_ok"))
        response = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body, fmt=fmt))

        assert response.status_code == 200
        assert response.json() == {"success": True, "eventId": "evt_ok"}

        event = (await db_session.execute(select(Event))).scalar_one()
        assert event.whop_event_id == "evt_ok"
        assert event.type == "payment_failed"
        assert event.membership_id == "mem_test_1"
        assert event.company_id == TEST_COMPANY_ID
        assert event.processed is False

        job = (await db_session.execute(select(Job))).scalar_one()
        assert job.job_type == JobType.WEBHOOK_PROCESSING
        assert job.status == JobStatus.QUEUED
        assert job.singleton_key == "evt_ok"
        assert job.payload["event_id"] == "evt_ok"

    @pytest.mark.unit
    async def test_duplicate_delivery_is_idempotent(self, test_client, db_session) -> None:
        body = encode(make_payload(event_id="evt_dup"))
        first = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))
        second = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert first.status_code == second.status_code == 200
        assert second.json() == {"success": True, "eventId": "evt_dup"}
        assert await _count(db_session, Event) == 1
        assert await _count(db_session, Job) == 1

    @pytest.mark.unit
    async def test_company_header_overrides_default(self, test_client, db_session) -> None:
        body = encode(make_payload(event_id="evt_company"))
        headers = {**signed_headers(body), "x-company-id": "biz_other"}
        response = await test_client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        event = (await db_session.execute(select(Event))).scalar_one()
        assert event.company_id == "biz_other"

    @pytest.mark.unit
    async def test_created_at_is_stored_as_occurred_at(self, test_client, db_session) -> None:
        body = encode(make_payload(event_id="evt_time", created_at="2024-05-01T08:30:00Z"))
        await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        event = (await db_session.execute(select(Event))).scalar_one()
        assert event.occurred_at.isoformat() == "2024-05-01T08:30:00"


class TestWebhookRejected:

    @pytest.mark.unit
    async def test_missing_signature(self, test_client, db_session) -> None:
        body = encode(make_payload())
        response = await test_client.post(
            WEBHOOK_URL,
            content=body,
            headers={"x-whop-timestamp": str(int(time.time())), "content-type": "application/json"},
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Missing signature"}
        assert await _count(db_session, Event) == 0

    @pytest.mark.unit
    async def test_wrong_signature(self, test_client, db_session) -> None:
        body = encode(make_payload())
        headers = signed_headers(body)
        headers["x-whop-signature"] = "sha256=" + "0" * 64
        response = await test_client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert await _count(db_session, Event) == 0

    @pytest.mark.unit
    async def test_unsupported_scheme(self, test_client) -> None:
        body = encode(make_payload())
        headers = signed_headers(body)
        headers["x-whop-signature"] = headers["x-whop-signature"].replace("sha256=", "sha512=")
        response = await test_client.post(WEBHOOK_URL, content=body, headers=headers)
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_stale_timestamp(self, test_client) -> None:
        body = encode(make_payload())
        headers = signed_headers(body, timestamp=int(time.time()) - 3600)
        response = await test_client.post(WEBHOOK_URL, content=body, headers=headers)
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_missing_timestamp_in_production(self, test_client) -> None:
        body = encode(make_payload())
        headers = signed_headers(body)
        del headers["x-whop-timestamp"]
        with patch.object(settings, "DEBUG", False):
            response = await test_client.post(WEBHOOK_URL, content=body, headers=headers)
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_invalid_json(self, test_client, db_session) -> None:
        body = b"{this is not json"
        response = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON"}
        assert await _count(db_session, Event) == 0

    @pytest.mark.unit
    async def test_missing_required_fields(self, test_client) -> None:
        body = encode({"data": {"membership_id": "mem_1"}})
        response = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields"}


class TestWebhookRateLimit:

    @pytest.mark.unit
    async def test_global_limit_returns_429(self, test_client, db_session) -> None:
        with patch.object(settings, "WEBHOOK_RATE_LIMIT_MAX_REQUESTS", 1):
            body = encode(make_payload(event_id="evt_rl_1"))
            ok = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))
            body = encode(make_payload(event_id="evt_rl_2"))
            limited = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert ok.status_code == 200
        assert limited.status_code == 429
        data = limited.json()
        assert data["error"] == "Rate limit exceeded"
        assert data["retryAfter"] >= 1
        assert "resetAt" in data
        assert int(limited.headers["Retry-After"]) == data["retryAfter"]
        # הבקשה שנחסמה לא נשמרה
        assert await _count(db_session, Event) == 1

    @pytest.mark.unit
    async def test_rate_limit_checked_before_signature(self, test_client) -> None:
        with patch.object(settings, "WEBHOOK_RATE_LIMIT_MAX_REQUESTS", 0):
            response = await test_client.post(WEBHOOK_URL, content=b"{}")
        assert response.status_code == 429


class TestWebhookInternalFailures:

    @pytest.mark.unit
    async def test_enqueue_failure_still_acknowledges(self, test_client, db_session) -> None:
        """האירוע נשמר גם כשיצירת ה-job נכשלה; ה-sweep יאסוף אותו"""
        body = encode(make_payload(event_id="evt_orphan"))
        with patch.object(
            WebhookIngestor, "hand_off", new_callable=AsyncMock, side_effect=RuntimeError("queue down")
        ):
            response = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json()["eventId"] == "evt_orphan"
        assert await _count(db_session, Event) == 1
        assert await _count(db_session, Job) == 0

    @pytest.mark.unit
    async def test_unexpected_error_returns_200_with_flag(self, test_client) -> None:
        body = encode(make_payload(event_id="evt_boom"))
        with patch.object(
            WebhookIngestor, "persist", new_callable=AsyncMock, side_effect=RuntimeError("db exploded")
        ):
            response = await test_client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {"error": "Internal processing error", "eventLogged": True}
