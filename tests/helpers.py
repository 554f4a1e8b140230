"""
עזרים משותפים לבדיקות: Whop client מזויף, payloads בצורת Whop, חתימה.
"""
import json
import time
from typing import Any

from app.domain.services.webhook_ingestor import compute_signature
from app.domain.services.whop_client import OperationResult

TEST_WEBHOOK_SECRET = "test-webhook-secret"
TEST_ADMIN_KEY = "test-admin-key"
TEST_COMPANY_ID = "biz_test"


class FakeWhopClient:
    """
    Whop client שלא יוצא לרשת. כל קריאה נרשמת ב-calls;
    הצלחה/כשלון של כל פעולה ניתנים לשליטה.
    """

    def __init__(
        self,
        *,
        manage_url: str | None = "https://whop.com/orders/manage",
        push_ok: bool = True,
        dm_ok: bool = True,
        free_days_ok: bool = True,
        terminate_ok: bool = True,
    ) -> None:
        self.manage_url = manage_url
        self.push_ok = push_ok
        self.dm_ok = dm_ok
        self.free_days_ok = free_days_ok
        self.terminate_ok = terminate_ok
        self.calls: list[tuple[str, Any]] = []

    def calls_to(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]

    async def get_manage_url(self, membership_id: str) -> OperationResult:
        self.calls.append(("get_manage_url", membership_id))
        if not self.manage_url:
            return OperationResult(success=False, error="Membership has no manage_url")
        return OperationResult(success=True, data={"url": self.manage_url})

    async def send_push(self, user_id: str, title: str, body: str, data: dict | None = None) -> OperationResult:
        self.calls.append(("send_push", {"user_id": user_id, "title": title, "data": data}))
        if not self.push_ok:
            return OperationResult(success=False, error="push failed")
        return OperationResult(success=True, message_id=f"push_{len(self.calls)}")

    async def send_direct_message(self, user_id: str, message: str) -> OperationResult:
        self.calls.append(("send_direct_message", {"user_id": user_id, "message": message}))
        if not self.dm_ok:
            return OperationResult(success=False, error="dm failed")
        return OperationResult(success=True, message_id=f"dm_{len(self.calls)}")

    async def add_free_days(self, membership_id: str, days: int, max_retries: int | None = None) -> OperationResult:
        self.calls.append(("add_free_days", {"membership_id": membership_id, "days": days}))
        if not self.free_days_ok:
            return OperationResult(success=False, error="Whop API error: 503", attempts=3)
        return OperationResult(success=True, data={"id": membership_id})

    async def terminate_membership(self, membership_id: str) -> OperationResult:
        self.calls.append(("terminate_membership", membership_id))
        if not self.terminate_ok:
            return OperationResult(success=False, error="Whop API error: 404")
        return OperationResult(success=True)


def make_payload(
    event_id: str = "evt_1",
    event_type: str = "payment_failed",
    membership_id: str = "mem_test_1",
    user_id: str = "user_test_1",
    created_at: str | None = None,
    **data: Any,
) -> dict[str, Any]:
    """payload בצורת Whop: data.membership (ו-data.payment אם הועבר) מקוננים"""
    body: dict[str, Any] = {
        "id": event_id,
        "type": event_type,
        "data": {
            "membership": {"id": membership_id, "user_id": user_id},
            **data,
        },
    }
    if created_at is not None:
        body["created_at"] = created_at
    return body


def encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()


def signed_headers(body: bytes, *, timestamp: int | None = None, fmt: str = "sha256") -> dict[str, str]:
    """headers חתומים עם הסוד של הבדיקות"""
    digest = compute_signature(body, TEST_WEBHOOK_SECRET)
    signature = {"sha256": f"sha256={digest}", "v1": f"v1,{digest}", "hex": digest}[fmt]
    return {
        "x-whop-signature": signature,
        "x-whop-timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "content-type": "application/json",
    }
