"""
Smoke tests against a running instance.

Runs lightweight HTTP checks:
- GET /health
- POST /api/webhooks/whop, signed (expects 200)
- the same event again (expects 200, stored once)
- POST /api/webhooks/whop, unsigned (expects 401)

Uses WHOP_WEBHOOK_SECRET from the environment to sign the payload.
"""

from __future__ import annotations

import json
import os
import sys
import time
import uuid
from pathlib import Path

import httpx

# לאפשר הרצה מכל תיקיה (למשל `python scripts/smoke_webhooks.py`)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.domain.services.webhook_ingestor import compute_signature  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _payment_failed_payload() -> dict:
    return {
        "id": f"evt_smoke_{uuid.uuid4().hex[:12]}",
        "type": "payment_failed",
        "data": {
            "membership": {"id": "mem_smoke", "user_id": "user_smoke"},
            "payment": {"failure_reason": "card_declined", "amount": 0, "currency": "USD"},
        },
    }


def _signed_headers(body: bytes, secret: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Whop-Signature": f"sha256={compute_signature(body, secret)}",
        "X-Whop-Timestamp": str(int(time.time())),
        "X-Company-Id": os.environ.get("SMOKE_COMPANY_ID", "biz_smoke"),
    }


def _check_status(resp: httpx.Response, expected: int) -> None:
    if resp.status_code != expected:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} (expected {expected}) for "
            f"{resp.request.method} {resp.request.url}. Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="churn-recovery-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    secret = os.environ.get("WHOP_WEBHOOK_SECRET", "")
    if not secret:
        raise SystemExit("WHOP_WEBHOOK_SECRET must be set to sign smoke payloads")

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        health_url = f"{base_url}/health"
        logger.info("Checking health endpoint", extra_data={"url": health_url})
        _check_status(client.get(health_url), 200)

        webhook_url = f"{base_url}/api/webhooks/whop"
        payload = _payment_failed_payload()
        body = json.dumps(payload).encode()

        logger.info("Posting signed webhook", extra_data={"url": webhook_url, "event_id": payload["id"]})
        resp = client.post(webhook_url, content=body, headers=_signed_headers(body, secret))
        _check_status(resp, 200)

        logger.info("Re-posting the same event", extra_data={"event_id": payload["id"]})
        resp = client.post(webhook_url, content=body, headers=_signed_headers(body, secret))
        _check_status(resp, 200)

        logger.info("Posting unsigned webhook")
        resp = client.post(webhook_url, content=body, headers={"Content-Type": "application/json"})
        _check_status(resp, 401)

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
