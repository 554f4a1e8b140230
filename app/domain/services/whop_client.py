"""
Whop API Client — memberships, תמריצים והתראות (push / DM).

כל קריאה עוברת דרך ה-circuit breaker של "whop". תשובות 4xx הן שגיאה
קבועה של הבקשה ולא מכשילות את ה-breaker. הוספת ימי חינם מנסה שוב
עם exponential backoff + jitter (1s, 2s, 4s), בלי retry על 4xx.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_whop_circuit_breaker
from app.core.config import settings
from app.core.exceptions import CircuitBreakerOpenError, WhopAPIError
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class OperationResult:
    """תוצאה של פעולת API. כשלון מוחזר כערך, לא כחריגה."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    message_id: str | None = None
    attempts: int = 1


class WhopClient:
    """Thin async client for the Whop app API"""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._api_key = api_key if api_key is not None else settings.WHOP_APP_SECRET
        self._base_url = (base_url or settings.WHOP_API_BASE_URL).rstrip("/")
        self._timeout = timeout or settings.WHOP_API_TIMEOUT_SECONDS
        self._transport = transport
        self._circuit_breaker = circuit_breaker or get_whop_circuit_breaker()
        self._sleep = sleep

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Raises:
            WhopAPIError: סטטוס לא תקין או שגיאת רשת
            CircuitBreakerOpenError: ה-breaker פתוח
        """
        url = f"{self._base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        async def send() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                try:
                    response = await client.request(method, url, json=json, headers=headers)
                except httpx.RequestError as e:
                    raise WhopAPIError(
                        message=f"Whop API network error: {e}",
                        details={"endpoint": endpoint, "network_error": True},
                    ) from e
            if response.status_code >= 500:
                raise WhopAPIError.from_response(endpoint, response)
            return response

        response = await self._circuit_breaker.call(send)

        if response.status_code >= 400:
            logger.error(
                "Whop API request rejected",
                extra_data={
                    "endpoint": endpoint,
                    "status_code": response.status_code,
                    "body": response.text[:200],
                }
            )
            raise WhopAPIError.from_response(endpoint, response)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise WhopAPIError.from_response(
                endpoint, response, message="Whop API returned a non-JSON body"
            ) from e
        return data if isinstance(data, dict) else {"data": data}

    # ── memberships ──

    async def get_membership(self, membership_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/memberships/{membership_id}")

    async def get_manage_url(self, membership_id: str) -> OperationResult:
        """URL לעדכון אמצעי תשלום. כשלון = OperationResult עם error."""
        try:
            membership = await self.get_membership(membership_id)
        except (WhopAPIError, CircuitBreakerOpenError) as e:
            logger.warning(
                "Failed to fetch membership",
                extra_data={"membership_id": membership_id, "error": e.message}
            )
            return OperationResult(success=False, error=e.message)

        manage_url = membership.get("manage_url")
        if not manage_url:
            return OperationResult(success=False, data=membership, error="Membership has no manage_url")
        return OperationResult(success=True, data={"url": manage_url})

    async def add_free_days(
        self,
        membership_id: str,
        days: int,
        max_retries: int | None = None,
    ) -> OperationResult:
        max_retries = max_retries or settings.MEMBERSHIP_API_MAX_RETRIES
        last_error = ""

        for attempt in range(1, max_retries + 1):
            try:
                data = await self._request(
                    "POST",
                    f"/memberships/{membership_id}/add_free_days",
                    json={"days": days},
                )
                logger.info(
                    "Free days added",
                    extra_data={"membership_id": membership_id, "days": days, "attempt": attempt}
                )
                return OperationResult(success=True, data=data, attempts=attempt)
            except (WhopAPIError, CircuitBreakerOpenError) as e:
                last_error = e.message
                logger.warning(
                    f"Failed to add free days (attempt {attempt}/{max_retries})",
                    extra_data={
                        "membership_id": membership_id,
                        "days": days,
                        "error": last_error,
                    }
                )
                if isinstance(e, WhopAPIError) and e.is_client_error:
                    return OperationResult(success=False, error=last_error, attempts=attempt)

            if attempt < max_retries:
                delay = (2 ** (attempt - 1)) + random.random()
                await self._sleep(delay)

        logger.error(
            "Failed to add free days after all retries",
            extra_data={"membership_id": membership_id, "days": days, "error": last_error}
        )
        return OperationResult(success=False, error=last_error, attempts=max_retries)

    async def terminate_membership(self, membership_id: str) -> OperationResult:
        try:
            data = await self._request("POST", f"/memberships/{membership_id}/terminate")
        except (WhopAPIError, CircuitBreakerOpenError) as e:
            logger.error(
                "Failed to terminate membership",
                extra_data={"membership_id": membership_id, "error": e.message}
            )
            return OperationResult(success=False, error=e.message)
        logger.info("Membership terminated", extra_data={"membership_id": membership_id})
        return OperationResult(success=True, data=data)

    # ── notifications ──

    async def send_push(
        self,
        user_id: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> OperationResult:
        try:
            response = await self._request(
                "POST",
                "/notifications/send_push_notification",
                json={
                    "user_id": user_id,
                    "title": title,
                    "content": body,
                    "data": data or {},
                },
            )
        except (WhopAPIError, CircuitBreakerOpenError) as e:
            return OperationResult(success=False, error=e.message)

        message_id = response.get("message_id") or response.get("id")
        if not message_id:
            return OperationResult(success=False, data=response, error="Push response missing message_id")
        return OperationResult(success=True, data=response, message_id=str(message_id))

    async def send_direct_message(self, user_id: str, message: str) -> OperationResult:
        try:
            response = await self._request(
                "POST",
                "/messages",
                json={
                    "to_user_id": user_id,
                    "from_user_id": settings.WHOP_AGENT_USER_ID or None,
                    "message": message,
                },
            )
        except (WhopAPIError, CircuitBreakerOpenError) as e:
            return OperationResult(success=False, error=e.message)

        message_id = response.get("message_id") or response.get("id")
        if not message_id:
            return OperationResult(success=False, data=response, error="DM response missing message_id")
        return OperationResult(success=True, data=response, message_id=str(message_id))
