"""
Circuit Breaker for the Whop API

Stops hammering the membership/notification API while it is failing so
that reminder batches degrade quickly instead of waiting on timeouts.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5      # כשלונות רצופים עד פתיחה
    success_threshold: int = 2      # הצלחות ב-half-open עד סגירה
    timeout_seconds: float = 30.0   # זמן המתנה לפני ניסיון half-open
    half_open_max_calls: int = 3


@dataclass
class _BreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    opened_at: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """
    Per-service circuit breaker (singleton per service name).

    threading.Lock rather than asyncio.Lock: Celery tasks run each
    coroutine on a fresh event loop.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = _BreakerState()
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        with cls._instances_lock:
            if service_name not in cls._instances:
                cls._instances[service_name] = cls(service_name, config)
            return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Drop every registered breaker (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        old_state = self._state.state
        self._state.state = new_state
        self._state.success_count = 0
        self._state.half_open_calls = 0
        if new_state == CircuitState.OPEN:
            self._state.opened_at = time.monotonic()
        if new_state == CircuitState.CLOSED:
            self._state.failure_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            }
        )

    def retry_after(self) -> float:
        """Seconds until an open breaker lets a probe through"""
        if self._state.state != CircuitState.OPEN:
            return 0.0
        elapsed = time.monotonic() - self._state.opened_at
        return max(0.0, self.config.timeout_seconds - elapsed)

    def allow_request(self) -> bool:
        with self._lock:
            if self._state.state == CircuitState.OPEN:
                if self.retry_after() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN)

            if self._state.state == CircuitState.HALF_OPEN:
                if self._state.half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._state.half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._state.failure_count = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._state.failure_count += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                }
            )
            if (
                self._state.state == CircuitState.HALF_OPEN
                or self._state.failure_count >= self.config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` under breaker protection.

        Raises:
            CircuitBreakerOpenError: the breaker is open
        """
        if not self.allow_request():
            raise CircuitBreakerOpenError(self.service_name, self.retry_after())

        try:
            result = await func()
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result


def get_whop_circuit_breaker() -> CircuitBreaker:
    """Breaker shared by every Whop API call"""
    return CircuitBreaker.get_instance(
        "whop",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30.0
        )
    )
