"""Circuit breaker guarding upstream endpoints."""
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from whalewatch.api.errors import CircuitOpenError, UpstreamError

logger = structlog.get_logger()


class CircuitBreaker:
    """Closed/open call-admission guard for one upstream endpoint.

    Opens after `threshold` consecutive failures and stays open for
    `timeout` seconds. The first call after the timeout is admitted and the
    breaker closes; any success closes it as well.
    """

    def __init__(
        self,
        endpoint: str,
        threshold: int = 5,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoint = endpoint
        self.threshold = threshold
        self.timeout = timeout
        self._clock = clock

        self.consecutive_failures = 0
        self.is_open = False
        self.open_until: Optional[float] = None

        # Informational only
        self.total_calls = 0
        self.successful_calls = 0
        self.last_error: Optional[str] = None
        self.average_response_time = 0.0

    def allow_call(self) -> bool:
        """Check whether a call may go through, closing the breaker once the timeout expired."""
        if not self.is_open:
            return True
        if self.open_until is not None and self._clock() >= self.open_until:
            self._close()
            return True
        return False

    def record_success(self, response_time: float = 0.0):
        self.total_calls += 1
        self.successful_calls += 1
        self.consecutive_failures = 0
        self._update_average(response_time)
        if self.is_open:
            self._close()

    def record_failure(self, error: Optional[BaseException] = None, response_time: float = 0.0):
        self.total_calls += 1
        self.consecutive_failures += 1
        if error is not None:
            self.last_error = str(error) or type(error).__name__
        self._update_average(response_time)

        if self.consecutive_failures >= self.threshold and not self.is_open:
            self._open()

        logger.warning(
            "upstream_call_failed",
            endpoint=self.endpoint,
            consecutive_failures=self.consecutive_failures,
            success_rate=self.success_rate,
        )

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run `func` through the breaker.

        Raises CircuitOpenError without invoking `func` while open. Only
        UpstreamError counts as a failure; anything else propagates untouched.
        """
        if not self.allow_call():
            raise CircuitOpenError(self.endpoint, max(0.0, (self.open_until or 0) - self._clock()))

        started = self._clock()
        try:
            result = await func(*args, **kwargs)
        except UpstreamError as e:
            self.record_failure(e, self._clock() - started)
            raise
        self.record_success(self._clock() - started)
        return result

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return 100.0
        return round(self.successful_calls / self.total_calls * 100, 1)

    def health_status(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "success_rate": self.success_rate,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "consecutive_failures": self.consecutive_failures,
            "circuit_open": self.is_open,
            "last_error": self.last_error,
            "average_response_time": round(self.average_response_time, 3),
        }

    def _open(self):
        self.is_open = True
        self.open_until = self._clock() + self.timeout
        logger.warning(
            "circuit_breaker_opened",
            endpoint=self.endpoint,
            failures=self.consecutive_failures,
            timeout=self.timeout,
        )

    def _close(self):
        self.is_open = False
        self.open_until = None
        logger.info("circuit_breaker_closed", endpoint=self.endpoint)

    def _update_average(self, response_time: float):
        n = self.total_calls
        self.average_response_time = (self.average_response_time * (n - 1) + response_time) / n


class BreakerRegistry:
    """One breaker per upstream endpoint, created on first use."""

    def __init__(self, config: dict, clock: Callable[[], float] = time.monotonic):
        breaker_config = config.get("breaker", {})
        self.threshold = breaker_config.get("failure_threshold", 5)
        self.timeout = breaker_config.get("timeout_seconds", 30)
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, endpoint: str) -> CircuitBreaker:
        if endpoint not in self._breakers:
            self._breakers[endpoint] = CircuitBreaker(
                endpoint, threshold=self.threshold, timeout=self.timeout, clock=self._clock
            )
        return self._breakers[endpoint]

    async def call(self, endpoint: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        return await self.get(endpoint).call(func, *args, **kwargs)

    def health_status(self) -> list[dict]:
        return [b.health_status() for b in self._breakers.values()]

    @property
    def open_endpoints(self) -> list[str]:
        return [name for name, b in self._breakers.items() if b.is_open]
