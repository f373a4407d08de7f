"""Tests for the circuit breaker state machine."""
import pytest

from conftest import FakeClock
from whalewatch.api.breaker import BreakerRegistry, CircuitBreaker
from whalewatch.api.errors import CircuitOpenError, ServerError


class FlakyUpstream:
    def __init__(self, fail: bool = True):
        self.fail = fail
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if self.fail:
            raise ServerError("HTTP 503")
        return "snapshot"


async def fail_times(breaker, upstream, n):
    for _ in range(n):
        with pytest.raises(ServerError):
            await breaker.call(upstream.fetch)


async def test_opens_after_exactly_five_failures():
    clock = FakeClock()
    breaker = CircuitBreaker("token_price", threshold=5, timeout=30, clock=clock)
    upstream = FlakyUpstream()

    await fail_times(breaker, upstream, 4)
    assert not breaker.is_open

    await fail_times(breaker, upstream, 1)
    assert breaker.is_open
    assert breaker.consecutive_failures == 5


async def test_open_breaker_rejects_without_calling_upstream():
    clock = FakeClock()
    breaker = CircuitBreaker("token_price", threshold=5, timeout=30, clock=clock)
    upstream = FlakyUpstream()
    await fail_times(breaker, upstream, 5)

    with pytest.raises(CircuitOpenError):
        await breaker.call(upstream.fetch)
    assert upstream.calls == 5


async def test_call_allowed_after_timeout_elapses():
    clock = FakeClock()
    breaker = CircuitBreaker("token_price", threshold=5, timeout=30, clock=clock)
    upstream = FlakyUpstream()
    await fail_times(breaker, upstream, 5)

    clock.advance(29)
    with pytest.raises(CircuitOpenError):
        await breaker.call(upstream.fetch)

    clock.advance(1)
    upstream.fail = False
    assert await breaker.call(upstream.fetch) == "snapshot"
    assert not breaker.is_open
    assert breaker.consecutive_failures == 0


async def test_probe_after_timeout_is_attempted_even_if_it_fails():
    clock = FakeClock()
    breaker = CircuitBreaker("wallet_balance", threshold=5, timeout=30, clock=clock)
    upstream = FlakyUpstream()
    await fail_times(breaker, upstream, 5)

    clock.advance(30)
    with pytest.raises(ServerError):
        await breaker.call(upstream.fetch)
    assert upstream.calls == 6
    # Counter kept counting, so the failed probe reopens immediately
    assert breaker.is_open


async def test_success_resets_failure_count():
    breaker = CircuitBreaker("holder_trend", threshold=5, clock=FakeClock())
    upstream = FlakyUpstream()
    await fail_times(breaker, upstream, 4)

    upstream.fail = False
    await breaker.call(upstream.fetch)
    assert breaker.consecutive_failures == 0

    upstream.fail = True
    await fail_times(breaker, upstream, 4)
    assert not breaker.is_open


async def test_non_upstream_errors_are_not_counted():
    breaker = CircuitBreaker("token_price", threshold=1, clock=FakeClock())

    async def broken():
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await breaker.call(broken)
    assert breaker.consecutive_failures == 0
    assert not breaker.is_open


async def test_registry_isolates_endpoints():
    registry = BreakerRegistry({"breaker": {"failure_threshold": 2}}, clock=FakeClock())
    upstream = FlakyUpstream()

    for _ in range(2):
        with pytest.raises(ServerError):
            await registry.call("whale_transfer", upstream.fetch)

    assert registry.open_endpoints == ["whale_transfer"]
    upstream.fail = False
    assert await registry.call("token_price", upstream.fetch) == "snapshot"


def test_health_status_reports_success_rate():
    breaker = CircuitBreaker("token_price", clock=FakeClock())
    breaker.record_success(0.2)
    breaker.record_success(0.4)
    breaker.record_failure(ServerError("HTTP 500"), 1.2)

    status = breaker.health_status()
    assert status["success_rate"] == 66.7
    assert status["total_calls"] == 3
    assert status["last_error"] == "HTTP 500"
    assert status["average_response_time"] == pytest.approx(0.6)
