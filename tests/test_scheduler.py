"""Tests for tick scheduling, rate limiting and concurrency bounds."""
import asyncio

import pytest

from conftest import FakeClock
from whalewatch.models import Resource, ResourceKind
from whalewatch.scheduler import Scheduler
from whalewatch.storage.registry import SubscriberRegistry

WALLETS = [f"wallet{i}" for i in range(8)]


class BlockingEngine:
    """Checks wait on `release` so tests control when they finish."""

    def __init__(self, fail_for=(), blocked_kinds=None):
        self.release = asyncio.Event()
        self.blocked_kinds = blocked_kinds
        self.fail_for = set(fail_for)
        self.checked: list[Resource] = []
        self.forgotten: list[Resource] = []
        self.running = 0
        self.max_running = 0

    async def check(self, resource, lookback_days=None):
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.blocked_kinds is None or resource.kind in self.blocked_kinds:
                await self.release.wait()
            self.checked.append(resource)
            if resource.key in self.fail_for:
                raise RuntimeError("boom")
            return 0
        finally:
            self.running -= 1

    def forget(self, resource):
        self.forgotten.append(resource)


@pytest.fixture
async def registry(db):
    return SubscriberRegistry(db, {})


async def subscribe_all(registry, kind, keys):
    for key in keys:
        await registry.subscribe("100", Resource(kind, key))


async def test_rate_limited_resource_is_skipped(registry):
    clock = FakeClock()
    engine = BlockingEngine()
    engine.release.set()
    scheduler = Scheduler(engine, registry, {}, clock=clock)
    await subscribe_all(registry, ResourceKind.WALLET_BALANCE, ["w1"])

    await asyncio.gather(*await scheduler.tick(ResourceKind.WALLET_BALANCE))
    assert len(engine.checked) == 1

    clock.advance(60)
    assert await scheduler.tick(ResourceKind.WALLET_BALANCE) == []

    clock.advance(240)
    await asyncio.gather(*await scheduler.tick(ResourceKind.WALLET_BALANCE))
    assert len(engine.checked) == 2


async def test_in_flight_resource_is_not_restarted(registry):
    clock = FakeClock()
    engine = BlockingEngine()
    scheduler = Scheduler(engine, registry, {}, clock=clock)
    await subscribe_all(registry, ResourceKind.WHALE_TRANSFER, ["mint1"])

    first = await scheduler.tick(ResourceKind.WHALE_TRANSFER)
    assert len(first) == 1
    await asyncio.sleep(0)

    clock.advance(1000)
    assert await scheduler.tick(ResourceKind.WHALE_TRANSFER) == []
    assert scheduler.in_flight == {Resource(ResourceKind.WHALE_TRANSFER, "mint1")}

    engine.release.set()
    await asyncio.gather(*first)
    assert scheduler.in_flight == set()


async def test_concurrency_is_bounded(registry):
    engine = BlockingEngine()
    scheduler = Scheduler(engine, registry, {"scheduler": {"max_concurrent_polls": 3}}, clock=FakeClock())
    await subscribe_all(registry, ResourceKind.WALLET_BALANCE, WALLETS)

    tasks = await scheduler.tick(ResourceKind.WALLET_BALANCE)
    assert len(tasks) == len(WALLETS)
    for _ in range(5):
        await asyncio.sleep(0)
    assert engine.running == 3

    engine.release.set()
    await asyncio.gather(*tasks)
    assert engine.max_running == 3
    assert len(engine.checked) == len(WALLETS)


async def test_crashed_check_does_not_affect_others(registry):
    engine = BlockingEngine(fail_for={"wallet2"})
    engine.release.set()
    scheduler = Scheduler(engine, registry, {}, clock=FakeClock())
    await subscribe_all(registry, ResourceKind.WALLET_BALANCE, WALLETS[:4])

    results = await asyncio.gather(*await scheduler.tick(ResourceKind.WALLET_BALANCE))

    assert results == [None] * 4
    assert len(engine.checked) == 4


async def test_released_resource_is_forgotten(registry):
    engine = BlockingEngine()
    engine.release.set()
    scheduler = Scheduler(engine, registry, {}, clock=FakeClock())
    resource = Resource(ResourceKind.TOKEN_PRICE, "mint1")
    await registry.subscribe("100", resource)

    await asyncio.gather(*await scheduler.tick(ResourceKind.TOKEN_PRICE))
    await registry.unsubscribe("100", resource)
    assert await scheduler.tick(ResourceKind.TOKEN_PRICE) == []

    assert engine.forgotten == [resource]
    assert scheduler.is_due(resource)


async def test_tick_skipped_when_store_unavailable(db, registry):
    scheduler = Scheduler(BlockingEngine(), registry, {}, clock=FakeClock())
    await db.close()
    assert await scheduler.tick(ResourceKind.WALLET_BALANCE) == []


async def test_stop_abandons_checks_after_grace(registry):
    engine = BlockingEngine()
    scheduler = Scheduler(engine, registry, {}, clock=FakeClock())
    await subscribe_all(registry, ResourceKind.WALLET_BALANCE, ["w1"])

    tasks = await scheduler.tick(ResourceKind.WALLET_BALANCE)
    await asyncio.sleep(0)

    await scheduler.stop(grace=0.01)
    await asyncio.gather(*tasks, return_exceptions=True)
    assert tasks[0].cancelled()
    assert engine.checked == []


async def test_periodic_jobs_run_and_survive_errors(registry):
    scheduler = Scheduler(BlockingEngine(), registry, {}, clock=FakeClock())
    runs = []

    async def job():
        runs.append(1)
        if len(runs) == 1:
            raise RuntimeError("first run fails")

    scheduler.add_periodic("job", 0.01, job)
    scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop(grace=0.01)

    assert len(runs) >= 2


async def test_slow_kind_does_not_delay_another_kind(registry):
    engine = BlockingEngine(blocked_kinds={ResourceKind.WALLET_GEMS})
    scheduler = Scheduler(engine, registry, {}, clock=FakeClock())
    await subscribe_all(registry, ResourceKind.WALLET_GEMS, WALLETS[:5])
    await subscribe_all(registry, ResourceKind.WHALE_TRANSFER, ["mint1"])

    gem_tasks = await scheduler.tick(ResourceKind.WALLET_GEMS)
    for _ in range(5):
        await asyncio.sleep(0)
    assert engine.running == 5

    whale_tasks = await scheduler.tick(ResourceKind.WHALE_TRANSFER)
    await asyncio.wait_for(asyncio.gather(*whale_tasks), timeout=1)
    assert engine.checked == [Resource(ResourceKind.WHALE_TRANSFER, "mint1")]

    engine.release.set()
    await asyncio.gather(*gem_tasks)
    assert len(engine.checked) == 6


async def test_per_kind_concurrency_override(registry):
    engine = BlockingEngine()
    config = {"scheduler": {"max_concurrent_polls": 5, "wallet_balance": {"max_concurrent_polls": 2}}}
    scheduler = Scheduler(engine, registry, config, clock=FakeClock())
    await subscribe_all(registry, ResourceKind.WALLET_BALANCE, WALLETS[:4])

    tasks = await scheduler.tick(ResourceKind.WALLET_BALANCE)
    for _ in range(5):
        await asyncio.sleep(0)
    assert engine.running == 2

    engine.release.set()
    await asyncio.gather(*tasks)
