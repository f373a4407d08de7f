"""Periodic per-kind ticks driving resource checks."""
import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from whalewatch.engine import AlertEngine
from whalewatch.models import Resource, ResourceKind
from whalewatch.storage.database import StoreError
from whalewatch.storage.registry import SubscriberRegistry

logger = structlog.get_logger()

# kind -> (tick interval, minimum seconds between checks of one resource)
DEFAULT_CADENCES = {
    ResourceKind.WHALE_TRANSFER: (60, 30),
    ResourceKind.WALLET_BALANCE: (60, 300),
    ResourceKind.WALLET_GEMS: (300, 3600),
    ResourceKind.TOKEN_PRICE: (1800, 1800),
    ResourceKind.HOLDER_TREND: (7200, 7200),
}


class Scheduler:
    """One independent timer loop per resource kind.

    Each tick starts a background check per due resource. A resource with a
    check still running is skipped, and each kind runs at most
    `max_concurrent_polls` checks at once, so a slow kind never holds up
    another. Rate-limit state is in memory, so the first tick after a
    restart always polls.
    """

    def __init__(
        self,
        engine: AlertEngine,
        registry: SubscriberRegistry,
        config: dict,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.registry = registry
        self._clock = clock

        scheduler_config = config.get("scheduler", {})
        self.intervals: dict[ResourceKind, float] = {}
        self.min_intervals: dict[ResourceKind, float] = {}
        for kind, (interval, min_interval) in DEFAULT_CADENCES.items():
            kind_config = scheduler_config.get(kind.value, {})
            self.intervals[kind] = kind_config.get("interval_seconds", interval)
            self.min_intervals[kind] = kind_config.get("min_interval_seconds", min_interval)

        self.max_concurrent = scheduler_config.get("max_concurrent_polls", 5)
        self._semaphores: dict[ResourceKind, asyncio.Semaphore] = {}
        for kind in ResourceKind:
            limit = scheduler_config.get(kind.value, {}).get("max_concurrent_polls", self.max_concurrent)
            self._semaphores[kind] = asyncio.Semaphore(limit)

        self._last_checked: dict[Resource, float] = {}
        self._in_flight: dict[Resource, asyncio.Task] = {}
        self._known: dict[ResourceKind, set[Resource]] = {}
        self._periodic: list[tuple[str, float, Callable[[], Awaitable]]] = []
        self._loops: list[asyncio.Task] = []
        self._stopping = False

    def add_periodic(self, name: str, interval: float, func: Callable[[], Awaitable]):
        """Register a maintenance job run every `interval` seconds alongside the ticks."""
        self._periodic.append((name, interval, func))

    def is_due(self, resource: Resource, now: Optional[float] = None) -> bool:
        last = self._last_checked.get(resource)
        if last is None:
            return True
        now = self._clock() if now is None else now
        return now - last >= self.min_intervals[resource.kind]

    @property
    def in_flight(self) -> set[Resource]:
        return set(self._in_flight)

    async def tick(self, kind: ResourceKind) -> list[asyncio.Task]:
        """Start checks for every due resource of `kind`. Returns the started tasks."""
        try:
            resources = await self.registry.resources(kind)
        except StoreError as e:
            logger.error("tick_skipped_store_unavailable", kind=kind.value, error=str(e))
            return []

        self._release_stale(kind, resources)

        now = self._clock()
        started = []
        for resource in resources:
            if resource in self._in_flight:
                logger.debug("check_still_running", resource=str(resource))
                continue
            if not self.is_due(resource, now):
                logger.debug("check_rate_limited", resource=str(resource))
                continue

            self._last_checked[resource] = now
            task = asyncio.create_task(self._run_check(resource), name=f"check:{resource}")
            self._in_flight[resource] = task
            task.add_done_callback(lambda _t, r=resource: self._in_flight.pop(r, None))
            started.append(task)

        if started:
            logger.debug("tick", kind=kind.value, started=len(started), watched=len(resources))
        return started

    async def _run_check(self, resource: Resource):
        async with self._semaphores[resource.kind]:
            try:
                await self.engine.check(resource)
            except Exception as e:
                logger.error("resource_check_crashed", resource=str(resource), error=str(e))

    def _release_stale(self, kind: ResourceKind, resources: list[Resource]):
        current = set(resources)
        for resource in self._known.get(kind, set()) - current:
            self._last_checked.pop(resource, None)
            self.engine.forget(resource)
            logger.debug("resource_released", resource=str(resource))
        self._known[kind] = current

    async def _run_kind(self, kind: ResourceKind):
        interval = self.intervals[kind]
        while not self._stopping:
            try:
                await self.tick(kind)
            except Exception as e:
                logger.error("tick_error", kind=kind.value, error=str(e))
            await asyncio.sleep(interval)

    async def _run_periodic(self, name: str, interval: float, func: Callable[[], Awaitable]):
        while not self._stopping:
            await asyncio.sleep(interval)
            try:
                await func()
            except Exception as e:
                logger.error("periodic_job_error", job=name, error=str(e))

    def start(self):
        if self._loops:
            return
        self._stopping = False
        for kind in ResourceKind:
            self._loops.append(asyncio.create_task(self._run_kind(kind), name=f"tick:{kind.value}"))
        for name, interval, func in self._periodic:
            self._loops.append(asyncio.create_task(self._run_periodic(name, interval, func), name=name))
        logger.info(
            "scheduler_started",
            intervals={k.value: v for k, v in self.intervals.items()},
            max_concurrent=self.max_concurrent,
        )

    async def run_forever(self):
        self.start()
        await asyncio.gather(*self._loops)

    async def stop(self, grace: float = 5.0):
        """Stop issuing ticks; give in-flight checks `grace` seconds, then abandon them."""
        self._stopping = True
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        pending = list(self._in_flight.values())
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=grace)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("checks_abandoned", count=len(still_running))
        logger.info("scheduler_stopped")
