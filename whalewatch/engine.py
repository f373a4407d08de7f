"""Per-resource check pipeline: fetch, detect, deduplicate, fan out."""
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from whalewatch.alerts.dispatcher import Dispatcher
from whalewatch.api.breaker import BreakerRegistry
from whalewatch.api.errors import CircuitOpenError, UpstreamError
from whalewatch.detection.detector import ChangeDetector
from whalewatch.models import ChangeEvent, Resource, ResourceKind
from whalewatch.storage.database import StoreError
from whalewatch.storage.dedup import DedupStore
from whalewatch.storage.registry import SubscriberRegistry

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertEngine:
    """Runs one check for one resource.

    Upstream failures abandon the check without touching the snapshot
    cache. Store failures skip alerting for the resource (fail-closed).
    """

    def __init__(
        self,
        client,
        breakers: BreakerRegistry,
        detector: ChangeDetector,
        dedup: DedupStore,
        registry: SubscriberRegistry,
        dispatcher: Dispatcher,
        now: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.breakers = breakers
        self.detector = detector
        self.dedup = dedup
        self.registry = registry
        self.dispatcher = dispatcher
        self._now = now

        self.checks_run = 0
        self.alerts_sent = 0
        self.upstream_failures = 0

    async def check(self, resource: Resource, lookback_days: Optional[int] = None) -> int:
        """Check a resource. Returns the number of deliveries made."""
        self.checks_run += 1
        try:
            snapshot = await self.breakers.call(
                resource.kind.value, self.client.fetch, resource.kind, resource.key, lookback_days
            )
        except CircuitOpenError as e:
            logger.warning("upstream_circuit_open", resource=str(resource), retry_in=round(e.retry_in, 1))
            return 0
        except UpstreamError as e:
            self.upstream_failures += 1
            logger.warning("upstream_fetch_failed", resource=str(resource), error=str(e), error_type=type(e).__name__)
            return 0

        if snapshot is None:
            logger.debug("no_upstream_data", resource=str(resource))
            return 0

        events = self.detector.detect(resource, snapshot, self._now())
        if not events:
            return 0

        try:
            if resource.kind is ResourceKind.WHALE_TRANSFER:
                return await self._dispatch_top_transfer(resource, events)

            sent = 0
            for event in events:
                if await self.dedup.should_suppress(resource, event.signature):
                    logger.debug("alert_suppressed", resource=str(resource), event_type=event.event_type)
                    continue
                sent += await self._dispatch(resource, event)
            return sent
        except StoreError as e:
            logger.error("store_unavailable", resource=str(resource), error=str(e))
            return 0

    async def _dispatch(self, resource: Resource, event: ChangeEvent) -> int:
        subscribers = await self.registry.subscribers_for(resource, event.alert_kind)
        try:
            delivered = await self.dispatcher.dispatch(event, subscribers)
        finally:
            # Recorded even if fan-out fails part way, so nothing is re-sent
            await self.dedup.record(resource, event.signature)
        self.alerts_sent += len(delivered)
        return len(delivered)

    async def _dispatch_top_transfer(self, resource: Resource, events: list[ChangeEvent]) -> int:
        """Only the highest-value unseen transfer is sent; the rest are marked seen."""
        fresh = []
        for event in events:
            if not await self.dedup.should_suppress(resource, event.signature):
                fresh.append(event)
        if not fresh:
            return 0

        sent = await self._dispatch(resource, fresh[0])
        for event in fresh[1:]:
            await self.dedup.record(resource, event.signature)
        if len(fresh) > 1:
            logger.debug("whale_transfers_collapsed", resource=str(resource), skipped=len(fresh) - 1)
        return sent

    def forget(self, resource: Resource):
        """Drop cached state for a resource nobody watches any more."""
        self.detector.forget(resource)
