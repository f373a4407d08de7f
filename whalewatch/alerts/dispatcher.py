"""Fan-out of detected changes to individual subscribers."""
import asyncio
import time
from typing import Callable, Protocol

import structlog

from whalewatch.alerts.formatting import format_event
from whalewatch.models import AlertKind, ChangeEvent, DeliveryRequest, SubscriberParams

logger = structlog.get_logger()


class Notifier(Protocol):
    async def deliver(self, subscriber_id: str, payload: str) -> bool: ...


class Dispatcher:
    """Evaluates each subscriber's predicate and delivers one request per match.

    Deliveries are independent: a failure for one subscriber is logged and
    counted, never retried, and never affects the others.
    """

    def __init__(
        self,
        notifier: Notifier,
        config: dict,
        formatter: Callable[[ChangeEvent], str] = format_event,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.notifier = notifier
        self.formatter = formatter
        self.notify_anomalies = config.get("alerts", {}).get("notify_anomalies", True)
        self._clock = clock

        self.stats = {
            "requests": 0,
            "delivered": 0,
            "failed": 0,
            "average_delivery_time": 0.0,
        }

    def accepts(self, event: ChangeEvent, subscriber: SubscriberParams) -> bool:
        if not subscriber.enabled:
            return False
        if event.low_confidence and not self.notify_anomalies:
            return False
        if event.alert_kind is AlertKind.WHALE and subscriber.threshold is not None:
            return event.metrics.get("usd_value", 0) >= subscriber.threshold
        return True

    def build_requests(self, event: ChangeEvent, subscribers: list[SubscriberParams]) -> list[DeliveryRequest]:
        """One request per accepting subscriber; the payload is rendered once."""
        accepted = [s for s in subscribers if self.accepts(event, s)]
        if not accepted:
            return []
        payload = self.formatter(event)
        return [DeliveryRequest(subscriber_id=s.subscriber_id, payload=payload, event=event) for s in accepted]

    async def dispatch(self, event: ChangeEvent, subscribers: list[SubscriberParams]) -> list[DeliveryRequest]:
        """Build and deliver requests. Returns the requests that were delivered."""
        requests = self.build_requests(event, subscribers)
        if not requests:
            logger.debug("no_accepting_subscribers", resource=str(event.resource), event_type=event.event_type)
            return []

        results = await asyncio.gather(*(self._deliver(r) for r in requests))
        delivered = [r for r, ok in zip(requests, results) if ok]

        logger.info(
            "alert_dispatched",
            resource=str(event.resource),
            event_type=event.event_type,
            delivered=len(delivered),
            requested=len(requests),
        )
        return delivered

    async def _deliver(self, request: DeliveryRequest) -> bool:
        self.stats["requests"] += 1
        started = self._clock()
        try:
            ok = await self.notifier.deliver(request.subscriber_id, request.payload)
        except Exception as e:
            logger.error("delivery_error", subscriber=request.subscriber_id, error=str(e))
            ok = False

        if ok:
            self.stats["delivered"] += 1
            n = self.stats["delivered"]
            elapsed = self._clock() - started
            self.stats["average_delivery_time"] = (
                self.stats["average_delivery_time"] * (n - 1) + elapsed
            ) / n
        else:
            self.stats["failed"] += 1
            logger.warning("delivery_failed", subscriber=request.subscriber_id, event_type=request.event.event_type)
        return ok
