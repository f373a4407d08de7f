"""Subscriber registry: who watches which resource, and with what settings."""
from typing import Optional

import structlog

from whalewatch.models import AlertKind, Resource, ResourceKind, SubscriberParams
from whalewatch.storage.database import Database

logger = structlog.get_logger()

# Key layout:
#   resources:{kind}                 set of watched keys
#   subscribers:{kind}:{key}         set of subscriber ids
#   subscriptions:{subscriber}       set of "{kind}:{key}"
#   alerts:{subscriber}              set of enabled alert kinds
#   threshold:{alert_kind}:{sub}     numeric parameter


class SubscriberRegistry:
    """Persisted mapping of resource -> subscribers.

    The write operations are called by the command layer; the alert engine
    only reads.
    """

    def __init__(self, db: Database, config: dict):
        self.db = db
        alerts = config.get("alerts", {})
        self.default_thresholds = {
            AlertKind.WHALE: alerts.get("default_whale_threshold_usd", 10_000),
        }

    async def subscribe(self, subscriber_id: str, resource: Resource, enable: bool = True):
        """Subscribe to a resource, opting into its alert kind unless `enable` is False."""
        await self.db.sadd(f"resources:{resource.kind.value}", resource.key)
        await self.db.sadd(f"subscribers:{resource.kind.value}:{resource.key}", subscriber_id)
        await self.db.sadd(f"subscriptions:{subscriber_id}", str(resource))
        if enable:
            await self.enable_alert(subscriber_id, resource.alert_kind)
        logger.info("subscribed", subscriber=subscriber_id, resource=str(resource))

    async def unsubscribe(self, subscriber_id: str, resource: Resource):
        """Unsubscribe; the resource stops being watched once nobody is left."""
        subscribers_key = f"subscribers:{resource.kind.value}:{resource.key}"
        await self.db.srem(subscribers_key, subscriber_id)
        await self.db.srem(f"subscriptions:{subscriber_id}", str(resource))
        if await self.db.scard(subscribers_key) == 0:
            await self.db.srem(f"resources:{resource.kind.value}", resource.key)
            logger.info("resource_released", resource=str(resource))
        logger.info("unsubscribed", subscriber=subscriber_id, resource=str(resource))

    async def enable_alert(self, subscriber_id: str, alert_kind: AlertKind):
        await self.db.sadd(f"alerts:{subscriber_id}", alert_kind.value)

    async def disable_alert(self, subscriber_id: str, alert_kind: AlertKind):
        await self.db.srem(f"alerts:{subscriber_id}", alert_kind.value)

    async def set_threshold(self, subscriber_id: str, alert_kind: AlertKind, value: float):
        if value < 0:
            raise ValueError("threshold must not be negative")
        await self.db.set(f"threshold:{alert_kind.value}:{subscriber_id}", str(value))

    async def get_threshold(self, subscriber_id: str, alert_kind: AlertKind) -> Optional[float]:
        raw = await self.db.get(f"threshold:{alert_kind.value}:{subscriber_id}")
        if raw is None:
            return self.default_thresholds.get(alert_kind)
        try:
            return float(raw)
        except ValueError:
            logger.warning("invalid_threshold", subscriber=subscriber_id, value=raw)
            return self.default_thresholds.get(alert_kind)

    async def resources(self, kind: ResourceKind) -> list[Resource]:
        keys = await self.db.smembers(f"resources:{kind.value}")
        return [Resource(kind, key) for key in sorted(keys)]

    async def subscriptions(self, subscriber_id: str) -> list[Resource]:
        resources = []
        for entry in sorted(await self.db.smembers(f"subscriptions:{subscriber_id}")):
            kind, _, key = entry.partition(":")
            resources.append(Resource(ResourceKind(kind), key))
        return resources

    async def subscribers_for(self, resource: Resource, alert_kind: AlertKind) -> list[SubscriberParams]:
        """All subscribers of a resource with their settings for `alert_kind`."""
        subscriber_ids = await self.db.smembers(f"subscribers:{resource.kind.value}:{resource.key}")
        result = []
        for subscriber_id in sorted(subscriber_ids):
            result.append(SubscriberParams(
                subscriber_id=subscriber_id,
                enabled=await self.db.sismember(f"alerts:{subscriber_id}", alert_kind.value),
                threshold=await self.get_threshold(subscriber_id, alert_kind),
            ))
        return result
