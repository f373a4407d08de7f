"""Deduplication of alerts by signature."""
from typing import Optional

import structlog

from whalewatch.models import Resource
from whalewatch.storage.database import Database

logger = structlog.get_logger()

DEFAULT_TTL = 24 * 60 * 60


class DedupStore:
    """TTL-bound record of alert signatures already sent per resource."""

    def __init__(self, db: Database, config: dict):
        self.db = db
        self.ttl = config.get("dedup", {}).get("ttl_seconds", DEFAULT_TTL)

    @staticmethod
    def _key(resource: Resource, signature: str) -> str:
        return f"alerted:{resource.kind.value}:{resource.key}:{signature}"

    async def should_suppress(self, resource: Resource, signature: str) -> bool:
        return await self.db.exists(self._key(resource, signature))

    async def record(self, resource: Resource, signature: str, ttl: Optional[float] = None):
        await self.db.set(self._key(resource, signature), "1", ex=ttl if ttl is not None else self.ttl)
        logger.debug("signature_recorded", resource=str(resource), signature=signature)
