"""Change detection heuristics, one per resource kind."""
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from whalewatch.detection import signatures
from whalewatch.models import (
    ChangeEvent,
    HolderTrendSnapshot,
    Resource,
    ResourceKind,
    Snapshot,
    TokenPriceSnapshot,
    WalletBalanceSnapshot,
    WalletGemsSnapshot,
    WhaleTransferSnapshot,
)

logger = structlog.get_logger()

# Kinds whose first observation only seeds the cache
SEEDED_KINDS = {
    ResourceKind.TOKEN_PRICE,
    ResourceKind.WALLET_BALANCE,
    ResourceKind.HOLDER_TREND,
    ResourceKind.WALLET_GEMS,
}


class ChangeDetector:
    """Compares each new snapshot with the previous one for the same resource.

    Owns the snapshot cache and the last-fire timestamps used for the
    per-resource minimum gaps. Both are in memory only.
    """

    def __init__(self, config: dict):
        detection = config.get("detection", {})
        price = detection.get("token_price", {})
        wallet = detection.get("wallet_balance", {})
        holders = detection.get("holder_trend", {})
        whale = detection.get("whale_transfer", {})

        self.min_price_change_pct = price.get("min_change_percent", 5.0)
        self.price_gap = timedelta(hours=price.get("min_gap_hours", 2))

        self.wallet_change_pct = wallet.get("min_change_percent", 5.0)
        self.anomaly_min_usd = wallet.get("anomaly_min_usd", 1000)

        self.acceleration_min_pct = holders.get("acceleration_min_percent", 5.0)
        self.acceleration_min_delta = holders.get("acceleration_min_delta", 5.0)
        self.decline_pct = holders.get("decline_percent", -10.0)
        self.trend_gap = timedelta(hours=holders.get("trend_gap_hours", 24))
        self.sustained_days = holders.get("sustained_days", 7)
        self.sustained_gap = timedelta(hours=holders.get("sustained_gap_hours", 48))

        self.whale_window = timedelta(minutes=whale.get("recency_minutes", 60))

        self._snapshots: dict[Resource, Snapshot] = {}
        self._last_fired: dict[tuple[Resource, str], datetime] = {}

    def previous(self, resource: Resource) -> Optional[Snapshot]:
        return self._snapshots.get(resource)

    def last_fired(self, resource: Resource, group: str) -> Optional[datetime]:
        return self._last_fired.get((resource, group))

    def mark_fired(self, resource: Resource, group: str, when: datetime):
        self._last_fired[(resource, group)] = when

    def forget(self, resource: Resource):
        self._snapshots.pop(resource, None)
        for k in [k for k in self._last_fired if k[0] == resource]:
            del self._last_fired[k]

    def detect(self, resource: Resource, snapshot: Snapshot, now: Optional[datetime] = None) -> list[ChangeEvent]:
        """Detect changes and store `snapshot` as the new previous state."""
        now = now or datetime.now(timezone.utc)
        previous = self._snapshots.get(resource)
        self._snapshots[resource] = snapshot

        if previous is None and resource.kind in SEEDED_KINDS:
            logger.debug("snapshot_seeded", resource=str(resource))
            return []

        if resource.kind is ResourceKind.TOKEN_PRICE:
            event = self.detect_price(resource, snapshot, previous, self.last_fired(resource, "price"), now)
            events = [event] if event else []
        elif resource.kind is ResourceKind.WALLET_BALANCE:
            event = self.detect_wallet(resource, snapshot, previous, now)
            events = [event] if event else []
        elif resource.kind is ResourceKind.HOLDER_TREND:
            fired = {
                group: self.last_fired(resource, group)
                for group in ("holder_growth_accelerating", "holder_decline", "holder_sustained_growth")
            }
            events = self.detect_holder_trend(resource, snapshot, previous, fired, now)
        elif resource.kind is ResourceKind.WHALE_TRANSFER:
            events = self.detect_whale_transfers(resource, snapshot, now)
        elif resource.kind is ResourceKind.WALLET_GEMS:
            events = self.detect_gems(resource, snapshot, previous, now)
        else:
            raise ValueError(f"unknown resource kind: {resource.kind}")

        for event in events:
            if resource.kind in (ResourceKind.TOKEN_PRICE, ResourceKind.HOLDER_TREND):
                group = "price" if resource.kind is ResourceKind.TOKEN_PRICE else event.event_type
                self.mark_fired(resource, group, now)
        return events

    def detect_price(
        self,
        resource: Resource,
        new: TokenPriceSnapshot,
        prev: Optional[TokenPriceSnapshot],
        last_fired: Optional[datetime],
        now: datetime,
    ) -> Optional[ChangeEvent]:
        if prev is None or prev.price <= 0:
            return None

        change_pct = round((new.price - prev.price) * 100 / prev.price, 9)
        if abs(change_pct) < self.min_price_change_pct:
            return None
        if last_fired is not None and now - last_fired < self.price_gap:
            logger.debug("price_alert_within_gap", resource=str(resource), change=change_pct)
            return None

        direction = "up" if change_pct > 0 else "down"
        return ChangeEvent(
            resource=resource,
            event_type="price_surge" if change_pct > 0 else "price_drop",
            signature=signatures.price_signature(new.mint_address, direction, change_pct, new.price),
            metrics={
                "symbol": new.symbol,
                "price": new.price,
                "previous_price": prev.price,
                "change_percent": change_pct,
                "market_cap": new.market_cap,
                "hours_since_last_alert": (
                    (now - last_fired).total_seconds() / 3600 if last_fired else None
                ),
            },
            detected_at=now,
        )

    def detect_wallet(
        self,
        resource: Resource,
        new: WalletBalanceSnapshot,
        prev: Optional[WalletBalanceSnapshot],
        now: datetime,
    ) -> Optional[ChangeEvent]:
        if prev is None:
            return None

        delta = new.total_value - prev.total_value
        if (new.total_value == 0 or prev.total_value == 0) and abs(delta) >= self.anomaly_min_usd:
            logger.warning(
                "wallet_balance_anomaly",
                wallet=new.wallet_address,
                previous_total=prev.total_value,
                current_total=new.total_value,
            )
            return ChangeEvent(
                resource=resource,
                event_type="wallet_anomaly",
                signature=signatures.wallet_anomaly_signature(
                    new.wallet_address, prev.total_value, new.total_value
                ),
                metrics={"total_value": new.total_value, "previous_total": prev.total_value},
                low_confidence=True,
                detected_at=now,
            )

        change_pct = abs(delta) / prev.total_value * 100 if prev.total_value > 0 else None
        added = sorted(new.mints - prev.mints)
        removed = sorted(prev.mints - new.mints)

        value_moved = change_pct is not None and change_pct > self.wallet_change_pct
        if not (value_moved or added or removed):
            return None

        return ChangeEvent(
            resource=resource,
            event_type="wallet_change",
            signature=signatures.wallet_signature(new),
            metrics={
                "total_value": new.total_value,
                "previous_total": prev.total_value,
                "change_usd": delta,
                "change_percent": delta / prev.total_value * 100 if prev.total_value > 0 else None,
                "added_mints": added,
                "removed_mints": removed,
                "top_holdings": [
                    {"symbol": h.symbol, "value_usd": h.value_usd}
                    for h in new.holdings[:signatures.TOP_HOLDINGS]
                ],
            },
            detected_at=now,
        )

    def detect_holder_trend(
        self,
        resource: Resource,
        new: HolderTrendSnapshot,
        prev: Optional[HolderTrendSnapshot],
        last_fired: dict[str, Optional[datetime]],
        now: datetime,
    ) -> list[ChangeEvent]:
        events = []

        def gap_ok(group: str, gap: timedelta) -> bool:
            fired = last_fired.get(group)
            return fired is None or now - fired >= gap

        if new.trend_7d is not None:
            previous_trend = prev.trend_7d if prev is not None and prev.trend_7d is not None else 0.0
            trend_change = new.trend_7d - previous_trend

            if (
                new.trend_7d > self.acceleration_min_pct
                and trend_change >= self.acceleration_min_delta
                and gap_ok("holder_growth_accelerating", self.trend_gap)
            ):
                events.append(self._holder_event(resource, new, "holder_growth_accelerating", now, {
                    "trend_7d": new.trend_7d,
                    "trend_change": trend_change,
                }))
            elif new.trend_7d < self.decline_pct and gap_ok("holder_decline", self.trend_gap):
                events.append(self._holder_event(resource, new, "holder_decline", now, {
                    "trend_7d": new.trend_7d,
                }))

        run = self._growth_run(new)
        if run >= self.sustained_days and gap_ok("holder_sustained_growth", self.sustained_gap):
            base = new.series[-self.sustained_days].holder_count
            latest = new.series[-1].holder_count
            growth = round((latest - base) / base * 100, 1) if base > 0 else None
            events.append(ChangeEvent(
                resource=resource,
                event_type="holder_sustained_growth",
                signature=signatures.sustained_growth_signature(new),
                metrics={
                    "consecutive_days": run,
                    "growth_percent": growth,
                    "current_holders": new.current,
                },
                detected_at=now,
            ))

        return events

    @staticmethod
    def _growth_run(snapshot: HolderTrendSnapshot) -> int:
        """Length, in days, of the trailing strictly increasing run of the series."""
        if not snapshot.series:
            return 0
        run = 1
        for i in range(len(snapshot.series) - 1, 0, -1):
            if snapshot.series[i].holder_count > snapshot.series[i - 1].holder_count:
                run += 1
            else:
                break
        return run

    def _holder_event(self, resource, snapshot, event_type, now, metrics) -> ChangeEvent:
        metrics = dict(metrics, current_holders=snapshot.current)
        return ChangeEvent(
            resource=resource,
            event_type=event_type,
            signature=signatures.holder_trend_signature(snapshot, event_type, now),
            metrics=metrics,
            detected_at=now,
        )

    def detect_whale_transfers(
        self,
        resource: Resource,
        new: WhaleTransferSnapshot,
        now: datetime,
    ) -> list[ChangeEvent]:
        """Recent transfers as candidate events, highest USD value first.

        Per-subscriber thresholds and already-seen transfer ids are applied
        downstream.
        """
        cutoff = now - self.whale_window
        recent = [t for t in new.transfers if t.block_time >= cutoff]
        recent.sort(key=lambda t: t.usd_value, reverse=True)
        return [
            ChangeEvent(
                resource=resource,
                event_type="whale_transfer",
                signature=signatures.transfer_signature(t.signature),
                metrics={
                    "symbol": t.symbol,
                    "usd_value": t.usd_value,
                    "amount": t.amount,
                    "sender": t.sender,
                    "receiver": t.receiver,
                    "transaction": t.signature,
                    "block_time": t.block_time.isoformat(),
                },
                detected_at=now,
            )
            for t in recent
        ]

    def detect_gems(
        self,
        resource: Resource,
        new: WalletGemsSnapshot,
        prev: Optional[WalletGemsSnapshot],
        now: datetime,
    ) -> list[ChangeEvent]:
        if prev is None:
            return []
        known = prev.mints
        return [
            ChangeEvent(
                resource=resource,
                event_type="new_gem",
                signature=signatures.gem_signature(gem.mint_address),
                metrics={
                    "wallet": new.wallet_address,
                    "mint": gem.mint_address,
                    "symbol": gem.symbol,
                    "name": gem.name,
                    "market_cap": gem.market_cap,
                    "value_usd": gem.value_usd,
                    "price_change_24h": gem.price_change_24h,
                    "price_change_7d": gem.price_change_7d,
                },
                detected_at=now,
            )
            for gem in new.gems
            if gem.mint_address not in known
        ]
