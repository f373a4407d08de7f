"""Deterministic alert signatures built only from the metrics that matter."""
import hashlib
from datetime import datetime

from whalewatch.models import HolderTrendSnapshot, WalletBalanceSnapshot

TOP_HOLDINGS = 5


def _digest(*parts) -> str:
    raw = "|".join(str(p) for p in parts)
    return hashlib.sha256(raw.encode()).hexdigest()[:24]


def price_signature(mint_address: str, direction: str, change_percent: float, price: float) -> str:
    return _digest("price", mint_address, direction, round(abs(change_percent)), f"{price:.6g}")


def wallet_signature(snapshot: WalletBalanceSnapshot) -> str:
    """Wallet address, total value to the dollar and a digest of the top holdings."""
    top = ";".join(
        f"{h.mint_address}:{round(h.value_usd)}" for h in snapshot.holdings[:TOP_HOLDINGS]
    )
    return _digest("wallet", snapshot.wallet_address, round(snapshot.total_value), top)


def wallet_anomaly_signature(wallet_address: str, previous_total: float, current_total: float) -> str:
    return _digest("wallet_anomaly", wallet_address, round(previous_total), round(current_total))


def holder_trend_signature(snapshot: HolderTrendSnapshot, event_type: str, day: datetime) -> str:
    return _digest(event_type, snapshot.mint_address, day.date().isoformat(), round(snapshot.trend_7d or 0, 1))


def sustained_growth_signature(snapshot: HolderTrendSnapshot) -> str:
    last = snapshot.series[-1]
    return _digest("holder_sustained_growth", snapshot.mint_address, last.time.date().isoformat(), last.holder_count)


def transfer_signature(signature: str) -> str:
    """Transfers already carry a unique on-chain id."""
    return f"tx:{signature}"


def gem_signature(mint_address: str) -> str:
    return f"gem:{mint_address}"
