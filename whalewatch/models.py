"""Data models for the whalewatch alert engine."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class ResourceKind(str, Enum):
    """Kinds of things that can be watched."""
    TOKEN_PRICE = "token_price"
    WHALE_TRANSFER = "whale_transfer"
    WALLET_BALANCE = "wallet_balance"
    HOLDER_TREND = "holder_trend"
    WALLET_GEMS = "wallet_gems"


class AlertKind(str, Enum):
    """Alert kinds a subscriber can opt into."""
    PRICE = "price"
    WHALE = "whale"
    WALLET = "wallet"
    HOLDERS = "holders"
    GEM = "gem"


ALERT_KIND_FOR = {
    ResourceKind.TOKEN_PRICE: AlertKind.PRICE,
    ResourceKind.WHALE_TRANSFER: AlertKind.WHALE,
    ResourceKind.WALLET_BALANCE: AlertKind.WALLET,
    ResourceKind.HOLDER_TREND: AlertKind.HOLDERS,
    ResourceKind.WALLET_GEMS: AlertKind.GEM,
}


@dataclass(frozen=True)
class Resource:
    """A (kind, key) pair being monitored. Key is a token or wallet address."""
    kind: ResourceKind
    key: str

    @property
    def alert_kind(self) -> AlertKind:
        return ALERT_KIND_FOR[self.kind]

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.key}"


@dataclass
class TokenPriceSnapshot:
    """Current market data for a token."""
    mint_address: str
    price: float
    symbol: str = "Unknown"
    name: str = "Unknown Token"
    market_cap: float = 0.0
    holder_count: Optional[int] = None


@dataclass
class WhaleTransfer:
    """A single large token transfer."""
    signature: str
    mint_address: str
    usd_value: float
    amount: float
    sender: str
    receiver: str
    block_time: datetime
    symbol: str = "Unknown"


@dataclass
class WhaleTransferSnapshot:
    mint_address: str
    transfers: list[WhaleTransfer] = field(default_factory=list)


@dataclass
class TokenHolding:
    """One token position inside a wallet."""
    mint_address: str
    symbol: str
    value_usd: float
    amount: float = 0.0
    price_usd: float = 0.0
    name: str = "Unknown Token"
    verified: bool = False


@dataclass
class WalletBalanceSnapshot:
    """Token balances of a wallet, holdings sorted by USD value descending."""
    wallet_address: str
    total_value: float
    holdings: list[TokenHolding] = field(default_factory=list)

    @property
    def mints(self) -> set[str]:
        return {h.mint_address for h in self.holdings}


@dataclass
class HolderPoint:
    time: datetime
    holder_count: int


@dataclass
class HolderTrendSnapshot:
    """Holder count plus the daily series it was derived from (ascending)."""
    mint_address: str
    current: int
    trend_7d: Optional[float] = None
    trend_period: Optional[float] = None
    period_days: int = 0
    series: list[HolderPoint] = field(default_factory=list)


@dataclass
class GemToken:
    """A wallet-held token whose market cap sits inside the low-cap band."""
    mint_address: str
    symbol: str
    market_cap: float
    value_usd: float
    name: str = "Unknown Token"
    price_usd: float = 0.0
    price_change_24h: float = 0.0
    price_change_7d: float = 0.0


@dataclass
class WalletGemsSnapshot:
    wallet_address: str
    gems: list[GemToken] = field(default_factory=list)

    @property
    def mints(self) -> set[str]:
        return {g.mint_address for g in self.gems}


Snapshot = Union[
    TokenPriceSnapshot,
    WhaleTransferSnapshot,
    WalletBalanceSnapshot,
    HolderTrendSnapshot,
    WalletGemsSnapshot,
]


@dataclass
class ChangeEvent:
    """A detected change worth notifying about.

    Kind-agnostic: formatting and dispatch only look at event_type and
    metrics, never back into the detector.
    """
    resource: Resource
    event_type: str
    signature: str
    metrics: dict = field(default_factory=dict)
    low_confidence: bool = False
    detected_at: Optional[datetime] = None

    @property
    def alert_kind(self) -> AlertKind:
        return self.resource.alert_kind


@dataclass
class SubscriberParams:
    """A subscriber of one resource and its settings for one alert kind."""
    subscriber_id: str
    enabled: bool
    threshold: Optional[float] = None


@dataclass
class DeliveryRequest:
    subscriber_id: str
    payload: str
    event: ChangeEvent
