"""Vybe analytics API client producing validated snapshots."""
import asyncio
import math
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
import structlog

from whalewatch.api.errors import (
    MalformedResponse,
    RateLimited,
    ServerError,
    UpstreamError,
    UpstreamTimeout,
)
from whalewatch.models import (
    GemToken,
    HolderPoint,
    HolderTrendSnapshot,
    ResourceKind,
    Snapshot,
    TokenHolding,
    TokenPriceSnapshot,
    WalletBalanceSnapshot,
    WalletGemsSnapshot,
    WhaleTransfer,
    WhaleTransferSnapshot,
)

logger = structlog.get_logger()

VYBE_API_URL = "https://api.vybenetwork.xyz"

# Holder time series data is only available from this date on
EARLIEST_HOLDERS_TS_DATE = datetime(2023, 11, 9, 19, 0, tzinfo=timezone.utc)

DAY = timedelta(days=1)


def _to_float(value, field: str) -> float:
    if value is None or value == "":
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise MalformedResponse(f"field {field!r} is not numeric: {value!r}")
    if math.isnan(result):
        raise MalformedResponse(f"field {field!r} is NaN")
    return result


def _to_datetime(value, field: str) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        raise MalformedResponse(f"field {field!r} is not a unix timestamp: {value!r}")


def _require_dict(data, what: str) -> dict:
    if not isinstance(data, dict):
        raise MalformedResponse(f"{what}: expected object, got {type(data).__name__}")
    return data


def _items(data, what: str) -> list:
    """Extract the item list from either a bare list or a {"data": [...]} envelope."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get("data", data.get("transfers"))
        if isinstance(items, list):
            return items
    raise MalformedResponse(f"{what}: expected a list of items")


def parse_token_details(mint_address: str, data) -> TokenPriceSnapshot:
    """Parse the token details document."""
    data = _require_dict(data, "token details")
    if data.get("price") is None:
        raise MalformedResponse(f"token details for {mint_address} has no price")

    holder_count = data.get("holderCount")
    if holder_count is not None and not isinstance(holder_count, int):
        holder_count = int(_to_float(holder_count, "holderCount"))

    return TokenPriceSnapshot(
        mint_address=mint_address,
        price=_to_float(data.get("price"), "price"),
        symbol=data.get("symbol") or "Unknown",
        name=data.get("name") or "Unknown Token",
        market_cap=_to_float(data.get("marketCap", data.get("mcap")), "marketCap"),
        holder_count=holder_count,
    )


def parse_transfers(mint_address: str, data) -> WhaleTransferSnapshot:
    """Parse token transfers, dropping items for other mints or without an id."""
    transfers = []
    for item in _items(data, "token transfers"):
        if not isinstance(item, dict):
            raise MalformedResponse("token transfers: item is not an object")

        signature = item.get("signature") or item.get("id")
        if not signature:
            logger.warning("transfer_without_signature", mint=mint_address)
            continue

        tx_mint = item.get("mintAddress")
        if tx_mint and tx_mint != mint_address:
            continue

        transfers.append(WhaleTransfer(
            signature=str(signature),
            mint_address=mint_address,
            usd_value=_to_float(item.get("valueUsd", item.get("usdAmount")), "valueUsd"),
            amount=_to_float(item.get("calculatedAmount", item.get("amount")), "amount"),
            sender=item.get("senderAddress") or item.get("from") or "",
            receiver=item.get("receiverAddress") or item.get("to") or "",
            block_time=_to_datetime(item.get("blockTime"), "blockTime"),
            symbol=item.get("symbol") or "Unknown",
        ))

    return WhaleTransferSnapshot(mint_address=mint_address, transfers=transfers)


def parse_wallet_tokens(wallet_address: str, data) -> WalletBalanceSnapshot:
    """Parse wallet token balances; holdings are sorted by USD value descending."""
    data = _require_dict(data, "wallet tokens")
    if data.get("totalTokenValueUsd") is None:
        raise MalformedResponse("wallet tokens: missing totalTokenValueUsd")
    holdings = []
    for item in _items(data, "wallet tokens"):
        if not isinstance(item, dict) or not item.get("mintAddress"):
            raise MalformedResponse("wallet tokens: item without mintAddress")
        holdings.append(TokenHolding(
            mint_address=item["mintAddress"],
            symbol=item.get("symbol") or "Unknown",
            name=item.get("name") or "Unknown Token",
            value_usd=_to_float(item.get("valueUsd"), "valueUsd"),
            amount=_to_float(item.get("amount"), "amount"),
            price_usd=_to_float(item.get("priceUsd"), "priceUsd"),
            verified=bool(item.get("verified")),
        ))
    holdings.sort(key=lambda h: h.value_usd, reverse=True)

    return WalletBalanceSnapshot(
        wallet_address=wallet_address,
        total_value=_to_float(data.get("totalTokenValueUsd"), "totalTokenValueUsd"),
        holdings=holdings,
    )


def parse_holders_series(data) -> list[HolderPoint]:
    """Parse the daily holders time series, ascending by time."""
    points = []
    for item in _items(data, "holders time series"):
        if not isinstance(item, dict):
            raise MalformedResponse("holders time series: item is not an object")
        points.append(HolderPoint(
            time=_to_datetime(item.get("holdersTimestamp"), "holdersTimestamp"),
            holder_count=int(_to_float(item.get("nHolders"), "nHolders")),
        ))
    points.sort(key=lambda p: p.time)
    return points


def compute_holder_trend(
    mint_address: str,
    current: int,
    series: list[HolderPoint],
    now: datetime,
) -> HolderTrendSnapshot:
    """Derive 7-day and whole-period holder trends from the daily series."""
    if len(series) < 2:
        return HolderTrendSnapshot(mint_address=mint_address, current=current, series=series)

    if current == 0:
        current = series[-1].holder_count

    period_days = math.ceil((now - series[0].time) / DAY)

    trend_7d = None
    if period_days >= 7:
        week_ago = now - timedelta(days=7)
        base = next((p for p in series if p.time >= week_ago), None)
        if base is not None and base.holder_count > 0:
            trend_7d = (current - base.holder_count) / base.holder_count * 100

    trend_period = None
    oldest = series[0].holder_count
    if oldest > 0:
        trend_period = (current - oldest) / oldest * 100

    return HolderTrendSnapshot(
        mint_address=mint_address,
        current=current,
        trend_7d=trend_7d,
        trend_period=trend_period,
        period_days=period_days,
        series=series,
    )


class VybeClient:
    """Read-only client for the Vybe analytics API.

    `fetch` returns a snapshot, None when the provider has nothing for the
    key (404), or raises an UpstreamError subclass.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        upstream = (config or {}).get("upstream", {})
        gems = (config or {}).get("detection", {}).get("wallet_gems", {})

        self.api_key = api_key or os.getenv("VYBE_API_KEY", "")
        self.base_url = base_url or os.getenv("VYBE_API_BASE_URL") or VYBE_API_URL
        self.timeout = upstream.get("timeout_seconds", 30.0)
        self.wallet_token_limit = upstream.get("wallet_token_limit", 10)
        self.whale_fetch_limit = upstream.get("whale_fetch_limit", 100)
        self.whale_min_usd = upstream.get("whale_min_usd", 1000)
        self.holder_lookback_days = upstream.get("holder_lookback_days", 30)
        self.token_cache_ttl = upstream.get("token_cache_ttl_seconds", 15 * 60)
        self.detail_concurrency = upstream.get("detail_concurrency", 5)

        self.gem_min_market_cap = gems.get("min_market_cap", 60_000)
        self.gem_max_market_cap = gems.get("max_market_cap", 10_000_000)
        self.gem_min_position_usd = gems.get("min_position_usd", 10)
        self.gem_scan_limit = gems.get("scan_limit", 50)

        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._token_cache: dict[str, tuple[float, Optional[dict]]] = {}

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    async def fetch(self, kind: ResourceKind, key: str, lookback_days: Optional[int] = None) -> Optional[Snapshot]:
        """Fetch the current state of one resource."""
        if kind is ResourceKind.TOKEN_PRICE:
            return await self.get_token_price(key)
        if kind is ResourceKind.WHALE_TRANSFER:
            return await self.get_whale_transfers(key)
        if kind is ResourceKind.WALLET_BALANCE:
            return await self.get_wallet_balance(key)
        if kind is ResourceKind.HOLDER_TREND:
            return await self.get_holder_trend(key, lookback_days or self.holder_lookback_days)
        if kind is ResourceKind.WALLET_GEMS:
            return await self.get_wallet_gems(key)
        raise ValueError(f"unknown resource kind: {kind}")

    async def _get(self, path: str, params: Optional[dict] = None):
        """GET a JSON document. Returns None on 404."""
        try:
            response = await self.client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"{path}: timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{path}: {e}") from e

        if response.status_code == 404:
            logger.debug("upstream_not_found", path=path)
            return None
        if response.status_code == 429:
            raise RateLimited(f"{path}: rate limited")
        if response.status_code >= 500:
            raise ServerError(f"{path}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise UpstreamError(f"{path}: HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(f"{path}: invalid JSON") from e

    async def _get_token_details(self, mint_address: str) -> Optional[dict]:
        """Token details with a short-lived cache, shared by gem scans."""
        now = self._clock()
        cached = self._token_cache.get(mint_address)
        if cached and now - cached[0] < self.token_cache_ttl:
            return cached[1]

        data = await self._get(f"/token/{mint_address}")
        if data is not None:
            _require_dict(data, "token details")
        self._token_cache[mint_address] = (now, data)
        return data

    def purge_token_cache(self):
        now = self._clock()
        expired = [m for m, (ts, _) in self._token_cache.items() if now - ts >= self.token_cache_ttl]
        for mint in expired:
            del self._token_cache[mint]

    async def get_token_price(self, mint_address: str) -> Optional[TokenPriceSnapshot]:
        data = await self._get(f"/token/{mint_address}")
        if data is None:
            return None
        return parse_token_details(mint_address, data)

    async def get_whale_transfers(self, mint_address: str) -> WhaleTransferSnapshot:
        data = await self._get("/token/transfers", params={
            "mintAddress": mint_address,
            "minUsdAmount": self.whale_min_usd,
            "limit": self.whale_fetch_limit,
            "sortByDesc": "amount",
        })
        if data is None:
            return WhaleTransferSnapshot(mint_address=mint_address)
        snapshot = parse_transfers(mint_address, data)
        logger.debug("fetched_whale_transfers", mint=mint_address, count=len(snapshot.transfers))
        return snapshot

    async def get_wallet_balance(self, wallet_address: str) -> Optional[WalletBalanceSnapshot]:
        data = await self._get(f"/account/token-balance/{wallet_address}", params={
            "limit": self.wallet_token_limit,
            "sortByDesc": "valueUsd",
        })
        if data is None:
            return None
        return parse_wallet_tokens(wallet_address, data)

    async def get_holder_trend(self, mint_address: str, days: int = 30) -> Optional[HolderTrendSnapshot]:
        now = datetime.now(timezone.utc)
        start = max(now - timedelta(days=days), EARLIEST_HOLDERS_TS_DATE)

        details = await self._get(f"/token/{mint_address}")
        current = 0
        if details is not None:
            details = _require_dict(details, "token details")
            current = int(_to_float(details.get("holderCount"), "holderCount"))

        data = await self._get(f"/token/{mint_address}/holders-ts", params={
            "interval": "day",
            "limit": days,
            "startTime": int(start.timestamp()),
            "endTime": int(now.timestamp()),
        })
        if data is None and details is None:
            return None

        series = parse_holders_series(data) if data is not None else []
        return compute_holder_trend(mint_address, current, series, now)

    async def get_wallet_gems(self, wallet_address: str) -> Optional[WalletGemsSnapshot]:
        data = await self._get(f"/account/token-balance/{wallet_address}", params={
            "limit": self.gem_scan_limit,
            "sortByDesc": "valueUsd",
        })
        if data is None:
            return None

        balance = parse_wallet_tokens(wallet_address, data)
        candidates = [h for h in balance.holdings if h.value_usd >= self.gem_min_position_usd]

        semaphore = asyncio.Semaphore(self.detail_concurrency)

        async def analyze(holding: TokenHolding) -> Optional[GemToken]:
            async with semaphore:
                details = await self._get_token_details(holding.mint_address)
            if details is None:
                return None
            return self._as_gem(holding, details)

        results = await asyncio.gather(*(analyze(h) for h in candidates), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]
        gems = sorted((g for g in results if g is not None), key=lambda g: g.value_usd, reverse=True)
        logger.debug("fetched_wallet_gems", wallet=wallet_address, scanned=len(candidates), gems=len(gems))
        return WalletGemsSnapshot(wallet_address=wallet_address, gems=gems)

    def _as_gem(self, holding: TokenHolding, details: dict) -> Optional[GemToken]:
        market_cap = _to_float(details.get("marketCap", details.get("mcap")), "marketCap")
        if not (self.gem_min_market_cap <= market_cap <= self.gem_max_market_cap):
            return None

        price = _to_float(details.get("price"), "price")
        price_1d = _to_float(details.get("price1d"), "price1d")
        price_7d = _to_float(details.get("price7d"), "price7d")

        return GemToken(
            mint_address=holding.mint_address,
            symbol=details.get("symbol") or holding.symbol,
            name=details.get("name") or holding.name,
            market_cap=market_cap,
            value_usd=holding.value_usd,
            price_usd=price,
            price_change_24h=(price - price_1d) / price_1d * 100 if price and price_1d > 0 else 0.0,
            price_change_7d=(price - price_7d) / price_7d * 100 if price and price_7d > 0 else 0.0,
        )
