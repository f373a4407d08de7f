"""Tests for alert text rendering."""
import pytest

from whalewatch.alerts.formatting import format_event, format_number, short_address
from whalewatch.models import ChangeEvent, Resource, ResourceKind

WALLET = Resource(ResourceKind.WALLET_GEMS, "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU")


@pytest.mark.parametrize("value, expected", [
    (950, "950.00"),
    (12_346, "12.35K"),
    (2_500_000, "2.50M"),
    (-3_000_000_000, "-3.00B"),
])
def test_format_number(value, expected):
    assert format_number(value) == expected


def test_short_address():
    assert short_address("7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU") == "7xKX...gAsU"
    assert short_address("short") == "short"


def test_new_gem_message():
    event = ChangeEvent(
        resource=WALLET,
        event_type="new_gem",
        signature="gem:GEM",
        metrics={
            "wallet": WALLET.key, "mint": "GEMmint", "symbol": "GEM", "name": "Gem Token",
            "market_cap": 450_000, "value_usd": 320, "price_change_24h": 12.5, "price_change_7d": -3.0,
        },
    )
    text = format_event(event)

    assert "GEM (Gem Token)" in text
    assert "$450.00K" in text
    assert "+12.50%" in text
    assert "/token/GEMmint" in text


def test_price_message_without_market_cap():
    event = ChangeEvent(
        resource=Resource(ResourceKind.TOKEN_PRICE, "mint"),
        event_type="price_drop",
        signature="sig",
        metrics={"symbol": "XYZ", "price": 0.5, "change_percent": -7.25, "market_cap": None},
    )
    text = format_event(event)
    assert "XYZ price drop" in text
    assert "-7.25%" in text


def test_upstream_strings_are_escaped():
    event = ChangeEvent(
        resource=Resource(ResourceKind.WHALE_TRANSFER, "mint"),
        event_type="whale_transfer",
        signature="tx:abc",
        metrics={
            "symbol": "<b>A&B</b>", "usd_value": 50_000, "amount": 10,
            "sender": "senderAddress111", "receiver": "receiverAddress222",
        },
    )
    text = format_event(event)
    assert "&lt;b&gt;A&amp;B&lt;/b&gt;" in text
    assert "<b>A&B</b>" not in text
