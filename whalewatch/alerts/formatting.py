"""Render ChangeEvents as Telegram HTML."""
import html

from whalewatch.models import ChangeEvent

VYBE_URL = "https://vybe.fyi"


def format_number(num: float) -> str:
    sign = "-" if num < 0 else ""
    num = abs(num)
    if num >= 1_000_000_000:
        return f"{sign}{num / 1_000_000_000:.2f}B"
    if num >= 1_000_000:
        return f"{sign}{num / 1_000_000:.2f}M"
    if num >= 1_000:
        return f"{sign}{num / 1_000:.2f}K"
    return f"{sign}{num:.2f}"


def _text(value) -> str:
    """Upstream strings are untrusted inside HTML."""
    return html.escape(str(value))


def short_address(address: str) -> str:
    if len(address) <= 10:
        return address
    return f"{address[:4]}...{address[-4:]}"


def format_event(event: ChangeEvent) -> str:
    """Pure function of the event; no lookups."""
    m = event.metrics
    key = event.resource.key
    kind = event.event_type

    if kind in ("price_surge", "price_drop"):
        arrow = "📈" if kind == "price_surge" else "📉"
        return (
            f"{arrow} <b>{_text(m.get('symbol', 'Token'))} price {'surge' if kind == 'price_surge' else 'drop'}</b>\n\n"
            f"<b>Change:</b> {m['change_percent']:+.2f}%\n"
            f"<b>Price:</b> ${m['price']:.6g}\n"
            f"<b>Market cap:</b> ${format_number(m.get('market_cap') or 0)}\n\n"
            f"🔗 <a href=\"{VYBE_URL}/token/{key}\">View on Vybe</a>"
        )

    if kind == "whale_transfer":
        return (
            f"🐋 <b>Whale Alert!</b>\n\n"
            f"<b>Token:</b> {_text(m.get('symbol', 'Unknown'))}\n"
            f"<b>Amount:</b> {format_number(m['amount'])}\n"
            f"<b>USD Value:</b> ${format_number(m['usd_value'])}\n"
            f"<b>From:</b> <code>{short_address(m['sender'])}</code>\n"
            f"<b>To:</b> <code>{short_address(m['receiver'])}</code>\n\n"
            f"🔗 <a href=\"{VYBE_URL}/token/{key}\">View on Vybe</a>"
        )

    if kind == "wallet_change":
        lines = [
            "👀 <b>Wallet Activity Update</b>\n",
            f"<b>Wallet:</b> <code>{key}</code>",
            f"<b>Total Value:</b> ${format_number(m['total_value'])}",
        ]
        if m.get("change_percent") is not None:
            lines.append(f"<b>Change:</b> {format_number(m['change_usd'])} USD ({m['change_percent']:+.2f}%)")
        if m.get("added_mints"):
            lines.append(f"<b>New tokens:</b> {len(m['added_mints'])}")
        if m.get("removed_mints"):
            lines.append(f"<b>Removed tokens:</b> {len(m['removed_mints'])}")
        if m.get("top_holdings"):
            lines.append("\n<b>Top Holdings:</b>")
            lines.extend(f"• {_text(h['symbol'])}: ${format_number(h['value_usd'])}" for h in m["top_holdings"])
        lines.append(f"\n🔗 <a href=\"{VYBE_URL}/wallets/{key}\">View Wallet on Vybe</a>")
        return "\n".join(lines)

    if kind == "wallet_anomaly":
        # No delta for anomalies
        return (
            f"⚠️ <b>Unusual wallet reading</b>\n\n"
            f"<b>Wallet:</b> <code>{key}</code>\n"
            f"The reported balance changed abruptly and may be unreliable. "
            f"Check the wallet before acting.\n\n"
            f"🔗 <a href=\"{VYBE_URL}/wallets/{key}\">View Wallet on Vybe</a>"
        )

    if kind == "holder_growth_accelerating":
        return (
            f"👥 <b>Holder Growth Accelerating</b>\n\n"
            f"<code>{short_address(key)}</code> holders up {m['trend_7d']:.1f}% in 7 days\n"
            f"<b>Current holders:</b> {m['current_holders']:,}"
        )

    if kind == "holder_decline":
        return (
            f"👥 <b>Significant Holder Decline</b>\n\n"
            f"<code>{short_address(key)}</code> lost {abs(m['trend_7d']):.1f}% of holders in 7 days\n"
            f"<b>Current holders:</b> {m['current_holders']:,}"
        )

    if kind == "holder_sustained_growth":
        return (
            f"📊 <b>Consistent Holder Growth</b>\n\n"
            f"<code>{short_address(key)}</code> gained holders for {m['consecutive_days']} consecutive days\n"
            f"<b>Growth:</b> {m['growth_percent']}%\n"
            f"<b>Current holders:</b> {m['current_holders']:,}"
        )

    if kind == "new_gem":
        return (
            f"💎 <b>New Low Cap Gem</b>\n\n"
            f"<b>Wallet:</b> <code>{short_address(key)}</code>\n"
            f"<b>Token:</b> {_text(m['symbol'])} ({_text(m['name'])})\n"
            f"<b>Market cap:</b> ${format_number(m['market_cap'])}\n"
            f"<b>Position:</b> ${format_number(m['value_usd'])}\n"
            f"<b>24h:</b> {m['price_change_24h']:+.2f}% | <b>7d:</b> {m['price_change_7d']:+.2f}%\n\n"
            f"🔗 <a href=\"{VYBE_URL}/token/{m['mint']}\">View on Vybe</a>"
        )

    return f"🔔 <b>{kind}</b> for <code>{key}</code>"
