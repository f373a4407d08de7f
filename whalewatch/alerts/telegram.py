"""Telegram notification handler."""
import os
from typing import Optional

import structlog
from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

logger = structlog.get_logger()


class TelegramNotifier:
    """Delivers alert payloads to subscriber chats.

    Operator chats (TELEGRAM_CHAT_IDS) additionally receive startup and
    health messages.
    """

    def __init__(self, bot_token: Optional[str] = None, chat_ids: Optional[str] = None, bot: Optional[Bot] = None):
        self.bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
        chat_ids_str = chat_ids or os.getenv("TELEGRAM_CHAT_IDS") or os.getenv("TELEGRAM_CHAT_ID")

        # Comma separated: "123,456,789"
        self.operator_chat_ids: list[str] = []
        if chat_ids_str:
            self.operator_chat_ids = [cid.strip() for cid in chat_ids_str.split(",") if cid.strip()]

        self._bot = bot

        if not self.bot_token and bot is None:
            logger.warning("telegram_token_missing")
        if not self.operator_chat_ids:
            logger.info("telegram_operator_chats_missing")

    @property
    def bot(self) -> Bot:
        if self._bot is None:
            self._bot = Bot(token=self.bot_token)
        return self._bot

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token or self._bot is not None)

    async def deliver(self, subscriber_id: str, payload: str) -> bool:
        """Send one payload to one chat. Failures are reported, not retried."""
        if not self.is_configured:
            return False
        try:
            await self.bot.send_message(
                chat_id=subscriber_id,
                text=payload,
                parse_mode=ParseMode.HTML,
                disable_web_page_preview=True,
            )
            return True
        except TelegramError as e:
            logger.warning("telegram_send_failed", chat_id=subscriber_id, error=str(e))
            return False

    async def _send_to_operators(self, text: str) -> int:
        """Send to every operator chat. Returns number of successful sends."""
        sent = 0
        for chat_id in self.operator_chat_ids:
            if await self.deliver(chat_id, text):
                sent += 1
        return sent

    async def send_startup_message(self):
        if not self.operator_chat_ids:
            return
        text = "🤖 <b>WhaleWatch Alert Engine Started</b>\n\nMonitoring tracked tokens and wallets..."
        sent = await self._send_to_operators(text)
        logger.info("startup_message_sent", chats=sent)

    async def send_health_check(self, stats: dict):
        if not self.operator_chat_ids:
            return
        open_circuits = stats.get("open_circuits") or []
        message = (
            f"📊 <b>Health Check</b>\n\n"
            f"• Checks run: {stats.get('checks', 0)}\n"
            f"• Alerts sent: {stats.get('alerts', 0)}\n"
            f"• Failed deliveries: {stats.get('failed_deliveries', 0)}\n"
            f"• API success rate: {stats.get('api_success_rate', 100.0)}%\n"
            f"• Open circuits: {', '.join(open_circuits) if open_circuits else 'none'}\n"
            f"• Uptime: {stats.get('uptime', 'N/A')}"
        )
        await self._send_to_operators(message)
