"""Main entry point for the WhaleWatch alert engine."""
import asyncio
from datetime import datetime
from pathlib import Path

import structlog
import yaml
from dotenv import load_dotenv

from whalewatch.alerts.dispatcher import Dispatcher
from whalewatch.alerts.telegram import TelegramNotifier
from whalewatch.api.breaker import BreakerRegistry
from whalewatch.api.vybe import VybeClient
from whalewatch.detection.detector import ChangeDetector
from whalewatch.engine import AlertEngine
from whalewatch.scheduler import Scheduler
from whalewatch.storage.database import Database
from whalewatch.storage.dedup import DedupStore
from whalewatch.storage.registry import SubscriberRegistry

# Load environment variables
load_dotenv()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def load_config() -> dict:
    """Load configuration from YAML file."""
    config_path = Path(__file__).parent.parent / "config.yaml"

    if not config_path.exists():
        logger.warning("config_file_not_found", path=str(config_path))
        return {}

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    logger.info("config_loaded", path=str(config_path))
    return config


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if days > 0:
        return f"{days}d {hours % 24}h {minutes % 60}m"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class WhaleWatchBot:
    """Wires the alert engine components together and owns their lifecycle."""

    def __init__(self, config: dict):
        self.config = config
        self.db = Database()
        self.client = VybeClient(config)
        self.notifier = TelegramNotifier()

        self.breakers = BreakerRegistry(config)
        self.registry = SubscriberRegistry(self.db, config)
        self.dedup = DedupStore(self.db, config)
        self.detector = ChangeDetector(config)
        self.dispatcher = Dispatcher(self.notifier, config)
        self.engine = AlertEngine(
            self.client, self.breakers, self.detector, self.dedup, self.registry, self.dispatcher
        )
        self.scheduler = Scheduler(self.engine, self.registry, config)

        scheduler_config = config.get("scheduler", {})
        self.scheduler.add_periodic(
            "purge_expired", scheduler_config.get("purge_interval_seconds", 3600), self.purge_expired
        )
        self.scheduler.add_periodic(
            "health_report", scheduler_config.get("health_interval_seconds", 6 * 3600), self.send_health_report
        )

        self.start_time = datetime.now()

    def health_stats(self) -> dict:
        breakers = self.breakers.health_status()
        total = sum(b["total_calls"] for b in breakers)
        ok = sum(b["successful_calls"] for b in breakers)
        return {
            "checks": self.engine.checks_run,
            "alerts": self.engine.alerts_sent,
            "failed_deliveries": self.dispatcher.stats["failed"],
            "api_success_rate": round(ok / total * 100, 1) if total else 100.0,
            "open_circuits": self.breakers.open_endpoints,
            "uptime": format_uptime((datetime.now() - self.start_time).total_seconds()),
        }

    async def purge_expired(self):
        await self.db.purge_expired()
        self.client.purge_token_cache()

    async def send_health_report(self):
        stats = self.health_stats()
        logger.info("health_report", **stats)
        await self.notifier.send_health_check(stats)

    async def start(self):
        """Start the bot."""
        logger.info("bot_starting")

        await self.db.connect()
        await self.notifier.send_startup_message()

        async with self.client:
            try:
                await self.scheduler.run_forever()
            finally:
                await self.scheduler.stop()

    async def shutdown(self):
        """Graceful shutdown."""
        logger.info("bot_shutting_down")
        await self.scheduler.stop()
        await self.db.close()


async def main():
    """Main entry point."""
    config = load_config()
    bot = WhaleWatchBot(config)

    try:
        await bot.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("keyboard_interrupt")
    finally:
        await bot.shutdown()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
