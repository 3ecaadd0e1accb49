#!/usr/bin/env python3
"""
DomainBay lifecycle worker process
Runs the job pipeline until SIGINT/SIGTERM, then shuts down gracefully
"""

import asyncio
import logging
import signal
import sys

from telegram import Bot

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# SECURITY FIX: Prevent httpx from logging sensitive URLs with bot tokens
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from admin_alerts import AdminAlertSystem  # noqa: E402
from config import AdminAlertConfig, PipelineConfig  # noqa: E402
from services.notifier import TelegramNotifier  # noqa: E402
from services.registrar_client import HttpRegistrarClient  # noqa: E402
from services.worker_pool import WorkerPool  # noqa: E402
from storage import build_store  # noqa: E402


async def build_pool(config: PipelineConfig) -> WorkerPool:
    store = build_store(config)
    initialize = getattr(store, 'initialize', None)
    if initialize is not None:
        await initialize()

    registrar = HttpRegistrarClient(
        config.registrar_base_url,
        config.registrar_api_key,
        config.registrar_api_secret,
        timeout=config.registrar_timeout_seconds,
    )

    bot = None
    if config.telegram_bot_token:
        bot = Bot(config.telegram_bot_token)
        await bot.initialize()
    else:
        logger.warning("⚠️ TELEGRAM_BOT_TOKEN not set - notifications and alerts will be logged only")

    alerts = AdminAlertSystem(AdminAlertConfig(), bot=bot)
    notifier = TelegramNotifier(bot) if bot is not None else None
    return WorkerPool(store, registrar, config, notifier=notifier, alerts=alerts)


async def main_worker_loop() -> bool:
    config = PipelineConfig()
    pool = await build_pool(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pool.request_stop)

    logger.info("🚀 Starting DomainBay lifecycle workers...")
    try:
        await pool.run_forever()
    finally:
        if pool.notifier is not None:
            await pool.notifier.bot.shutdown()
    return True


def main():
    """Main entry point"""
    try:
        result = asyncio.run(main_worker_loop())
        logger.info("✅ Workers stopped normally")
        return result
    except Exception as e:
        logger.error(f"💥 Critical worker failure: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
