"""
Crawl worker process.

Runs the orchestrator loop: claims queued crawls from the database, executes
them with retries and heartbeats, and relays state changes to the API process
so connected browsers get live updates.
"""
import asyncio
import logging
import signal

import sentry_sdk

from crawlpulse.core.config import settings
from crawlpulse.core.db import engine
from crawlpulse.notifications import RelayNotifier
from crawlpulse.orchestrator import Orchestrator
from crawlpulse.worker_tasks.crawler import build_crawl_task

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def run_worker() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 不支持
            pass

    notifier = RelayNotifier()
    orchestrator = Orchestrator(
        engine=engine,
        task=build_crawl_task(engine, notifier),
        notifier=notifier,
    )
    try:
        await orchestrator.run(stop_event)
    finally:
        await notifier.aclose()


def main() -> None:
    if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
        sentry_sdk.init(dsn=str(settings.SENTRY_DSN))
    logger.info(f"Starting crawl worker (relay: {settings.NOTIFY_RELAY_URL})")
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
