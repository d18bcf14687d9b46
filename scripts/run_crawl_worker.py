#!/usr/bin/env python3
"""
Crawl Worker - Processes player match-history jobs from the persistent queue.

Run with: python scripts/run_crawl_worker.py

Jobs live in the crawl_jobs table, so a crashed worker loses nothing: its
pending work is picked up on restart. A job left in_progress by a killed
worker stays there until scripts/reset_stale_jobs.py is run.

Several workers may run at once against the same database; claiming is an
atomic conditional update, so each job is processed by exactly one of them.

Configuration is read from the environment (CRAWL_* variables, see
crawler/core/config.py).
"""

import asyncio
import signal
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from crawler.core.config import settings  # noqa: E402
from crawler.core.db_utils import check_db_connection  # noqa: E402
from crawler.core.logging_config import bind_worker_context, get_logger  # noqa: E402
from crawler.core.rate_limit import RateLimiter  # noqa: E402
from crawler.db import engine  # noqa: E402
from crawler.scraper.relic import RelicClient  # noqa: E402
from crawler.services.crawl_worker import worker_loop  # noqa: E402

logger = get_logger("crawler.worker")

# Global shutdown flag
shutdown_requested = False


def handle_shutdown(signum, frame):
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    global shutdown_requested
    logger.info("shutdown requested, finishing current job", signal=signum)
    shutdown_requested = True


async def main() -> int:
    """Main entry point."""
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    bind_worker_context(worker="crawl-worker", kind=settings.CRAWL_JOB_KIND)

    if not check_db_connection(engine):
        logger.error("database unreachable at startup, exiting")
        return 1

    limiter = RateLimiter(
        request_cap=settings.CRAWL_RELIC_REQUEST_CAP,
        delay_seconds=settings.CRAWL_RELIC_DELAY_MS / 1000,
    )
    logger.info(
        "starting player match crawler",
        kind=settings.CRAWL_JOB_KIND,
        request_cap=settings.CRAWL_RELIC_REQUEST_CAP,
        delay_ms=settings.CRAWL_RELIC_DELAY_MS,
        cooldown_minutes=settings.CRAWL_COOLDOWN_MINUTES,
        exit_on_idle=settings.CRAWL_EXIT_ON_IDLE,
    )

    async with RelicClient(limiter) as client:
        await worker_loop(engine, client, settings, should_stop=lambda: shutdown_requested)

    logger.info("cleanup complete")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
