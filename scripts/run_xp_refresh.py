#!/usr/bin/env python3
"""
XP Refresh - Re-reads XP/level for every known player and crawls the recent
matches of players whose XP went up.

Run with: python scripts/run_xp_refresh.py

Configuration: XP_REFRESH_* variables (batch size, concurrency, match count,
request cap, delay), see crawler/core/config.py.
"""

import asyncio
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
from crawler.services.xp_refresh import run_refresh  # noqa: E402

logger = get_logger("crawler.xp_refresh")


async def main() -> int:
    bind_worker_context(worker="xp-refresh")

    if not check_db_connection(engine):
        logger.error("database unreachable at startup, exiting")
        return 1

    limiter = RateLimiter(
        request_cap=settings.XP_REFRESH_RELIC_REQUEST_CAP,
        delay_seconds=settings.XP_REFRESH_RELIC_DELAY_MS / 1000,
    )
    async with RelicClient(limiter, user_agent=f"{settings.RELIC_USER_AGENT} (xp-refresh)") as client:
        stats = await run_refresh(engine, client, settings)

    logger.info(
        "xp refresh complete",
        processed=stats.processed,
        updated=stats.updated,
        xp_increased=stats.xp_increased,
        matches_inserted=stats.matches_inserted,
        failed=stats.failed,
    )
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
