#!/usr/bin/env python3
"""
Seed player match crawl jobs for every player already in the database.

Run with: python scripts/seed_player_match_jobs.py

Env: SEED_PLAYER_BATCH_SIZE, SEED_PLAYER_LIMIT (0 = all), SEED_JOB_PRIORITY.
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlmodel import Session  # noqa: E402

from crawler.core.config import settings  # noqa: E402
from crawler.db import engine  # noqa: E402
from crawler.services.seeding import seed_player_match_jobs  # noqa: E402

if __name__ == "__main__":
    print("Seeding player match crawl jobs...")
    with Session(engine) as session:
        result = seed_player_match_jobs(
            session,
            kind=settings.CRAWL_JOB_KIND,
            priority=settings.SEED_JOB_PRIORITY,
            page_size=settings.SEED_PLAYER_BATCH_SIZE,
            limit=settings.SEED_PLAYER_LIMIT or None,
        )
    print(
        f"Job enqueue complete. Players scanned: {result.scanned}. "
        f"Jobs inserted: {result.inserted}. Skipped (duplicates): {result.skipped}."
    )
