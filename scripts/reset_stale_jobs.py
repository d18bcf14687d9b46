#!/usr/bin/env python3
"""
Reset crawl jobs stuck in in_progress back to pending.

A worker killed mid-job leaves its job in_progress. Workers never reclaim
such jobs on their own; run this once the worker that held them is gone.

Run with: python scripts/reset_stale_jobs.py [--minutes N]
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlmodel import Session  # noqa: E402

from crawler.core.config import settings  # noqa: E402
from crawler.db import engine  # noqa: E402
from crawler.services.task_queue import reset_stale_jobs  # noqa: E402

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reset stale in_progress crawl jobs")
    parser.add_argument(
        "--minutes",
        type=int,
        default=settings.CRAWL_STALE_TIMEOUT_MINUTES,
        help=f"Reset jobs not updated for this many minutes (default: {settings.CRAWL_STALE_TIMEOUT_MINUTES})",
    )
    args = parser.parse_args()

    with Session(engine) as session:
        count = reset_stale_jobs(session, settings.CRAWL_JOB_KIND, timeout_minutes=args.minutes)
    print(f"Reset {count} stale jobs to pending.")
