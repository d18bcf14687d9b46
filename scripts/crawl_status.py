#!/usr/bin/env python3
"""
Print crawl queue status: jobs per status, pending jobs ready vs waiting,
and run totals for the last 24 hours.

Run with: python scripts/crawl_status.py [--hours 24]
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
from crawler.services.task_queue import (  # noqa: E402
    get_pending_breakdown,
    get_queue_stats,
    get_recent_run_stats,
)


def main(hours: int) -> None:
    kind = settings.CRAWL_JOB_KIND
    with Session(engine) as session:
        stats = get_queue_stats(session, kind)
        pending = get_pending_breakdown(session, kind)
        runs = get_recent_run_stats(session, hours=hours)

    print(f"=== Crawl queue ({kind}) ===")
    for status in ("pending", "in_progress", "done", "failed"):
        print(f"  {status:<12} {stats[status]:>8}")
    print(f"  {'total':<12} {stats['total']:>8}")

    print("\n=== Pending ===")
    print(f"  ready now    {pending['ready_now']:>8}")
    print(f"  waiting      {pending['waiting']:>8}")
    print(f"  with errors  {pending['with_errors']:>8}")
    next_run = pending["next_run_after"]
    print(f"  next run at  {next_run.isoformat() if next_run else '-'}")

    print(f"\n=== Runs (last {hours}h) ===")
    print(f"  runs         {runs['runs']:>8}")
    print(f"  successes    {runs['successes']:>8}")
    print(f"  failures     {runs['failures']:>8}")
    print(f"  still open   {runs['open']:>8}")
    print(f"  requests     {runs['requests']:>8}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Show crawl queue status")
    parser.add_argument("--hours", type=int, default=24, help="Run statistics window in hours (default: 24)")
    args = parser.parse_args()
    main(args.hours)
