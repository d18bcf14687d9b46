"""
Seed the crawl queue from the players table.

One job per known player. Players that already have a job are skipped by the
(kind, dedup_key) constraint, so seeding is safe to re-run.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlmodel import Session, select

from crawler.core.typing import col
from crawler.models.player import Player
from crawler.services.task_queue import enqueue_job

logger = logging.getLogger(__name__)


@dataclass
class SeedResult:
    inserted: int = 0
    skipped: int = 0
    scanned: int = 0


def seed_player_match_jobs(
    session: Session,
    *,
    kind: str = "player_matches",
    priority: int = 5,
    page_size: int = 500,
    limit: Optional[int] = None,
) -> SeedResult:
    """
    Enqueue a crawl job for every player, paging through them by profile_id.

    Args:
        session: Database session
        kind: Job kind to enqueue
        priority: Priority of the seeded jobs
        page_size: Players read per page
        limit: Stop after roughly this many players (None or 0 = all)

    Returns:
        SeedResult with inserted/skipped/scanned counts
    """
    result = SeedResult()
    page_size = max(1, page_size)
    offset = 0

    while True:
        stmt = (
            select(Player.profile_id, Player.current_alias)
            .order_by(col(Player.profile_id).asc())
            .offset(offset)
            .limit(page_size)
        )
        page = session.exec(stmt).all()
        if not page:
            break

        for profile_id, current_alias in page:
            payload = {"profile_id": str(profile_id), "alias": current_alias}
            if enqueue_job(session, kind, payload, priority=priority) is not None:
                result.inserted += 1
            else:
                result.skipped += 1

        result.scanned += len(page)
        offset += len(page)
        logger.info(f"[Seed] Scanned {result.scanned} players ({result.inserted} inserted, {result.skipped} skipped)")

        if limit and result.scanned >= limit:
            break

    return result


__all__ = ["SeedResult", "seed_player_match_jobs"]
