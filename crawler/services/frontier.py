"""
Crawl frontier expansion.

Every profile id discovered in a match payload becomes a pending crawl job.
Already-known players hit the (kind, dedup_key) constraint and are skipped.
"""

import logging
from typing import Iterable, Mapping, Optional

from sqlmodel import Session

from crawler.services.task_queue import enqueue_job

logger = logging.getLogger(__name__)


def clamp_priority(priority: int, floor: int, ceiling: int) -> int:
    """Clamp into [floor, ceiling]; a floor above the ceiling wins."""
    return max(floor, min(ceiling, priority))


def expand_frontier(
    session: Session,
    discovered_profile_ids: Iterable[str],
    alias_hints: Optional[Mapping[str, Optional[str]]] = None,
    *,
    kind: str,
    priority: int,
    floor: int,
    ceiling: int,
) -> int:
    """
    Enqueue a crawl job for each discovered profile id.

    Returns:
        Number of jobs actually inserted (duplicates are not counted)
    """
    alias_hints = alias_hints or {}
    job_priority = clamp_priority(priority, floor, ceiling)

    enqueued = 0
    for profile_id in dict.fromkeys(discovered_profile_ids):
        if not profile_id:
            continue
        payload = {"profile_id": profile_id, "alias": alias_hints.get(profile_id)}
        if enqueue_job(session, kind, payload, priority=job_priority) is not None:
            enqueued += 1

    if enqueued:
        logger.info(f"Frontier: enqueued {enqueued} new {kind} jobs at priority {job_priority}")
    return enqueued


__all__ = ["clamp_priority", "expand_frontier"]
