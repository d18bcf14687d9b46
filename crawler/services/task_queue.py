"""
Crawl Job Queue Service

Persistent job queue shared by every crawler process. Jobs are stored in the
database, so pending work survives restarts and several worker processes can
drain the same queue.

Claiming is a select followed by an UPDATE predicated on the row still being
pending. If another worker wins the race the UPDATE touches zero rows and the
selection is retried, so a job is never held in_progress by two workers.

Usage:
    from crawler.services.task_queue import (
        enqueue_job,
        claim_next_job,
        mark_done,
        mark_retry,
        mark_failed,
    )

    with Session(engine) as session:
        enqueue_job(session, "player_matches", {"profile_id": "123"}, priority=5)

        job = claim_next_job(session, "player_matches")
        if job:
            ...
            mark_done(session, job.id)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from crawler.core.db_utils import is_duplicate_error
from crawler.core.typing import col, ensure_utc, utc_now
from crawler.models.crawl_job import CrawlJob, JobStatus
from crawler.models.crawl_run import CrawlRun
from crawler.scraper.coerce import to_id_string

logger = logging.getLogger(__name__)

# How many lost claim races to tolerate before reporting "no job"
MAX_CLAIM_RACES = 5

MAX_ERROR_LENGTH = 1000


def _truncate_error(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH] if len(error) > MAX_ERROR_LENGTH else error


def payload_profile_id(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """The player identifier of a job payload, accepting both key spellings."""
    if not isinstance(payload, dict):
        return None
    return to_id_string(payload.get("profile_id", payload.get("profileId")))


def enqueue_job(
    session: Session,
    kind: str,
    payload: Dict[str, Any],
    priority: int = 10,
) -> Optional[CrawlJob]:
    """
    Enqueue a new pending job.

    The (kind, profile id) pair is unique. Inserting a job that already exists
    trips the constraint and is treated as success: nothing is written and
    None is returned.

    Args:
        session: Database session
        kind: Job discriminator, e.g. "player_matches"
        payload: Job payload, must contain "profile_id"
        priority: Lower values = more urgent

    Returns:
        The created CrawlJob, or None when the job already existed

    Raises:
        ValueError: payload has no profile id
    """
    dedup_key = payload_profile_id(payload)
    if not dedup_key:
        raise ValueError(f"Job payload missing profile_id: {payload!r}")

    job = CrawlJob(kind=kind, payload=payload, dedup_key=dedup_key, priority=priority)
    session.add(job)
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        if not is_duplicate_error(e):
            raise
        logger.debug(f"Job already exists for kind={kind}, profile_id={dedup_key}")
        return None

    session.refresh(job)
    logger.info(f"Enqueued job id={job.id} kind={kind} profile_id={dedup_key} priority={priority}")
    return job


def _select_candidate_id(session: Session, kind: str, now: datetime) -> Optional[int]:
    stmt = (
        select(CrawlJob.id)
        .where(
            col(CrawlJob.kind) == kind,
            col(CrawlJob.status) == JobStatus.PENDING.value,
            col(CrawlJob.run_after) <= now,
        )
        .order_by(
            col(CrawlJob.priority).asc(),
            col(CrawlJob.run_after).asc(),
            col(CrawlJob.id).asc(),
        )
        .limit(1)
        # Skip rows another worker is claiming right now (PostgreSQL; ignored by SQLite)
        .with_for_update(skip_locked=True)
    )
    return session.exec(stmt).first()


def try_claim(session: Session, job_id: int, now: Optional[datetime] = None) -> bool:
    """
    Conditionally move one job from pending to in_progress.

    The UPDATE only matches while the row is still pending, so of any number of
    concurrent callers exactly one sees rowcount == 1.

    Returns:
        True if this caller now holds the job
    """
    now = now or utc_now()
    stmt = (
        update(CrawlJob)
        .where(
            col(CrawlJob.id) == job_id,
            col(CrawlJob.status) == JobStatus.PENDING.value,
        )
        .values(
            status=JobStatus.IN_PROGRESS.value,
            attempts=CrawlJob.attempts + 1,
            updated_at=now,
        )
    )
    result = session.execute(stmt)
    session.commit()
    return (result.rowcount or 0) == 1


def claim_next_job(
    session: Session,
    kind: str,
    now: Optional[datetime] = None,
) -> Optional[CrawlJob]:
    """
    Claim the most urgent eligible job.

    Eligible: status pending and run_after <= now. Ordered by priority (lower
    first), then run_after, then id.

    Args:
        session: Database session
        kind: Job discriminator to claim from
        now: Clock override

    Returns:
        The claimed CrawlJob (attempts already incremented), or None
    """
    now = now or utc_now()

    for _ in range(MAX_CLAIM_RACES):
        job_id = _select_candidate_id(session, kind, now)
        if job_id is None:
            session.rollback()
            return None

        if not try_claim(session, job_id, now):
            logger.debug(f"Lost claim race for job id={job_id}, reselecting")
            continue

        job = session.get(CrawlJob, job_id, populate_existing=True)
        if job is None:
            return None
        logger.info(
            f"Claimed job id={job.id} profile_id={job.dedup_key} "
            f"priority={job.priority} attempt={job.attempts}"
        )
        return job

    logger.warning(f"Gave up claiming after {MAX_CLAIM_RACES} lost races")
    return None


def _update_job(session: Session, job_id: int, **values: Any) -> bool:
    values.setdefault("updated_at", utc_now())
    result = session.execute(update(CrawlJob).where(col(CrawlJob.id) == job_id).values(**values))
    session.commit()
    if not result.rowcount:
        logger.warning(f"Job id={job_id} not found for update")
        return False
    return True


def mark_done(session: Session, job_id: int) -> bool:
    """Mark a job as successfully completed (terminal)."""
    updated = _update_job(session, job_id, status=JobStatus.DONE.value, last_error=None)
    if updated:
        logger.info(f"Completed job id={job_id}")
    return updated


def mark_failed(session: Session, job_id: int, error: str, run_after: Optional[datetime] = None) -> bool:
    """Mark a job as permanently failed (terminal, never reclaimed)."""
    values: Dict[str, Any] = {"status": JobStatus.FAILED.value, "last_error": _truncate_error(error)}
    if run_after is not None:
        values["run_after"] = run_after
    updated = _update_job(session, job_id, **values)
    if updated:
        logger.warning(f"Job id={job_id} permanently failed: {error[:100]}")
    return updated


def mark_retry(session: Session, job_id: int, run_after: datetime, error: str) -> bool:
    """Return a job to pending, not eligible again before run_after."""
    updated = _update_job(
        session,
        job_id,
        status=JobStatus.PENDING.value,
        run_after=run_after,
        last_error=_truncate_error(error),
    )
    if updated:
        logger.info(f"Job id={job_id} rescheduled for {run_after.isoformat()}: {error[:100]}")
    return updated


def defer_job(session: Session, job_id: int, run_after: datetime) -> bool:
    """
    Return a freshly claimed job to pending without consuming an attempt.

    Used by the cooldown path: the claim's increment is given back so a player
    that is merely fresh never drifts toward max_attempts.
    """
    result = session.execute(
        update(CrawlJob)
        .where(col(CrawlJob.id) == job_id)
        .values(
            status=JobStatus.PENDING.value,
            run_after=run_after,
            last_error=None,
            attempts=case((col(CrawlJob.attempts) > 0, CrawlJob.attempts - 1), else_=0),
            updated_at=utc_now(),
        )
    )
    session.commit()
    return bool(result.rowcount)


def reset_stale_jobs(
    session: Session,
    kind: str,
    timeout_minutes: int = 5,
) -> int:
    """
    Reset jobs stuck in_progress to pending.

    A worker killed mid-job leaves its job in_progress forever. This is the
    manual recovery path; workers never call it on their own.

    Returns:
        Number of jobs reset
    """
    cutoff = utc_now() - timedelta(minutes=timeout_minutes)
    result = session.execute(
        update(CrawlJob)
        .where(
            col(CrawlJob.kind) == kind,
            col(CrawlJob.status) == JobStatus.IN_PROGRESS.value,
            col(CrawlJob.updated_at) < cutoff,
        )
        .values(
            status=JobStatus.PENDING.value,
            last_error="Reset after being stuck in progress",
            updated_at=utc_now(),
        )
    )
    session.commit()

    count = result.rowcount or 0
    if count > 0:
        logger.warning(f"Reset {count} stale jobs to pending")
    return count


def get_queue_stats(session: Session, kind: str) -> Dict[str, int]:
    """
    Get job counts per status.

    Returns:
        Dict like {"pending": N, "in_progress": N, "done": N, "failed": N, "total": N}
    """
    stats: Dict[str, int] = {status.value: 0 for status in JobStatus}

    stmt = (
        select(CrawlJob.status, func.count())
        .where(col(CrawlJob.kind) == kind)
        .group_by(CrawlJob.status)
    )
    for status, count in session.exec(stmt).all():
        stats[status] = count

    stats["total"] = sum(stats[status.value] for status in JobStatus)
    return stats


def get_pending_breakdown(
    session: Session,
    kind: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Split pending jobs into ready-now vs waiting (cooldown or backoff).

    Returns:
        Dict with ready_now, waiting, with_errors, total_pending and next_run_after
    """
    now = now or utc_now()
    pending = (
        col(CrawlJob.kind) == kind,
        col(CrawlJob.status) == JobStatus.PENDING.value,
    )

    total = session.exec(select(func.count()).select_from(CrawlJob).where(*pending)).one()
    ready = session.exec(
        select(func.count()).select_from(CrawlJob).where(*pending, col(CrawlJob.run_after) <= now)
    ).one()
    with_errors = session.exec(
        select(func.count()).select_from(CrawlJob).where(*pending, col(CrawlJob.last_error).is_not(None))
    ).one()
    next_run_after = session.exec(
        select(func.min(CrawlJob.run_after)).where(*pending, col(CrawlJob.run_after) > now)
    ).one()

    return {
        "ready_now": ready,
        "waiting": total - ready,
        "with_errors": with_errors,
        "total_pending": total,
        "next_run_after": ensure_utc(next_run_after),
    }


def get_recent_run_stats(session: Session, hours: int = 24) -> Dict[str, int]:
    """Run totals over the last `hours`: runs, successes, failures, open runs, upstream requests."""
    since = utc_now() - timedelta(hours=hours)
    window = col(CrawlRun.started_at) >= since

    runs = session.exec(select(func.count()).select_from(CrawlRun).where(window)).one()
    successes = session.exec(
        select(func.count()).select_from(CrawlRun).where(window, col(CrawlRun.success).is_(True))
    ).one()
    still_open = session.exec(
        select(func.count()).select_from(CrawlRun).where(window, col(CrawlRun.finished_at).is_(None))
    ).one()
    requests = session.exec(select(func.coalesce(func.sum(CrawlRun.request_count), 0)).where(window)).one()

    return {
        "runs": runs,
        "successes": successes,
        "failures": runs - successes - still_open,
        "open": still_open,
        "requests": requests,
    }


__all__ = [
    "payload_profile_id",
    "enqueue_job",
    "try_claim",
    "claim_next_job",
    "mark_done",
    "mark_failed",
    "mark_retry",
    "defer_job",
    "reset_stale_jobs",
    "get_queue_stats",
    "get_pending_breakdown",
    "get_recent_run_stats",
]
