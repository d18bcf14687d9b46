"""
Backoff and cooldown policy for crawl jobs.

Failure path:
    run_after = now + 2 ** clamp(attempts, 1, 6) minutes
    status    = failed if attempts >= max_attempts else pending

`attempts` is the value already incremented by the claim, so the first failure
waits 2 minutes and the sixth onwards waits 64.

Cooldown path:
    a player seen within the cooldown window is not re-crawled; the job goes
    back to pending until last_seen_at + cooldown.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session

from crawler.core.errors import ErrorKind
from crawler.core.typing import ensure_utc, utc_now
from crawler.models.crawl_job import CrawlJob, JobStatus
from crawler.services.task_queue import mark_failed, mark_retry

logger = logging.getLogger(__name__)

MIN_BACKOFF_EXPONENT = 1
MAX_BACKOFF_EXPONENT = 6


def compute_backoff_minutes(attempts: int) -> int:
    """Exponential backoff in minutes: 2, 4, 8, ... capped at 64."""
    exponent = min(MAX_BACKOFF_EXPONENT, max(MIN_BACKOFF_EXPONENT, attempts))
    return 2**exponent


def cooldown_run_after(
    last_seen_at: Optional[datetime],
    cooldown_minutes: int,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    When the player was seen inside the cooldown window, return the time the
    job may run again. Otherwise return None (crawl now).
    """
    last_seen_at = ensure_utc(last_seen_at)
    if last_seen_at is None or cooldown_minutes <= 0:
        return None
    now = ensure_utc(now) or utc_now()
    run_after = last_seen_at + timedelta(minutes=cooldown_minutes)
    return run_after if run_after > now else None


def apply_failure(
    session: Session,
    job: CrawlJob,
    error_kind: ErrorKind,
    message: str,
    *,
    max_attempts: int,
    now: Optional[datetime] = None,
) -> JobStatus:
    """
    Reschedule or terminate a job after a failed attempt.

    Returns:
        The status the job was moved to (pending or failed)
    """
    now = now or utc_now()
    attempts = job.attempts or 0
    run_after = now + timedelta(minutes=compute_backoff_minutes(attempts))
    error = f"[{error_kind.value}] {message}"

    if attempts >= max_attempts:
        mark_failed(session, job.id, error, run_after=run_after)
        return JobStatus.FAILED

    mark_retry(session, job.id, run_after, error)
    logger.info(f"Job id={job.id} backing off {compute_backoff_minutes(attempts)}m (attempt {attempts}/{max_attempts})")
    return JobStatus.PENDING


__all__ = [
    "compute_backoff_minutes",
    "cooldown_run_after",
    "apply_failure",
]
