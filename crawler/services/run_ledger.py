"""
Run ledger: one CrawlRun row per job execution attempt.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from crawler.core.db_utils import is_duplicate_error
from crawler.core.typing import col, utc_now
from crawler.models.crawl_run import CrawlRun

logger = logging.getLogger(__name__)


def open_run(
    session: Session,
    job_id: int,
    started_at: datetime,
    alias: Optional[str] = None,
) -> None:
    """Insert the run row; a run already opened for (job_id, started_at) is left alone."""
    run = CrawlRun(
        job_id=job_id,
        started_at=started_at,
        success=False,
        request_count=0,
        notes=f"source_alias={alias}" if alias else None,
    )
    session.add(run)
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        if not is_duplicate_error(e):
            raise
        logger.debug(f"Run for job id={job_id} at {started_at.isoformat()} already open")


def finalize_run(
    session: Session,
    job_id: int,
    started_at: datetime,
    *,
    success: bool,
    request_count: int,
    error_message: Optional[str] = None,
    notes: Optional[str] = None,
    finished_at: Optional[datetime] = None,
) -> bool:
    """
    Close the run opened at started_at.

    Only a run that is still open is touched, so finished_at is set once.

    Returns:
        True if a run was finalized
    """
    values = {
        "finished_at": finished_at or utc_now(),
        "success": success,
        "request_count": request_count,
        "error_message": error_message[:1000] if error_message else None,
    }
    if notes is not None:
        values["notes"] = notes

    result = session.execute(
        update(CrawlRun)
        .where(
            col(CrawlRun.job_id) == job_id,
            col(CrawlRun.started_at) == started_at,
            col(CrawlRun.finished_at).is_(None),
        )
        .values(**values)
    )
    session.commit()
    return bool(result.rowcount)


__all__ = ["open_run", "finalize_run"]
