"""Database utilities for conflict classification and write retries.

Concurrent crawlers write the same players and matches, so upserts can hit
serialization failures or deadlocks. Those are retried with linear backoff.
Unique-constraint violations on plain inserts (job enqueue, run open) are
the storage layer telling us the row already exists and are treated as no-ops
by the callers.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlmodel import Session
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes (PostgreSQL)
UNIQUE_VIOLATION = "23505"
SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"

DUPLICATE_MESSAGES = (
    "duplicate key value",
    "already exists",
    "unique constraint failed",  # SQLite
)

WRITE_CONFLICT_MESSAGES = (
    "deadlock detected",
    "could not serialize access",
    "database is locked",  # SQLite
)


def _sqlstate(error: BaseException) -> Optional[str]:
    orig = getattr(error, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(error, "pgcode", None)


def is_duplicate_error(error: BaseException) -> bool:
    """Check if an error is a unique-constraint violation."""
    if _sqlstate(error) == UNIQUE_VIOLATION:
        return True
    if not isinstance(error, IntegrityError) and not isinstance(error, DBAPIError):
        return False
    error_msg = str(error).lower()
    return any(msg in error_msg for msg in DUPLICATE_MESSAGES)


def is_retryable_write_conflict(error: BaseException) -> bool:
    """Check if an error is a transient write conflict (serialization failure or deadlock)."""
    if _sqlstate(error) in (SERIALIZATION_FAILURE, DEADLOCK_DETECTED):
        return True
    if not isinstance(error, DBAPIError):
        return False
    error_msg = str(error).lower()
    return any(msg in error_msg for msg in WRITE_CONFLICT_MESSAGES)


async def retry_write_conflicts(
    session: Session,
    operation: Callable[[], T],
    max_attempts: int = 4,
    base_delay: float = 0.35,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    label: str = "write",
) -> T:
    """
    Run a sync write operation, retrying transient write conflicts.

    The session is rolled back before every retry. The delay grows linearly
    (base_delay, 2 * base_delay, ...). Any other error, or a conflict on the
    final attempt, is re-raised unchanged.

    Note: the operation itself is sync (SQLModel sessions are sync),
    but the retry delays are async.
    """
    sleep = sleep or asyncio.sleep

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except DBAPIError as e:
            session.rollback()
            if not is_retryable_write_conflict(e) or attempt >= max_attempts:
                raise

            delay = base_delay * attempt
            logger.warning(
                f"[DB Retry] {label} hit a write conflict (attempt {attempt}/{max_attempts}): {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            await sleep(delay)

    raise RuntimeError("Unexpected state in retry_write_conflicts")


def check_db_connection(engine) -> bool:  # type: ignore[type-arg]
    """
    Check if database connection is healthy.
    Returns True if connection is good, False otherwise.
    """
    try:
        with Session(engine) as session:
            session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"[DB Health] Connection check failed: {e}")
        return False


__all__ = [
    "is_duplicate_error",
    "is_retryable_write_conflict",
    "retry_write_conflicts",
    "check_db_connection",
]
