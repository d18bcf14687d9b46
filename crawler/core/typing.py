"""
Type and time helpers for SQLAlchemy/SQLModel compatibility.

SQLModel fields are declared with Python types (e.g., `status: str`) but at the
class level they're actually InstrumentedAttribute descriptors with SQLAlchemy
column methods like .desc(), .in_(), .is_(), etc.

Type checkers see them as plain Python types and report errors when column
methods are called. This module provides helpers to bridge that gap, plus the
UTC helpers shared by every timestamp column.
"""

from typing import TYPE_CHECKING, Any, Optional, Sequence, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op - it just returns the input unchanged.

    Usage:
        from crawler.core.typing import col

        select(CrawlJob).order_by(col(CrawlJob.priority).asc())
    """
    return attr  # type: ignore[return-value]


def seq(items: Any) -> Sequence[Any]:
    """
    Type helper for sequences in SQLAlchemy contexts.

    Usage:
        query.where(col(Match.match_id).in_(seq(match_ids)))
    """
    return items


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.

    Usage:
        created_at: datetime = Field(default_factory=utc_now)
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read back from the database to an aware UTC value.

    SQLite drops tzinfo on round-trip, PostgreSQL timestamptz keeps it.
    Naive values are always stored as UTC, so they are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = [
    "col",
    "seq",
    "utc_now",
    "ensure_utc",
]
