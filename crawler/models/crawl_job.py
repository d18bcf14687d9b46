"""
Crawl Job Model

Persistent work queue for the match crawler. Each job targets one player and
one kind of task ("player_matches"). Jobs are never deleted: done and failed
rows stay behind as an audit trail.

Usage:
    from crawler.models.crawl_job import CrawlJob, JobStatus

    job = CrawlJob(kind="player_matches", payload={"profile_id": "123"}, dedup_key="123")

    if job.status == JobStatus.PENDING:
        ...
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint

from crawler.core.typing import utc_now


class JobStatus(str, Enum):
    """Status of a crawl job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class CrawlJob(SQLModel, table=True):
    """
    Queue entry for one crawl target.

    Attributes:
        id: Primary key (insertion order breaks priority ties)
        kind: Job discriminator, e.g. "player_matches"
        payload: Opaque job payload, must contain "profile_id"
        dedup_key: Natural key of the payload (the profile id); unique per kind
        status: pending -> in_progress -> done | pending | failed
        attempts: Incremented exactly once per claim
        priority: Lower values = more urgent
        run_after: Job is not eligible before this time
        last_error: Error message from most recent failure
        created_at: When the job was enqueued
        updated_at: When the job was last modified (stale detection)
    """

    __tablename__ = "crawl_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(max_length=64)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    dedup_key: str = Field(max_length=64)
    status: str = Field(default=JobStatus.PENDING.value, max_length=16)
    attempts: int = Field(default=0)
    priority: int = Field(default=10)  # Lower = more urgent
    run_after: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    __table_args__ = (
        # One job per (kind, target); enqueue relies on this to stay idempotent
        UniqueConstraint("kind", "dedup_key", name="uq_crawl_jobs_kind_dedup_key"),
        # Claim query: kind + status, ordered by priority, run_after, id
        Index("ix_crawl_jobs_claim", "kind", "status", "priority", "run_after", "id"),
        # Stale job detection (in_progress + updated_at)
        Index("ix_crawl_jobs_stale", "status", "updated_at"),
    )


__all__ = ["CrawlJob", "JobStatus"]
