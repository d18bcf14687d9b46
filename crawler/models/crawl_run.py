"""
Crawl Run Model

Audit record of one execution attempt of a crawl job. Purely observational:
job state never depends on it, but throughput and failure diagnosis do.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import DateTime, Index, UniqueConstraint


class CrawlRun(SQLModel, table=True):
    __tablename__ = "crawl_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(foreign_key="crawl_jobs.id")
    started_at: datetime = Field(sa_type=DateTime(timezone=True))
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    success: bool = Field(default=False)
    request_count: int = Field(default=0)
    error_message: Optional[str] = None
    notes: Optional[str] = None

    __table_args__ = (
        UniqueConstraint("job_id", "started_at", name="uq_crawl_runs_job_started"),
        Index("ix_crawl_runs_started_at", "started_at"),
    )


__all__ = ["CrawlRun"]
