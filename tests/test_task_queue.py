"""
Unit tests for the crawl job queue.

Tests cover:
1. enqueue_job - creating jobs, (kind, profile) deduplication, payload validation
2. claim_next_job / try_claim - ordering, eligibility, mutual exclusion
3. mark_done / mark_retry / mark_failed / defer_job - state transitions
4. reset_stale_jobs - manual recovery of stuck jobs
5. get_queue_stats / get_pending_breakdown / get_recent_run_stats - reporting
"""

from datetime import timedelta

import pytest
from sqlmodel import Session, select

from crawler.core.typing import ensure_utc, utc_now
from crawler.models.crawl_job import CrawlJob, JobStatus
from crawler.models.crawl_run import CrawlRun
from crawler.services.task_queue import (
    claim_next_job,
    defer_job,
    enqueue_job,
    get_pending_breakdown,
    get_queue_stats,
    get_recent_run_stats,
    mark_done,
    mark_failed,
    mark_retry,
    reset_stale_jobs,
    try_claim,
)

KIND = "player_matches"


def _add_job(session: Session, profile_id: str, **fields) -> CrawlJob:
    job = CrawlJob(kind=KIND, payload={"profile_id": profile_id}, dedup_key=profile_id, **fields)
    session.add(job)
    session.commit()
    session.refresh(job)
    return job


class TestEnqueueJob:
    """Tests for enqueue_job."""

    def test_enqueue_creates_pending_job(self, test_session: Session):
        """A new job starts pending with zero attempts and is immediately eligible."""
        job = enqueue_job(test_session, KIND, {"profile_id": "123", "alias": "Seed"}, priority=7)

        assert job is not None
        assert job.id is not None
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0
        assert job.priority == 7
        assert job.dedup_key == "123"
        assert job.payload == {"profile_id": "123", "alias": "Seed"}
        assert ensure_utc(job.run_after) <= utc_now()

    def test_enqueue_duplicate_is_noop(self, test_session: Session):
        """Enqueueing the same profile twice produces exactly one job."""
        first = enqueue_job(test_session, KIND, {"profile_id": "123"})
        second = enqueue_job(test_session, KIND, {"profile_id": "123", "alias": "Other"})

        assert first is not None
        assert second is None
        jobs = test_session.exec(select(CrawlJob).where(CrawlJob.dedup_key == "123")).all()
        assert len(jobs) == 1

    def test_enqueue_duplicate_after_done_is_noop(self, test_session: Session):
        """A finished job still blocks re-enqueueing the same profile."""
        job = enqueue_job(test_session, KIND, {"profile_id": "123"})
        mark_done(test_session, job.id)

        assert enqueue_job(test_session, KIND, {"profile_id": "123"}) is None

    def test_enqueue_same_profile_different_kind(self, test_session: Session):
        """Deduplication is scoped to the job kind."""
        a = enqueue_job(test_session, KIND, {"profile_id": "123"})
        b = enqueue_job(test_session, "player_xp", {"profile_id": "123"})

        assert a is not None and b is not None
        assert a.id != b.id

    def test_enqueue_accepts_numeric_and_camelcase_profile_id(self, test_session: Session):
        job = enqueue_job(test_session, KIND, {"profileId": 76561198000000000})
        assert job.dedup_key == "76561198000000000"

    def test_enqueue_rejects_missing_profile_id(self, test_session: Session):
        with pytest.raises(ValueError):
            enqueue_job(test_session, KIND, {"alias": "nobody"})


class TestClaimNextJob:
    """Tests for claim_next_job."""

    def test_claim_returns_none_when_empty(self, test_session: Session):
        assert claim_next_job(test_session, KIND) is None

    def test_claim_marks_in_progress_and_increments_attempts(self, test_session: Session):
        job = enqueue_job(test_session, KIND, {"profile_id": "123"})

        claimed = claim_next_job(test_session, KIND)

        assert claimed is not None
        assert claimed.id == job.id
        assert claimed.status == JobStatus.IN_PROGRESS.value
        assert claimed.attempts == 1

    def test_claim_orders_by_priority_then_run_after_then_id(self, test_session: Session):
        """Lower priority value wins; ties fall back to run_after, then id."""
        now = utc_now()
        late = _add_job(test_session, "1", priority=10, run_after=now - timedelta(minutes=1))
        early = _add_job(test_session, "2", priority=10, run_after=now - timedelta(minutes=5))
        urgent = _add_job(test_session, "3", priority=5, run_after=now)

        order = [claim_next_job(test_session, KIND, now=now).id for _ in range(3)]

        assert order == [urgent.id, early.id, late.id]

    def test_claim_skips_jobs_not_yet_due(self, test_session: Session):
        now = utc_now()
        _add_job(test_session, "123", run_after=now + timedelta(minutes=10))

        assert claim_next_job(test_session, KIND, now=now) is None

    def test_claim_skips_other_kinds_and_statuses(self, test_session: Session):
        _add_job(test_session, "1", status=JobStatus.DONE.value)
        _add_job(test_session, "2", status=JobStatus.FAILED.value)
        _add_job(test_session, "3", status=JobStatus.IN_PROGRESS.value)
        other = CrawlJob(kind="player_xp", payload={"profile_id": "4"}, dedup_key="4")
        test_session.add(other)
        test_session.commit()

        assert claim_next_job(test_session, KIND) is None

    def test_failed_job_is_never_claimed(self, test_session: Session):
        job = enqueue_job(test_session, KIND, {"profile_id": "123"})
        mark_failed(test_session, job.id, "boom")

        assert claim_next_job(test_session, KIND, now=utc_now() + timedelta(days=30)) is None


class TestTryClaim:
    """Mutual exclusion of the conditional claim update."""

    def test_two_claims_on_same_job_exactly_one_wins(self, test_engine):
        with Session(test_engine) as setup:
            job_id = enqueue_job(setup, KIND, {"profile_id": "123"}).id

        with Session(test_engine) as worker_a, Session(test_engine) as worker_b:
            results = [try_claim(worker_a, job_id), try_claim(worker_b, job_id)]

        assert sorted(results) == [False, True]
        with Session(test_engine) as check:
            job = check.get(CrawlJob, job_id)
            assert job.attempts == 1
            assert job.status == JobStatus.IN_PROGRESS.value

    def test_claim_of_non_pending_job_fails(self, test_session: Session):
        job = _add_job(test_session, "123", status=JobStatus.DONE.value)
        assert try_claim(test_session, job.id) is False


class TestJobTransitions:
    """Tests for mark_done, mark_retry, mark_failed and defer_job."""

    def test_mark_done(self, test_session: Session):
        job = enqueue_job(test_session, KIND, {"profile_id": "123"})
        claim_next_job(test_session, KIND)

        assert mark_done(test_session, job.id) is True
        test_session.refresh(job)
        assert job.status == JobStatus.DONE.value
        assert job.last_error is None

    def test_mark_retry_sets_run_after_and_error(self, test_session: Session):
        job = enqueue_job(test_session, KIND, {"profile_id": "123"})
        claim_next_job(test_session, KIND)
        run_after = utc_now() + timedelta(minutes=2)

        mark_retry(test_session, job.id, run_after, "upstream 500")

        test_session.refresh(job)
        assert job.status == JobStatus.PENDING.value
        assert job.last_error == "upstream 500"
        assert ensure_utc(job.run_after) == run_after

    def test_mark_failed_truncates_long_errors(self, test_session: Session):
        job = enqueue_job(test_session, KIND, {"profile_id": "123"})

        mark_failed(test_session, job.id, "x" * 5000)

        test_session.refresh(job)
        assert job.status == JobStatus.FAILED.value
        assert len(job.last_error) == 1000

    def test_mark_unknown_job_returns_false(self, test_session: Session):
        assert mark_done(test_session, 9999) is False

    def test_defer_restores_attempt_consumed_by_claim(self, test_session: Session):
        job = enqueue_job(test_session, KIND, {"profile_id": "123"})
        claimed = claim_next_job(test_session, KIND)
        assert claimed.attempts == 1
        run_after = utc_now() + timedelta(hours=1)

        defer_job(test_session, job.id, run_after)

        test_session.refresh(job)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0
        assert ensure_utc(job.run_after) == run_after

    def test_defer_never_goes_below_zero(self, test_session: Session):
        job = enqueue_job(test_session, KIND, {"profile_id": "123"})

        defer_job(test_session, job.id, utc_now())

        test_session.refresh(job)
        assert job.attempts == 0


class TestResetStaleJobs:
    """Tests for reset_stale_jobs."""

    def test_resets_only_old_in_progress_jobs(self, test_session: Session):
        now = utc_now()
        stale = _add_job(test_session, "1", status=JobStatus.IN_PROGRESS.value, updated_at=now - timedelta(hours=1))
        fresh = _add_job(test_session, "2", status=JobStatus.IN_PROGRESS.value, updated_at=now)
        done = _add_job(test_session, "3", status=JobStatus.DONE.value, updated_at=now - timedelta(hours=1))

        count = reset_stale_jobs(test_session, KIND, timeout_minutes=5)

        assert count == 1
        for job in (stale, fresh, done):
            test_session.refresh(job)
        assert stale.status == JobStatus.PENDING.value
        assert stale.last_error is not None
        assert fresh.status == JobStatus.IN_PROGRESS.value
        assert done.status == JobStatus.DONE.value


class TestQueueStats:
    """Tests for the reporting helpers."""

    def test_get_queue_stats_counts_per_status(self, test_session: Session):
        _add_job(test_session, "1")
        _add_job(test_session, "2")
        _add_job(test_session, "3", status=JobStatus.DONE.value)
        _add_job(test_session, "4", status=JobStatus.FAILED.value)

        stats = get_queue_stats(test_session, KIND)

        assert stats == {"pending": 2, "in_progress": 0, "done": 1, "failed": 1, "total": 4}

    def test_get_pending_breakdown(self, test_session: Session):
        now = utc_now()
        _add_job(test_session, "1", run_after=now - timedelta(minutes=1))
        later = now + timedelta(minutes=30)
        _add_job(test_session, "2", run_after=later, last_error="[api] 500")
        _add_job(test_session, "3", run_after=now + timedelta(hours=2))

        breakdown = get_pending_breakdown(test_session, KIND, now=now)

        assert breakdown["total_pending"] == 3
        assert breakdown["ready_now"] == 1
        assert breakdown["waiting"] == 2
        assert breakdown["with_errors"] == 1
        assert breakdown["next_run_after"] == later

    def test_get_recent_run_stats(self, test_session: Session):
        job = _add_job(test_session, "1")
        now = utc_now()
        test_session.add_all(
            [
                CrawlRun(job_id=job.id, started_at=now - timedelta(minutes=3), finished_at=now, success=True, request_count=2),
                CrawlRun(job_id=job.id, started_at=now - timedelta(minutes=2), finished_at=now, success=False, request_count=1),
                CrawlRun(job_id=job.id, started_at=now - timedelta(minutes=1)),
                CrawlRun(job_id=job.id, started_at=now - timedelta(days=3), finished_at=now, success=True, request_count=9),
            ]
        )
        test_session.commit()

        stats = get_recent_run_stats(test_session, hours=24)

        assert stats == {"runs": 3, "successes": 1, "failures": 1, "open": 1, "requests": 3}
