"""
Queue-driven match-history crawler.

One job = one player. Processing a job:

    1. resolve the profile id (and best known alias)
    2. skip the player if seen within the cooldown window
    3. open a CrawlRun
    4. fetch recent match history (by alias, falling back to profile id)
    5. normalize and upsert matches, participants, players, alias history
    6. enqueue every newly discovered player
    7. finalize the run and mark the job

process_job() does not raise for job failures. It returns a JobOutcome
carrying an ErrorKind, and handle_job() maps that onto the queue. Anything
that still escapes an iteration is caught by worker_loop(), which reschedules
the claimed job and keeps going.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from crawler.core.config import Settings
from crawler.core.errors import ApiError, CrawlerError, ErrorKind, MissingPayloadError, classify_error
from crawler.core.logging_config import get_logger
from crawler.core.typing import col, utc_now
from crawler.models.crawl_job import CrawlJob, JobStatus
from crawler.models.player import AliasHistory, Player
from crawler.scraper.coerce import to_trimmed_non_empty_string
from crawler.scraper.relic import RelicClient
from crawler.services.backoff import apply_failure, cooldown_run_after
from crawler.services.frontier import expand_frontier
from crawler.services.normalizer import normalize
from crawler.services.persistence import count_new_matches, persist_normalized, touch_player
from crawler.services.run_ledger import finalize_run, open_run
from crawler.services.task_queue import (
    claim_next_job,
    defer_job,
    get_queue_stats,
    mark_done,
    payload_profile_id,
)

logger = get_logger(__name__)


class JobOutcomeStatus(str, Enum):
    DONE = "done"
    COOLDOWN = "cooldown"
    ERROR = "error"


@dataclass
class JobOutcome:
    """Result of processing one claimed job."""

    status: JobOutcomeStatus
    profile_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    run_after: Optional[datetime] = None
    matches: int = 0
    participants: int = 0
    new_matches: int = 0
    discovered: int = 0
    enqueued: int = 0
    request_count: int = 0
    source: Optional[str] = None

    @classmethod
    def error(cls, kind: ErrorKind, message: str, profile_id: Optional[str] = None, **counts: Any) -> "JobOutcome":
        return cls(status=JobOutcomeStatus.ERROR, error_kind=kind, message=message, profile_id=profile_id, **counts)


def latest_alias_from_history(session: Session, profile_id: str) -> Optional[str]:
    stmt = (
        select(AliasHistory.alias)
        .where(col(AliasHistory.profile_id) == profile_id)
        .order_by(col(AliasHistory.last_seen_at).desc())
        .limit(1)
    )
    return to_trimmed_non_empty_string(session.exec(stmt).first())


def resolve_alias(
    session: Session,
    profile_id: str,
    payload: Optional[Dict[str, Any]],
    player: Optional[Player] = None,
) -> Optional[str]:
    """Payload alias, else the player's current alias, else the most recently seen historical alias."""
    from_payload = to_trimmed_non_empty_string((payload or {}).get("alias"))
    if from_payload:
        return from_payload
    from_player = to_trimmed_non_empty_string(player.current_alias) if player else None
    if from_player:
        return from_player
    return latest_alias_from_history(session, profile_id)


async def fetch_match_history(
    client: RelicClient,
    profile_id: str,
    alias: Optional[str],
    count: int,
) -> Tuple[Any, str]:
    """
    Fetch recent matches, preferring the alias endpoint.

    Returns:
        (payload, source) where source is "alias:<alias>" or "profile:<id>"
    """
    if alias:
        try:
            payload = await client.fetch_match_history_by_alias(alias, count)
            return payload, f"alias:{alias}"
        except ApiError as e:
            logger.warning("alias fetch failed, falling back to profile id", profile_id=profile_id, alias=alias, error=str(e))

    payload = await client.fetch_match_history_by_profile_id(profile_id, count)
    return payload, f"profile:{profile_id}"


async def process_job(
    session: Session,
    job: CrawlJob,
    client: RelicClient,
    settings: Settings,
    now: Optional[datetime] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> JobOutcome:
    """
    Crawl one claimed job and report what happened.

    Args:
        session: Database session
        job: A job already claimed (status in_progress)
        client: Relic API client (carries the shared RateLimiter)
        settings: Crawl settings
        now: Clock override for cooldown and normalization
        sleep: Sleep override for persistence retries

    Returns:
        JobOutcome. Failures come back as status ERROR with an ErrorKind.
    """
    now = now or utc_now()
    job_id, kind = job.id, job.kind

    profile_id = payload_profile_id(job.payload)
    if not profile_id:
        error = MissingPayloadError(f"Job {job_id} payload missing profile_id")
        return JobOutcome.error(classify_error(error), str(error))

    # Set once the run is open. The ledger key uses the wall clock, never the `now` override
    started_at: Optional[datetime] = None
    baseline_requests = client.request_count
    outcome = JobOutcome(status=JobOutcomeStatus.DONE, profile_id=profile_id)

    try:
        player = session.get(Player, profile_id)
        alias = resolve_alias(session, profile_id, job.payload, player)

        deferred_until = cooldown_run_after(
            player.last_seen_at if player else None,
            settings.CRAWL_COOLDOWN_MINUTES,
            now,
        )
        if deferred_until is not None:
            return JobOutcome(
                status=JobOutcomeStatus.COOLDOWN,
                profile_id=profile_id,
                run_after=deferred_until,
            )

        run_started_at = utc_now()
        open_run(session, job_id, run_started_at, alias)
        started_at = run_started_at

        raw, outcome.source = await fetch_match_history(client, profile_id, alias, settings.CRAWL_MATCH_LIMIT)

        rows = normalize(raw, alias, seed_profile_id=profile_id, now=now)
        outcome.matches = len(rows.matches)
        outcome.participants = len(rows.participants)
        outcome.discovered = len(rows.discovered_profile_ids)
        outcome.new_matches = count_new_matches(session, [m.match_id for m in rows.matches])

        await persist_normalized(
            session,
            rows,
            chunk_size=settings.CRAWL_UPSERT_CHUNK_SIZE,
            retry_attempts=settings.CRAWL_UPSERT_RETRY_ATTEMPTS,
            retry_base_delay=settings.CRAWL_UPSERT_RETRY_DELAY_MS / 1000,
            sleep=sleep,
        )

        outcome.enqueued = expand_frontier(
            session,
            rows.discovered_profile_ids,
            rows.alias_hints(),
            kind=kind,
            priority=settings.CRAWL_DISCOVERY_PRIORITY,
            floor=settings.CRAWL_JOB_PRIORITY_FLOOR,
            ceiling=settings.CRAWL_JOB_PRIORITY_CEIL,
        )

        finished_at = utc_now()
        seed_row = rows.player(profile_id)
        seed_last_seen = seed_row.last_seen_at if seed_row and seed_row.last_seen_at else finished_at
        await touch_player(session, profile_id, seed_last_seen, sleep=sleep)

    except CrawlerError as e:
        session.rollback()
        outcome = JobOutcome.error(classify_error(e), str(e), profile_id, source=outcome.source)
    except Exception as e:
        session.rollback()
        logger.exception("unexpected error while processing job", job_id=job_id, profile_id=profile_id)
        outcome = JobOutcome.error(classify_error(e), f"{type(e).__name__}: {e}", profile_id, source=outcome.source)

    outcome.request_count = client.request_count - baseline_requests

    if started_at is not None:
        close_run(session, job_id, started_at, outcome)
    return outcome


def close_run(session: Session, job_id: int, started_at: datetime, outcome: JobOutcome) -> None:
    """Finalize the ledger row for this attempt. A ledger failure does not change the job outcome."""
    try:
        if outcome.status == JobOutcomeStatus.DONE:
            finalized = finalize_run(
                session,
                job_id,
                started_at,
                success=True,
                request_count=outcome.request_count,
                notes=f"{outcome.matches} matches, {outcome.participants} participants, fetched via {outcome.source}",
            )
        else:
            finalized = finalize_run(
                session,
                job_id,
                started_at,
                success=False,
                request_count=outcome.request_count,
                error_message=outcome.message,
            )
    except Exception:
        session.rollback()
        logger.exception("could not finalize crawl run", job_id=job_id, started_at=started_at.isoformat())
        return

    if not finalized:
        logger.warning("no open crawl run to finalize", job_id=job_id, started_at=started_at.isoformat())


def apply_outcome(session: Session, job: CrawlJob, outcome: JobOutcome, settings: Settings) -> None:
    """Move the job to its next state according to the outcome."""
    if outcome.status == JobOutcomeStatus.DONE:
        mark_done(session, job.id)
        logger.info(
            "job processed",
            job_id=job.id,
            profile_id=outcome.profile_id,
            matches=outcome.matches,
            participants=outcome.participants,
            new_matches=outcome.new_matches,
            discovered=outcome.discovered,
            enqueued=outcome.enqueued,
            requests=outcome.request_count,
            source=outcome.source,
        )
    elif outcome.status == JobOutcomeStatus.COOLDOWN:
        defer_job(session, job.id, outcome.run_after)
        logger.info(
            "job deferred due to cooldown",
            job_id=job.id,
            profile_id=outcome.profile_id,
            run_after=outcome.run_after.isoformat() if outcome.run_after else None,
        )
    else:
        status = apply_failure(
            session,
            job,
            outcome.error_kind or ErrorKind.UNEXPECTED,
            outcome.message or "unknown error",
            max_attempts=settings.CRAWL_JOB_MAX_ATTEMPTS,
        )
        logger.error(
            "job failed",
            job_id=job.id,
            profile_id=outcome.profile_id,
            error_kind=(outcome.error_kind or ErrorKind.UNEXPECTED).value,
            error=(outcome.message or "")[:200],
            attempts=job.attempts,
            status=status.value,
        )


async def handle_job(
    session: Session,
    job: CrawlJob,
    client: RelicClient,
    settings: Settings,
    now: Optional[datetime] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> JobOutcome:
    """Process a claimed job and record the outcome on the queue."""
    outcome = await process_job(session, job, client, settings, now=now, sleep=sleep)
    apply_outcome(session, job, outcome, settings)
    return outcome


@dataclass
class WorkerStats:
    processed: int = 0
    deferred: int = 0
    failed: int = 0
    idle_rounds: int = 0


def release_failed_job(engine: Engine, job_id: int, error: BaseException, settings: Settings) -> None:
    """
    Reschedule a job whose iteration blew up outside process_job().

    Uses a fresh session since the one that held the job may be unusable.
    A job that already left in_progress is left alone.
    """
    try:
        with Session(engine) as session:
            job = session.get(CrawlJob, job_id)
            if job is None or job.status != JobStatus.IN_PROGRESS.value:
                return
            apply_failure(
                session,
                job,
                classify_error(error),
                f"{type(error).__name__}: {error}",
                max_attempts=settings.CRAWL_JOB_MAX_ATTEMPTS,
            )
    except Exception:
        logger.exception("could not reschedule job, it stays in_progress until reset", job_id=job_id)


async def worker_loop(
    engine: Engine,
    client: RelicClient,
    settings: Settings,
    *,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> WorkerStats:
    """
    Claim and process jobs one at a time until stopped.

    When the queue is empty the loop sleeps CRAWL_IDLE_SLEEP_MS. With
    CRAWL_EXIT_ON_IDLE it returns on the second consecutive empty round instead.
    An error escaping one iteration is logged, the claimed job (if any) is
    rescheduled, and the loop idles before claiming again.
    """
    sleep = sleep or asyncio.sleep
    should_stop = should_stop or (lambda: False)
    kind = settings.CRAWL_JOB_KIND
    stats = WorkerStats()

    with Session(engine) as session:
        logger.info("crawler starting", kind=kind, queue=get_queue_stats(session, kind))

    while not should_stop():
        job_id: Optional[int] = None
        try:
            with Session(engine) as session:
                job = claim_next_job(session, kind)

                if job is None:
                    stats.idle_rounds += 1
                    if settings.CRAWL_EXIT_ON_IDLE and stats.idle_rounds > 1:
                        logger.info("no more jobs available, exiting")
                        break
                    await sleep(settings.CRAWL_IDLE_SLEEP_MS / 1000)
                    continue

                job_id = job.id
                stats.idle_rounds = 0
                outcome = await handle_job(session, job, client, settings)
        except Exception as e:
            logger.exception("worker iteration failed", job_id=job_id)
            if job_id is not None:
                stats.failed += 1
                release_failed_job(engine, job_id, e, settings)
            await sleep(settings.CRAWL_IDLE_SLEEP_MS / 1000)
            continue

        if outcome.status == JobOutcomeStatus.DONE:
            stats.processed += 1
        elif outcome.status == JobOutcomeStatus.COOLDOWN:
            stats.deferred += 1
        else:
            stats.failed += 1

    logger.info(
        "crawler stopped",
        processed=stats.processed,
        deferred=stats.deferred,
        failed=stats.failed,
        requests=client.request_count,
    )
    return stats


__all__ = [
    "JobOutcomeStatus",
    "JobOutcome",
    "WorkerStats",
    "resolve_alias",
    "fetch_match_history",
    "process_job",
    "close_run",
    "apply_outcome",
    "handle_job",
    "release_failed_job",
    "worker_loop",
]
