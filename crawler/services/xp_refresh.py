"""
Bulk XP refresh.

Walks every known player (highest XP first), re-reads their personal stats,
recomputes their level, and when their XP went up pulls their latest matches
through the same normalize/persist/frontier pipeline as the queue crawler.

A fixed-size pool of coroutines processes each page of players. All of them go
through one RelicClient, so the request cap and the inter-request delay of its
RateLimiter hold across the whole pool.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from crawler.core.config import Settings
from crawler.core.errors import CrawlerError, PersistenceError
from crawler.core.typing import col, utc_now
from crawler.models.player import Player
from crawler.scraper.relic import RelicClient
from crawler.services.frontier import expand_frontier
from crawler.services.normalizer import normalize, normalize_personal_stats
from crawler.services.persistence import count_new_matches, persist_normalized, touch_player
from crawler.services.xp_levels import get_level_from_xp

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PlayerSnapshot:
    """The columns the refresh needs, detached from any session."""

    profile_id: str
    steam_id64: Optional[str]
    xp: Optional[int]
    level: Optional[int]
    current_alias: Optional[str]


@dataclass
class RefreshStats:
    processed: int = 0
    updated: int = 0
    xp_increased: int = 0
    matches_fetched: int = 0
    matches_inserted: int = 0
    skipped_no_steam: int = 0
    discovered: int = 0
    enqueued: int = 0
    failed: int = 0

    def summary(self) -> str:
        return (
            f"processed {self.processed} | updated {self.updated} | XP increased {self.xp_increased} | "
            f"matches fetched {self.matches_fetched} | matches inserted {self.matches_inserted} | "
            f"skipped (no steam) {self.skipped_no_steam} | new players enqueued {self.enqueued} | "
            f"failed {self.failed}"
        )


async def run_with_concurrency(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[Any]],
    concurrency: int,
) -> int:
    """
    Run worker(item) for every item with at most `concurrency` in flight.

    A failing item is logged and does not stop the others.

    Returns:
        Number of items whose worker raised
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    failures = 0

    async def run_one(item: T) -> None:
        nonlocal failures
        async with semaphore:
            try:
                await worker(item)
            except Exception as e:
                failures += 1
                logger.error(f"[XP Refresh] Worker failed for {item!r}: {type(e).__name__}: {e}")

    await asyncio.gather(*(run_one(item) for item in items))
    return failures


def fetch_players_batch(session: Session, offset: int, batch_size: int) -> List[PlayerSnapshot]:
    """One page of players, ordered by XP descending (unknown XP last), profile_id breaking ties."""
    stmt = (
        select(Player)
        .order_by(col(Player.xp).desc().nulls_last(), col(Player.profile_id).asc())
        .offset(offset)
        .limit(batch_size)
    )
    return [
        PlayerSnapshot(
            profile_id=p.profile_id,
            steam_id64=p.steam_id64,
            xp=p.xp,
            level=p.level,
            current_alias=p.current_alias,
        )
        for p in session.exec(stmt).all()
    ]


async def refresh_player(
    engine: Engine,
    player: PlayerSnapshot,
    client: RelicClient,
    settings: Settings,
    stats: RefreshStats,
    now: Optional[datetime] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> None:
    """Refresh one player's XP and level, and crawl their matches if XP increased."""
    if not player.steam_id64:
        stats.skipped_no_steam += 1
        return

    try:
        raw_stats = await client.fetch_personal_stats(player.steam_id64)
    except CrawlerError as e:
        stats.failed += 1
        logger.warning(f"[XP Refresh] Failed to fetch personal stats for {player.profile_id}: {e}")
        return

    personal = normalize_personal_stats(raw_stats)
    if personal is None or personal.xp is None:
        return

    now = now or utc_now()
    xp_increased = player.xp is None or personal.xp > player.xp

    with Session(engine) as session:
        try:
            await touch_player(
                session,
                player.profile_id,
                now,
                sleep=sleep,
                xp=personal.xp,
                level=get_level_from_xp(personal.xp),
                current_alias=personal.alias,
                country=personal.country,
                statgroup_id=personal.statgroup_id,
            )
        except PersistenceError as e:
            stats.failed += 1
            logger.error(f"[XP Refresh] Failed to upsert player {player.profile_id}: {e}")
            return

    stats.updated += 1
    if not xp_increased:
        return
    stats.xp_increased += 1

    try:
        raw_matches = await client.fetch_match_history_by_profile_id(
            player.profile_id, settings.XP_REFRESH_MATCH_COUNT
        )
    except CrawlerError as e:
        logger.warning(f"[XP Refresh] Failed to fetch matches for {player.profile_id}: {e}")
        return

    rows = normalize(
        raw_matches,
        personal.alias or player.current_alias,
        seed_profile_id=player.profile_id,
        now=now,
    )

    with Session(engine) as session:
        try:
            new_matches = count_new_matches(session, [m.match_id for m in rows.matches])
            await persist_normalized(
                session,
                rows,
                chunk_size=settings.XP_REFRESH_UPSERT_CHUNK,
                retry_attempts=settings.CRAWL_UPSERT_RETRY_ATTEMPTS,
                retry_base_delay=settings.CRAWL_UPSERT_RETRY_DELAY_MS / 1000,
                sleep=sleep,
            )
            enqueued = expand_frontier(
                session,
                rows.discovered_profile_ids,
                rows.alias_hints(),
                kind=settings.CRAWL_JOB_KIND,
                priority=settings.CRAWL_DISCOVERY_PRIORITY,
                floor=settings.CRAWL_JOB_PRIORITY_FLOOR,
                ceiling=settings.CRAWL_JOB_PRIORITY_CEIL,
            )
        except PersistenceError as e:
            stats.failed += 1
            logger.error(f"[XP Refresh] Failed to persist match data for {player.profile_id}: {e}")
            return

    stats.matches_fetched += len(rows.matches)
    stats.matches_inserted += new_matches
    stats.discovered += len(rows.discovered_profile_ids)
    stats.enqueued += enqueued


def _format_duration(seconds: float) -> str:
    if seconds == float("inf"):
        return "unknown"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}:{secs:02d}"
    return f"{max(0, secs)}s"


async def run_refresh(
    engine: Engine,
    client: RelicClient,
    settings: Settings,
    *,
    now: Optional[datetime] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> RefreshStats:
    """
    Refresh every player, one page at a time, until the table is exhausted
    or the request cap is reached.
    """
    stats = RefreshStats()
    batch_size = max(1, settings.XP_REFRESH_BATCH_SIZE)
    log_every = max(1, settings.XP_REFRESH_LOG_EVERY)

    with Session(engine) as session:
        total_players = session.exec(select(func.count()).select_from(Player)).one()

    logger.info(
        f"[XP Refresh] Starting: {total_players} players, batch size {batch_size}, "
        f"concurrency {settings.XP_REFRESH_CONCURRENCY}, match fetch count {settings.XP_REFRESH_MATCH_COUNT}"
    )
    started = time.monotonic()
    offset = 0

    while True:
        with Session(engine) as session:
            batch = fetch_players_batch(session, offset, batch_size)
        if not batch:
            break

        async def worker(player: PlayerSnapshot) -> None:
            await refresh_player(engine, player, client, settings, stats, now=now, sleep=sleep)

        stats.failed += await run_with_concurrency(batch, worker, settings.XP_REFRESH_CONCURRENCY)

        previous = stats.processed
        stats.processed += len(batch)
        offset += len(batch)

        if stats.processed // log_every > previous // log_every:
            elapsed = time.monotonic() - started
            speed = stats.processed / elapsed if elapsed > 0 else 0
            remaining = max(0, total_players - stats.processed)
            eta = remaining / speed if speed > 0 else float("inf")
            logger.info(f"[XP Refresh] {stats.summary()} | remaining {remaining} | ETA {_format_duration(eta)}")

        if client.limiter.is_exhausted():
            logger.warning(
                f"[XP Refresh] Relic request cap reached ({client.request_count}/{client.limiter.request_cap}), stopping"
            )
            break

    logger.info(
        f"[XP Refresh] Complete: {stats.summary()} | "
        f"relic requests {client.request_count}/{client.limiter.request_cap} | "
        f"runtime {_format_duration(time.monotonic() - started)}"
    )
    return stats


__all__ = [
    "PlayerSnapshot",
    "RefreshStats",
    "run_with_concurrency",
    "fetch_players_batch",
    "refresh_player",
    "run_refresh",
]
