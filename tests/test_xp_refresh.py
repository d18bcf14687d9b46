"""
Tests for the bulk XP refresh.

Tests cover:
- Bounded concurrency helper
- Per-player refresh: skip without steam id, XP/level update, match crawl on XP increase
- Full run paging and stopping at the request cap
"""

import asyncio

import httpx
import pytest
from sqlmodel import Session, select

from conftest import FIXED_NOW, build_client

from crawler.models.crawl_job import CrawlJob
from crawler.models.match import Match
from crawler.models.player import Player
from crawler.services.xp_refresh import (
    PlayerSnapshot,
    RefreshStats,
    fetch_players_batch,
    refresh_player,
    run_refresh,
    run_with_concurrency,
)

STEAM_ID = "76561198012345678"


def personal_stats_payload(xp, profile_id=123, alias="SeedPlayer"):
    return {
        "result": {"code": 0, "message": "SUCCESS"},
        "statGroups": [
            {
                "id": 4321,
                "members": [
                    {
                        "profile_id": profile_id,
                        "name": f"/steam/{STEAM_ID}",
                        "alias": alias,
                        "country": "de",
                        "xp": xp,
                    }
                ],
            }
        ],
    }


def relic_handler(stats_payload, matches_payload, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request.url.path.rsplit("/", 1)[-1])
        if request.url.path.endswith("getPersonalStat"):
            return httpx.Response(200, json=stats_payload)
        return httpx.Response(200, json=matches_payload)

    return handler


def _seed_player(session: Session, xp=1000, steam_id64=STEAM_ID, profile_id="123"):
    session.add(Player(profile_id=profile_id, xp=xp, level=1, steam_id64=steam_id64))
    session.commit()


def _snapshot(session: Session, profile_id="123") -> PlayerSnapshot:
    return next(p for p in fetch_players_batch(session, 0, 100) if p.profile_id == profile_id)


class TestRunWithConcurrency:
    @pytest.mark.asyncio
    async def test_never_exceeds_limit(self):
        in_flight = {"now": 0, "max": 0}

        async def worker(item):
            in_flight["now"] += 1
            in_flight["max"] = max(in_flight["max"], in_flight["now"])
            await asyncio.sleep(0)
            in_flight["now"] -= 1

        failures = await run_with_concurrency(range(10), worker, 3)

        assert failures == 0
        assert in_flight["max"] <= 3

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self):
        done = []

        async def worker(item):
            if item % 2:
                raise RuntimeError(f"bad item {item}")
            done.append(item)

        failures = await run_with_concurrency([0, 1, 2, 3], worker, 2)

        assert failures == 2
        assert sorted(done) == [0, 2]


class TestFetchPlayersBatch:
    def test_orders_by_xp_desc_with_unknown_last(self, test_session: Session):
        test_session.add_all(
            [
                Player(profile_id="1", xp=None),
                Player(profile_id="2", xp=500),
                Player(profile_id="3", xp=9000),
                Player(profile_id="4", xp=500),
            ]
        )
        test_session.commit()

        ids = [p.profile_id for p in fetch_players_batch(test_session, 0, 10)]

        assert ids == ["3", "2", "4", "1"]
        assert [p.profile_id for p in fetch_players_batch(test_session, 1, 2)] == ["2", "4"]


class TestRefreshPlayer:
    @pytest.mark.asyncio
    async def test_player_without_steam_id_is_skipped(self, test_engine, crawl_settings):
        seen = []
        client = build_client(relic_handler({}, {}, seen))
        stats = RefreshStats()

        await refresh_player(
            test_engine,
            PlayerSnapshot(profile_id="1", steam_id64=None, xp=None, level=None, current_alias=None),
            client,
            crawl_settings,
            stats,
        )

        assert stats.skipped_no_steam == 1
        assert seen == []

    @pytest.mark.asyncio
    async def test_xp_increase_updates_level_and_crawls_matches(
        self, test_engine, crawl_settings, scenario_payload
    ):
        with Session(test_engine) as session:
            _seed_player(session, xp=1000)
            player = _snapshot(session)
        seen = []
        client = build_client(relic_handler(personal_stats_payload(120_500), scenario_payload, seen))
        stats = RefreshStats()

        await refresh_player(test_engine, player, client, crawl_settings, stats, now=FIXED_NOW)

        assert seen == ["getPersonalStat", "getRecentMatchHistoryByProfileId"]
        assert stats.updated == 1
        assert stats.xp_increased == 1
        assert stats.matches_fetched == 1
        assert stats.matches_inserted == 1
        assert stats.enqueued == 1

        with Session(test_engine) as session:
            stored = session.get(Player, "123")
            assert stored.xp == 120_500
            assert stored.level == 12
            assert stored.current_alias == "SeedPlayer"
            assert stored.country == "DE"
            assert stored.statgroup_id == "4321"
            assert session.get(Match, "999") is not None
            job = session.exec(select(CrawlJob).where(CrawlJob.dedup_key == "456")).one()
            assert job.kind == crawl_settings.CRAWL_JOB_KIND

    @pytest.mark.asyncio
    async def test_unchanged_xp_skips_match_fetch(self, test_engine, crawl_settings):
        with Session(test_engine) as session:
            _seed_player(session, xp=120_500)
            player = _snapshot(session)
        seen = []
        client = build_client(relic_handler(personal_stats_payload(120_500), {}, seen))
        stats = RefreshStats()

        await refresh_player(test_engine, player, client, crawl_settings, stats, now=FIXED_NOW)

        assert seen == ["getPersonalStat"]
        assert stats.updated == 1
        assert stats.xp_increased == 0

    @pytest.mark.asyncio
    async def test_stats_fetch_failure_counts_as_failed(self, test_engine, crawl_settings):
        with Session(test_engine) as session:
            _seed_player(session)
            player = _snapshot(session)
        client = build_client(lambda request: httpx.Response(500, text="down"))
        stats = RefreshStats()

        await refresh_player(test_engine, player, client, crawl_settings, stats, now=FIXED_NOW)

        assert stats.failed == 1
        assert stats.updated == 0
        with Session(test_engine) as session:
            assert session.get(Player, "123").xp == 1000


class TestRunRefresh:
    @pytest.mark.asyncio
    async def test_walks_every_player_including_newly_discovered(
        self, test_engine, crawl_settings, scenario_payload
    ):
        with Session(test_engine) as session:
            _seed_player(session, xp=1000)
        client = build_client(relic_handler(personal_stats_payload(120_500), scenario_payload))

        stats = await run_refresh(test_engine, client, crawl_settings, now=FIXED_NOW)

        # 456 is inserted while 123 is refreshed and lands on the next page
        assert stats.processed == 2
        assert stats.updated == 1
        assert stats.skipped_no_steam == 1
        assert stats.failed == 0
        assert client.request_count == 2

    @pytest.mark.asyncio
    async def test_stops_when_request_cap_is_reached(self, test_engine, crawl_settings):
        with Session(test_engine) as session:
            _seed_player(session, xp=120_500, profile_id="1")
            _seed_player(session, xp=120_500, profile_id="2")
        crawl_settings.XP_REFRESH_BATCH_SIZE = 1
        client = build_client(relic_handler(personal_stats_payload(120_500), {}), request_cap=1)

        stats = await run_refresh(test_engine, client, crawl_settings, now=FIXED_NOW)

        assert stats.processed == 1
        assert client.request_count == 1

    def test_summary_mentions_counters(self):
        stats = RefreshStats(processed=3, updated=2, enqueued=4)

        summary = stats.summary()

        assert "processed 3" in summary
        assert "updated 2" in summary
        assert "new players enqueued 4" in summary
