"""
Test fixtures for crawler tests.

Provides database session fixtures, settings, a fake sleep, and mock
Relic API payloads.
"""

import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generator, List, Optional

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import crawler.models  # noqa: F401  (register tables with SQLModel.metadata)
from crawler.core.config import Settings
from crawler.core.rate_limit import RateLimiter
from crawler.scraper.relic import RelicClient


def pytest_collection_modifyitems(config, items):
    """Skip integration tests in CI (they need a real PostgreSQL database)."""
    if os.environ.get("CI") == "true":
        skip_integration = pytest.mark.skip(reason="Integration tests skipped in CI (no database)")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def crawl_settings() -> Settings:
    """Settings with defaults, independent of the developer's environment."""
    return Settings(
        _env_file=None,
        CRAWL_RELIC_DELAY_MS=0,
        CRAWL_RELIC_REQUEST_CAP=100,
        CRAWL_JOB_MAX_ATTEMPTS=5,
        CRAWL_COOLDOWN_MINUTES=180,
        CRAWL_UPSERT_CHUNK_SIZE=300,
        CRAWL_IDLE_SLEEP_MS=10,
        CRAWL_EXIT_ON_IDLE=True,
        CRAWL_DISCOVERY_PRIORITY=12,
        CRAWL_JOB_PRIORITY_FLOOR=5,
        CRAWL_JOB_PRIORITY_CEIL=15,
        XP_REFRESH_BATCH_SIZE=10,
        XP_REFRESH_CONCURRENCY=1,
        XP_REFRESH_LOG_EVERY=1,
    )


def make_member(
    profile_id: Any,
    outcome: Any = None,
    old_rating: Any = None,
    new_rating: Any = None,
    **extra: Any,
) -> Dict[str, Any]:
    member: Dict[str, Any] = {"profile_id": profile_id}
    if outcome is not None:
        member["outcome"] = outcome
    if old_rating is not None:
        member["oldrating"] = old_rating
    if new_rating is not None:
        member["newrating"] = new_rating
    member.update(extra)
    return member


def make_match(match_id: Any, members: List[Dict[str, Any]], **extra: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "id": match_id,
        "matchtype_id": 1,
        "mapname": "2P_FATA_MORGANA",
        "startgametime": 1717236000,
        "completiontime": 1717237200,
        "matchhistorymember": members,
    }
    entry.update(extra)
    return entry


@pytest.fixture
def scenario_payload() -> Dict[str, Any]:
    """One match "999" between seed profile 123 (win, 1500 -> 1520) and new profile 456 (loss)."""
    return {
        "result": {"code": 0, "message": "SUCCESS"},
        "matchHistoryStats": [
            make_match(
                999,
                [
                    make_member(123, outcome=1, old_rating=1500, new_rating=1520, teamid=0, race_id=3),
                    make_member(456, outcome=0, old_rating=1480, new_rating=1462, teamid=1, race_id=5),
                ],
            )
        ],
        "profiles": [
            {"profile_id": 123, "alias": "SeedPlayer", "country": "de"},
            {"profile_id": 456, "alias": "NewPlayer", "country": "us"},
        ],
    }


def build_client(
    handler: Callable[[httpx.Request], httpx.Response],
    request_cap: int = 100,
    delay_seconds: float = 0.0,
    sleep: Optional[Callable[[float], Any]] = None,
) -> RelicClient:
    """RelicClient wired to an httpx.MockTransport."""
    limiter = RateLimiter(request_cap=request_cap, delay_seconds=delay_seconds, sleep=sleep)
    http_client = httpx.AsyncClient(
        base_url="https://relic.test",
        transport=httpx.MockTransport(handler),
    )
    return RelicClient(limiter, title="dow1-de", http_client=http_client)
