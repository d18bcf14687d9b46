from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "DoW Match Crawler"

    # Storage (falls back to PG* variables in crawler.db)
    DATABASE_URL: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Relic community leaderboard API
    RELIC_BASE_URL: str = "https://dow-api.reliclink.com"
    RELIC_TITLE: str = "dow1-de"
    RELIC_TIMEOUT_SECONDS: float = 20.0
    RELIC_USER_AGENT: str = "dow1-de-match-crawler"

    # Queue-driven crawler
    CRAWL_JOB_KIND: str = "player_matches"
    CRAWL_RELIC_DELAY_MS: int = 350
    CRAWL_RELIC_REQUEST_CAP: int = 6000
    CRAWL_JOB_MAX_ATTEMPTS: int = 5
    CRAWL_COOLDOWN_MINUTES: int = 180
    CRAWL_UPSERT_CHUNK_SIZE: int = 300
    CRAWL_UPSERT_RETRY_ATTEMPTS: int = 4
    CRAWL_UPSERT_RETRY_DELAY_MS: int = 350
    CRAWL_IDLE_SLEEP_MS: int = 3000
    CRAWL_EXIT_ON_IDLE: bool = False
    CRAWL_DISCOVERY_PRIORITY: int = 12
    CRAWL_JOB_PRIORITY_FLOOR: int = 5
    CRAWL_JOB_PRIORITY_CEIL: int = 15
    CRAWL_MATCH_LIMIT: int = 200
    CRAWL_STALE_TIMEOUT_MINUTES: int = 5

    # Bulk XP refresh
    XP_REFRESH_BATCH_SIZE: int = 100
    XP_REFRESH_CONCURRENCY: int = 6
    XP_REFRESH_MATCH_COUNT: int = 50
    XP_REFRESH_UPSERT_CHUNK: int = 500
    XP_REFRESH_RELIC_DELAY_MS: int = 150
    XP_REFRESH_RELIC_REQUEST_CAP: int = 100000
    XP_REFRESH_LOG_EVERY: int = 100

    # Job seeding
    SEED_PLAYER_BATCH_SIZE: int = 500
    SEED_PLAYER_LIMIT: int = 0  # 0 = no limit
    SEED_JOB_PRIORITY: int = 5

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
