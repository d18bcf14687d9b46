from sqlmodel import create_engine, SQLModel
from sqlalchemy import event
from sqlalchemy.engine import Engine
import os
import logging
from dotenv import load_dotenv

from crawler.core.config import settings

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL or os.getenv("DATABASE_URL")

if not DATABASE_URL:
    # Fallback construction if DATABASE_URL is missing
    host = os.getenv("PGHOST")
    db = os.getenv("PGDATABASE")
    user = os.getenv("PGUSER")
    password = os.getenv("PGPASSWORD")
    ssl_mode = os.getenv("PGSSLMODE", "require")

    DATABASE_URL = f"postgresql+psycopg2://{user}:{password}@{host}/{db}?sslmode={ssl_mode}"


def with_psycopg2_driver(url: str) -> str:
    """Pin bare postgres URLs to the psycopg2 driver."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+psycopg2://" + url[len(prefix):]
    return url


def build_engine(url: str) -> Engine:
    """Create an engine tuned for long-running crawler processes."""
    url = with_psycopg2_driver(url)
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})

    pg_engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Hosted Postgres poolers drop idle connections
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )

    @event.listens_for(pg_engine, "connect")
    def set_statement_timeout(dbapi_connection, connection_record):
        """30s statement timeout on every new connection."""
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("SET statement_timeout = '30s'")
        except Exception as e:
            logger.warning(f"Could not set statement timeout: {e}")
        finally:
            cursor.close()

    return pg_engine


engine = build_engine(DATABASE_URL)


def create_db_and_tables():
    import crawler.models  # noqa: F401  (register tables with SQLModel.metadata)

    SQLModel.metadata.create_all(engine)
