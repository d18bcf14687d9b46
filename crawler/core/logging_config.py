"""
Structured logging configuration using structlog.

Long-running crawler processes log key-value events; several workers usually
run side by side, so every event can carry the worker's identity through
structlog contextvars.

Usage:
    from crawler.core.logging_config import bind_worker_context, get_logger

    bind_worker_context(worker="crawl-worker", kind="player_matches")
    logger = get_logger(__name__)
    logger.info("job processed", job_id=123, matches=40)

JSON output (LOG_JSON=true or CRAWLER_ENVIRONMENT=production):
    {"worker": "crawl-worker", "kind": "player_matches", "pid": 4242, "event": "job processed",
     "job_id": 123, "matches": 40, "level": "info", "timestamp": "2025-06-01T12:00:00Z"}

Console output otherwise:
    2025-06-01T12:00:00Z [info     ] job processed    job_id=123 kind=player_matches matches=40 pid=4242
"""

import logging
import os
import sys
from typing import Any, Optional

import structlog

from crawler.core.config import settings

IS_TEST = "pytest" in sys.modules


def _use_json() -> bool:
    if settings.LOG_JSON:
        return True
    return os.getenv("CRAWLER_ENVIRONMENT", "").lower() == "production"


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """
    Configure structlog for worker events and stdlib logging for service modules.

    Args:
        level: Log level name, defaults to settings.LOG_LEVEL
        json_logs: Force JSON (True) or console (False) rendering
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    as_json = _use_json() if json_logs is None else json_logs

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if as_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.dev.ConsoleRenderer(colors=not IS_TEST)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=not IS_TEST,
    )

    # Service modules log through stdlib logging with f-string messages
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def bind_worker_context(**fields: Any) -> None:
    """Attach fields (worker name, job kind, ...) plus the pid to every later event."""
    structlog.contextvars.bind_contextvars(pid=os.getpid(), **fields)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Structured logger; `name` is usually __name__."""
    return structlog.get_logger(name)


configure_logging()


__all__ = ["configure_logging", "bind_worker_context", "get_logger"]
