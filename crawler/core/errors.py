"""
Crawler error types and error-kind classification.

Job processing returns an explicit ErrorKind instead of letting exceptions
drive the retry/backoff branch, so the backoff controller can decide on the
kind rather than on message text.

Usage:
    try:
        payload = await client.fetch_match_history_by_profile_id(profile_id, 200)
    except CrawlerError as exc:
        kind = classify_error(exc)
"""

from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError


class ErrorKind(str, Enum):
    """Why a job attempt failed."""

    RATE_CAP = "rate_cap"
    API = "api"
    MISSING_PAYLOAD = "missing_payload"
    PERSISTENCE = "persistence"
    UNEXPECTED = "unexpected"


class CrawlerError(Exception):
    """Base class for all crawler failures."""

    kind: ErrorKind = ErrorKind.UNEXPECTED


class RateCapExceeded(CrawlerError):
    """The process-local upstream request cap has been reached."""

    kind = ErrorKind.RATE_CAP

    def __init__(self, cap: int, context: str):
        self.cap = cap
        self.context = context
        super().__init__(f"Relic request cap ({cap}) reached while fetching {context}")


class ApiError(CrawlerError):
    """Upstream returned a non-2xx response or could not be reached."""

    kind = ErrorKind.API

    def __init__(self, context: str, status_code: Optional[int], body: str = ""):
        self.context = context
        self.status_code = status_code
        self.body = body
        status = status_code if status_code is not None else "no response"
        super().__init__(f"Relic request failed for {context}: {status} -> {body}")


class MissingPayloadError(CrawlerError):
    """A job payload lacks a required field."""

    kind = ErrorKind.MISSING_PAYLOAD


class PersistenceError(CrawlerError):
    """An upsert failed after exhausting its retries, or failed permanently."""

    kind = ErrorKind.PERSISTENCE


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception onto the ErrorKind the backoff controller understands."""
    if isinstance(error, CrawlerError):
        return error.kind
    if isinstance(error, SQLAlchemyError):
        return ErrorKind.PERSISTENCE
    return ErrorKind.UNEXPECTED


__all__ = [
    "ErrorKind",
    "CrawlerError",
    "RateCapExceeded",
    "ApiError",
    "MissingPayloadError",
    "PersistenceError",
    "classify_error",
]
