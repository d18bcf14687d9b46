"""
Persistence Pipeline

Applies a NormalizedPayload to the database as chunked, idempotent upserts:

    matches              ON CONFLICT (match_id)
    players              ON CONFLICT (profile_id)
    player_alias_history ON CONFLICT (profile_id, alias)
    match_participants   ON CONFLICT (match_id, profile_id)
    match_players_raw    ON CONFLICT (match_id)

Matches, participants and raw payloads take the latest snapshot. Players keep
stored values where the incoming row has nulls, and last_seen_at only moves
forward. Alias history intervals only widen.

Transient write conflicts (serialization failures, deadlocks) retry the same
chunk with linear backoff before surfacing a PersistenceError.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import Table, case, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session

from crawler.core.db_utils import retry_write_conflicts
from crawler.core.errors import PersistenceError
from crawler.core.typing import col, seq
from crawler.models.match import Match, MatchParticipant, RawMatchPayload
from crawler.models.player import AliasHistory, Player
from crawler.services.normalizer import NormalizedPayload, PlayerRow

logger = logging.getLogger(__name__)

MATCHES = Match.__table__
PLAYERS = Player.__table__
ALIAS_HISTORY = AliasHistory.__table__
PARTICIPANTS = MatchParticipant.__table__
RAW_PAYLOADS = RawMatchPayload.__table__

DEFAULT_CHUNK_SIZE = 300
DEFAULT_RETRY_ATTEMPTS = 4
DEFAULT_RETRY_DELAY = 0.35


def _insert_for(session: Session, table: Table):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise PersistenceError(f"Upserts are not supported on dialect {dialect!r}")


def _greatest(current, incoming):
    """Null-tolerant GREATEST that works on both PostgreSQL and SQLite."""
    return case(
        (incoming.is_(None), current),
        (current.is_(None), incoming),
        (incoming > current, incoming),
        else_=current,
    )


def _least(current, incoming):
    return case(
        (incoming.is_(None), current),
        (current.is_(None), incoming),
        (incoming < current, incoming),
        else_=current,
    )


def _overwrite_set(table: Table, excluded, keys: Sequence[str]) -> Dict[str, Any]:
    return {c.name: excluded[c.name] for c in table.columns if c.name not in keys}


def _players_set(table: Table, excluded, keys: Sequence[str]) -> Dict[str, Any]:
    set_: Dict[str, Any] = {}
    for c in table.columns:
        if c.name in keys:
            continue
        if c.name == "last_seen_at":
            set_[c.name] = _greatest(table.c.last_seen_at, excluded.last_seen_at)
        else:
            set_[c.name] = func.coalesce(excluded[c.name], table.c[c.name])
    return set_


def _alias_history_set(table: Table, excluded, keys: Sequence[str]) -> Dict[str, Any]:
    return {
        "first_seen_at": _least(table.c.first_seen_at, excluded.first_seen_at),
        "last_seen_at": _greatest(table.c.last_seen_at, excluded.last_seen_at),
    }


SetBuilder = Callable[[Table, Any, Sequence[str]], Dict[str, Any]]


def _dedupe(rows: Iterable[Dict[str, Any]], keys: Sequence[str]) -> List[Dict[str, Any]]:
    """Keep the last row per conflict key; one statement may not touch a row twice."""
    unique: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        unique[tuple(row[k] for k in keys)] = row
    return list(unique.values())


def _chunks(rows: List[Dict[str, Any]], size: int) -> Iterable[List[Dict[str, Any]]]:
    size = max(1, size)
    for idx in range(0, len(rows), size):
        yield rows[idx : idx + size]


async def chunked_upsert(
    session: Session,
    table: Table,
    rows: Sequence[Dict[str, Any]],
    keys: Sequence[str],
    set_builder: SetBuilder = _overwrite_set,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
    retry_base_delay: float = DEFAULT_RETRY_DELAY,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> int:
    """
    Upsert rows into a table in chunks, committing each chunk.

    Returns:
        Number of rows written (after de-duplication on the conflict key)
    """
    unique_rows = _dedupe(rows, keys)
    if not unique_rows:
        return 0

    stmt = _insert_for(session, table)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(keys),
        set_=set_builder(table, stmt.excluded, keys),
    )

    for chunk in _chunks(unique_rows, chunk_size):

        def write(chunk=chunk) -> None:
            session.execute(stmt, chunk)
            session.commit()

        try:
            await retry_write_conflicts(
                session,
                write,
                max_attempts=retry_attempts,
                base_delay=retry_base_delay,
                sleep=sleep,
                label=f"upsert into {table.name}",
            )
        except DBAPIError as e:
            raise PersistenceError(f"Failed to upsert into {table.name}: {e}") from e

    return len(unique_rows)


async def persist_normalized(
    session: Session,
    rows: NormalizedPayload,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
    retry_base_delay: float = DEFAULT_RETRY_DELAY,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Dict[str, int]:
    """
    Write every row set of a normalized payload.

    Returns:
        Dict of table name -> rows written
    """
    options = dict(
        chunk_size=chunk_size,
        retry_attempts=retry_attempts,
        retry_base_delay=retry_base_delay,
        sleep=sleep,
    )
    written = {
        MATCHES.name: await chunked_upsert(
            session, MATCHES, [asdict(r) for r in rows.matches], ["match_id"], **options
        ),
        PLAYERS.name: await chunked_upsert(
            session, PLAYERS, [asdict(r) for r in rows.players], ["profile_id"], _players_set, **options
        ),
        ALIAS_HISTORY.name: await chunked_upsert(
            session,
            ALIAS_HISTORY,
            [asdict(r) for r in rows.alias_history],
            ["profile_id", "alias"],
            _alias_history_set,
            **options,
        ),
        PARTICIPANTS.name: await chunked_upsert(
            session,
            PARTICIPANTS,
            [asdict(r) for r in rows.participants],
            ["match_id", "profile_id"],
            **options,
        ),
        RAW_PAYLOADS.name: await chunked_upsert(
            session, RAW_PAYLOADS, [asdict(r) for r in rows.raw_payloads], ["match_id"], **options
        ),
    }
    logger.debug(f"Persisted rows: {written}")
    return written


async def touch_player(
    session: Session,
    profile_id: str,
    last_seen_at: Optional[datetime],
    *,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    **fields: Any,
) -> None:
    """
    Upsert a single player, advancing last_seen_at monotonically.

    Extra keyword fields (current_alias, country, xp, level, ...) are written
    when not None and leave stored values alone otherwise.
    """
    row = PlayerRow(profile_id=profile_id, last_seen_at=last_seen_at, **fields)
    await chunked_upsert(session, PLAYERS, [asdict(row)], ["profile_id"], _players_set, sleep=sleep)


def count_new_matches(session: Session, match_ids: Sequence[str]) -> int:
    """Count how many of the given match ids are not stored yet."""
    unique_ids = {m for m in match_ids if m}
    if not unique_ids:
        return 0
    stmt = select(Match.match_id).where(col(Match.match_id).in_(seq(list(unique_ids))))
    existing = {row[0] for row in session.execute(stmt).all()}
    return len(unique_ids - existing)


__all__ = [
    "chunked_upsert",
    "persist_normalized",
    "touch_player",
    "count_new_matches",
]
