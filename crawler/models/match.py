from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column, DateTime, Index, Text

from crawler.core.typing import utc_now


class Outcome(str, Enum):
    WIN = "win"
    LOSS = "loss"
    UNKNOWN = "unknown"


class Match(SQLModel, table=True):
    """
    One observed game. Re-crawling a match overwrites it with the newest snapshot.

    options_blob and slot_info_blob keep the raw sub-objects as JSON text so
    they can be reprocessed once their format is understood.
    """

    __tablename__ = "matches"

    match_id: str = Field(primary_key=True, max_length=32)
    match_type_id: Optional[int] = None
    map_name: Optional[str] = None
    description: Optional[str] = None
    max_players: Optional[int] = None
    creator_profile_id: Optional[str] = Field(default=None, max_length=32)
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    duration_seconds: Optional[int] = None
    observer_total: Optional[int] = None
    crawled_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    source_alias: Optional[str] = None
    options_blob: Optional[str] = Field(default=None, sa_column=Column(Text))
    slot_info_blob: Optional[str] = Field(default=None, sa_column=Column(Text))

    __table_args__ = (Index("ix_matches_completed_at", "completed_at"),)


class MatchParticipant(SQLModel, table=True):
    """One player's row within a match, keyed by (match_id, profile_id)."""

    __tablename__ = "match_participants"

    match_id: str = Field(primary_key=True, max_length=32)
    profile_id: str = Field(primary_key=True, max_length=32)
    team_id: Optional[int] = None
    race_id: Optional[int] = None
    statgroup_id: Optional[str] = Field(default=None, max_length=32)
    alias_at_match: Optional[str] = None
    outcome: str = Field(default=Outcome.UNKNOWN.value, max_length=8)
    outcome_raw: Optional[int] = None
    wins: Optional[int] = None
    losses: Optional[int] = None
    streak: Optional[int] = None
    arbitration: Optional[int] = None
    report_type: Optional[int] = None
    old_rating: Optional[float] = None
    new_rating: Optional[float] = None
    rating_delta: Optional[float] = None
    is_computer: bool = Field(default=False)

    __table_args__ = (Index("ix_match_participants_profile_id", "profile_id"),)


class RawMatchPayload(SQLModel, table=True):
    """Archival copy of a match's raw member list (or full entry) for reprocessing."""

    __tablename__ = "match_players_raw"

    match_id: str = Field(primary_key=True, max_length=32)
    payload: Any = Field(default=None, sa_column=Column(JSON))
    captured_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


__all__ = ["Outcome", "Match", "MatchParticipant", "RawMatchPayload"]
