from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import DateTime, Index


class Player(SQLModel, table=True):
    """
    A player discovered in any match payload.

    profile_id is the upstream identifier kept as a string so 64-bit ids never
    lose precision. last_seen_at only ever moves forward.
    """

    __tablename__ = "players"

    profile_id: str = Field(primary_key=True, max_length=32)
    current_alias: Optional[str] = None
    country: Optional[str] = Field(default=None, max_length=8)
    statgroup_id: Optional[str] = Field(default=None, max_length=32)
    steam_id64: Optional[str] = Field(default=None, max_length=32)
    xp: Optional[int] = None
    level: Optional[int] = None
    last_seen_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    __table_args__ = (
        Index("ix_players_current_alias", "current_alias"),
        Index("ix_players_xp", "xp"),
    )


class AliasHistory(SQLModel, table=True):
    """Name-change ledger; each (profile, alias) row covers the interval it was observed."""

    __tablename__ = "player_alias_history"

    profile_id: str = Field(primary_key=True, max_length=32)
    alias: str = Field(primary_key=True)
    first_seen_at: datetime = Field(sa_type=DateTime(timezone=True))
    last_seen_at: datetime = Field(sa_type=DateTime(timezone=True))


__all__ = ["Player", "AliasHistory"]
