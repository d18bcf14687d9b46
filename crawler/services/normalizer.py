"""
Payload Normalizer

Turns the nested match-history JSON returned by the Relic leaderboard API into
flat typed rows for matches, participants, players, alias history and raw
payload archives, and reports every profile id discovered along the way.

This module does no I/O. The clock is injectable so results are reproducible.

Usage:
    from crawler.services.normalizer import normalize

    rows = normalize(payload, source_alias_hint="SomePlayer", seed_profile_id="123")
    rows.matches            # list[MatchRow]
    rows.discovered_profile_ids  # ["456", ...] (never contains "123")
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from crawler.core.typing import utc_now
from crawler.models.match import Outcome
from crawler.scraper.coerce import (
    pick,
    to_bool,
    to_datetime_from_epoch_seconds,
    to_finite_number,
    to_id_string,
    to_int,
    to_json_blob,
    to_trimmed_non_empty_string,
)

# Accepted spellings per logical field, in preference order
MATCH_FIELDS: Dict[str, tuple] = {
    "match_id": ("id", "match_id", "matchId"),
    "match_type_id": ("matchtype_id", "matchTypeId", "matchtypeid"),
    "map_name": ("mapname", "mapName", "map"),
    "description": ("description",),
    "max_players": ("maxplayers", "maxPlayers", "max_players"),
    "creator_profile_id": ("creator_profile_id", "creatorProfileId"),
    "started_at": ("startgametime", "startGameTime", "start_time"),
    "completed_at": ("completiontime", "completionTime", "completed_time"),
    "duration": ("duration",),
    "observer_total": ("observertotal", "observercount", "observerCount", "observer_total"),
    "options": ("options",),
    "slot_info": ("slotinfo", "slotInfo", "slot_info"),
    "members": ("matchhistorymember", "matchHistoryMember", "matchhistorymembers"),
}

MEMBER_FIELDS: Dict[str, tuple] = {
    "profile_id": ("profile_id", "profileId"),
    "alias": ("alias",),
    "country": ("country",),
    "statgroup_id": ("statgroup_id", "statgroupId"),
    "team_id": ("teamid", "teamId", "team_id"),
    "race_id": ("race_id", "raceId"),
    "outcome": ("outcome", "result"),
    "wins": ("wins",),
    "losses": ("losses",),
    "streak": ("streak",),
    "arbitration": ("arbitration",),
    "report_type": ("reporttype", "reportType", "report_type"),
    "old_rating": ("oldrating", "oldRating", "old_rating"),
    "new_rating": ("newrating", "newRating", "new_rating"),
    "is_computer": ("iscomputer", "isComputer", "is_ai", "aislot"),
}

STAT_MEMBER_FIELDS: Dict[str, tuple] = {
    "profile_id": ("profile_id", "profileId"),
    "alias": ("alias",),
    "country": ("country",),
    "xp": ("xp",),
    "level": ("level",),
    "name": ("name",),
}

STEAM_NAME_RE = re.compile(r"/steam/(\d{17})")


@dataclass
class MatchRow:
    match_id: str
    match_type_id: Optional[int]
    map_name: Optional[str]
    description: Optional[str]
    max_players: Optional[int]
    creator_profile_id: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_seconds: Optional[int]
    observer_total: Optional[int]
    crawled_at: datetime
    source_alias: Optional[str]
    options_blob: Optional[str]
    slot_info_blob: Optional[str]


@dataclass
class ParticipantRow:
    match_id: str
    profile_id: str
    team_id: Optional[int]
    race_id: Optional[int]
    statgroup_id: Optional[str]
    alias_at_match: Optional[str]
    outcome: str
    outcome_raw: Optional[int]
    wins: Optional[int]
    losses: Optional[int]
    streak: Optional[int]
    arbitration: Optional[int]
    report_type: Optional[int]
    old_rating: Optional[float]
    new_rating: Optional[float]
    rating_delta: Optional[float]
    is_computer: bool


@dataclass
class PlayerRow:
    profile_id: str
    current_alias: Optional[str] = None
    country: Optional[str] = None
    statgroup_id: Optional[str] = None
    steam_id64: Optional[str] = None
    xp: Optional[int] = None
    level: Optional[int] = None
    last_seen_at: Optional[datetime] = None


@dataclass
class AliasHistoryRow:
    profile_id: str
    alias: str
    first_seen_at: datetime
    last_seen_at: datetime


@dataclass
class RawPayloadRow:
    match_id: str
    payload: Any
    captured_at: datetime


@dataclass
class NormalizedPayload:
    matches: List[MatchRow] = field(default_factory=list)
    participants: List[ParticipantRow] = field(default_factory=list)
    players: List[PlayerRow] = field(default_factory=list)
    alias_history: List[AliasHistoryRow] = field(default_factory=list)
    raw_payloads: List[RawPayloadRow] = field(default_factory=list)
    discovered_profile_ids: List[str] = field(default_factory=list)

    def alias_hints(self) -> Dict[str, Optional[str]]:
        """profile_id -> resolved alias, for frontier job payloads."""
        return {player.profile_id: player.current_alias for player in self.players}

    def player(self, profile_id: str) -> Optional[PlayerRow]:
        for row in self.players:
            if row.profile_id == profile_id:
                return row
        return None


@dataclass
class PersonalStats:
    """The first stat group member of a getPersonalStat response."""

    profile_id: Optional[str]
    statgroup_id: Optional[str]
    alias: Optional[str]
    country: Optional[str]
    steam_id64: Optional[str]
    xp: Optional[int]


def determine_outcome(raw: Any) -> Outcome:
    """1 -> win, 0 -> loss, anything else (including booleans) -> unknown."""
    if isinstance(raw, bool):
        return Outcome.UNKNOWN
    if raw == 1 or raw == "1":
        return Outcome.WIN
    if raw == 0 or raw == "0":
        return Outcome.LOSS
    return Outcome.UNKNOWN


def normalize_country(value: Any) -> Optional[str]:
    text = to_trimmed_non_empty_string(value)
    return text.upper() if text else None


def build_alias_map(payload: Any) -> Dict[str, str]:
    """
    Collect profile -> alias pairs from the payload's top-level arrays.

    Responses carry a "profiles" list next to "matchHistoryStats"; those pairs
    are more authoritative than the alias repeated on each match member.
    """
    alias_map: Dict[str, str] = {}
    if not isinstance(payload, Mapping):
        return alias_map

    for value in payload.values():
        if not isinstance(value, list):
            continue
        for entry in value:
            profile_id = to_id_string(pick(entry, MEMBER_FIELDS["profile_id"]))
            alias = to_trimmed_non_empty_string(pick(entry, MEMBER_FIELDS["alias"]))
            if profile_id and alias:
                alias_map[profile_id] = alias
    return alias_map


def _duration_seconds(entry: Mapping) -> Optional[int]:
    explicit = to_int(pick(entry, MATCH_FIELDS["duration"]))
    if explicit is not None:
        return explicit
    start = to_datetime_from_epoch_seconds(pick(entry, MATCH_FIELDS["started_at"]))
    end = to_datetime_from_epoch_seconds(pick(entry, MATCH_FIELDS["completed_at"]))
    if start is None or end is None or end < start:
        return None
    return int((end - start).total_seconds())


def _match_row(entry: Mapping, match_id: str, source_alias: Optional[str], now: datetime) -> MatchRow:
    return MatchRow(
        match_id=match_id,
        match_type_id=to_int(pick(entry, MATCH_FIELDS["match_type_id"])),
        map_name=to_trimmed_non_empty_string(pick(entry, MATCH_FIELDS["map_name"])),
        description=to_trimmed_non_empty_string(pick(entry, MATCH_FIELDS["description"])),
        max_players=to_int(pick(entry, MATCH_FIELDS["max_players"])),
        creator_profile_id=to_id_string(pick(entry, MATCH_FIELDS["creator_profile_id"])),
        started_at=to_datetime_from_epoch_seconds(pick(entry, MATCH_FIELDS["started_at"])),
        completed_at=to_datetime_from_epoch_seconds(pick(entry, MATCH_FIELDS["completed_at"])),
        duration_seconds=_duration_seconds(entry),
        observer_total=to_int(pick(entry, MATCH_FIELDS["observer_total"])),
        crawled_at=now,
        source_alias=source_alias,
        options_blob=to_json_blob(pick(entry, MATCH_FIELDS["options"])),
        slot_info_blob=to_json_blob(pick(entry, MATCH_FIELDS["slot_info"])),
    )


def _participant_row(member: Mapping, match_id: str, profile_id: str, alias: Optional[str]) -> ParticipantRow:
    outcome_raw = pick(member, MEMBER_FIELDS["outcome"])
    old_rating = to_finite_number(pick(member, MEMBER_FIELDS["old_rating"]))
    new_rating = to_finite_number(pick(member, MEMBER_FIELDS["new_rating"]))
    rating_delta = new_rating - old_rating if old_rating is not None and new_rating is not None else None

    return ParticipantRow(
        match_id=match_id,
        profile_id=profile_id,
        team_id=to_int(pick(member, MEMBER_FIELDS["team_id"])),
        race_id=to_int(pick(member, MEMBER_FIELDS["race_id"])),
        statgroup_id=to_id_string(pick(member, MEMBER_FIELDS["statgroup_id"])),
        alias_at_match=alias,
        outcome=determine_outcome(outcome_raw).value,
        outcome_raw=to_int(outcome_raw),
        wins=to_int(pick(member, MEMBER_FIELDS["wins"])),
        losses=to_int(pick(member, MEMBER_FIELDS["losses"])),
        streak=to_int(pick(member, MEMBER_FIELDS["streak"])),
        arbitration=to_int(pick(member, MEMBER_FIELDS["arbitration"])),
        report_type=to_int(pick(member, MEMBER_FIELDS["report_type"])),
        old_rating=old_rating,
        new_rating=new_rating,
        rating_delta=rating_delta,
        is_computer=to_bool(pick(member, MEMBER_FIELDS["is_computer"])),
    )


def normalize(
    raw_payload: Any,
    source_alias_hint: Optional[str] = None,
    *,
    seed_profile_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> NormalizedPayload:
    """
    Normalize a recent-match-history response into row sets.

    Args:
        raw_payload: Decoded JSON ({"matchHistoryStats": [...], "profiles": [...]})
        source_alias_hint: Alias the crawl was issued with, stored on each match
        seed_profile_id: Profile the crawl was seeded from; never reported as discovered
        now: Clock override for crawled_at and for matches without a completion time

    Returns:
        NormalizedPayload. Entries without a match id and members without a
        profile id are skipped; nothing here raises on bad input.
    """
    now = now or utc_now()
    result = NormalizedPayload()
    if not isinstance(raw_payload, Mapping):
        return result

    stats = raw_payload.get("matchHistoryStats")
    if not isinstance(stats, list):
        return result

    alias_map = build_alias_map(raw_payload)
    players: Dict[str, PlayerRow] = {}
    alias_history: Dict[tuple, AliasHistoryRow] = {}
    discovered: Dict[str, None] = {}  # insertion-ordered set

    for entry in stats:
        if not isinstance(entry, Mapping):
            continue
        match_id = to_id_string(pick(entry, MATCH_FIELDS["match_id"]))
        if not match_id:
            continue

        match = _match_row(entry, match_id, source_alias_hint, now)
        result.matches.append(match)

        members = pick(entry, MATCH_FIELDS["members"])
        members = members if isinstance(members, list) else []
        result.raw_payloads.append(
            RawPayloadRow(match_id=match_id, payload=members if members else dict(entry), captured_at=now)
        )

        seen_at = match.completed_at or now

        for member in members:
            if not isinstance(member, Mapping):
                continue
            profile_id = to_id_string(pick(member, MEMBER_FIELDS["profile_id"]))
            if not profile_id:
                continue
            if profile_id != seed_profile_id:
                discovered[profile_id] = None

            alias = alias_map.get(profile_id) or to_trimmed_non_empty_string(pick(member, MEMBER_FIELDS["alias"]))
            participant = _participant_row(member, match_id, profile_id, alias)
            result.participants.append(participant)

            player = players.setdefault(profile_id, PlayerRow(profile_id=profile_id))
            if alias:
                player.current_alias = alias
            if player.country is None:
                player.country = normalize_country(pick(member, MEMBER_FIELDS["country"]))
            if player.statgroup_id is None:
                player.statgroup_id = participant.statgroup_id
            if player.last_seen_at is None or player.last_seen_at < seen_at:
                player.last_seen_at = seen_at

            if alias:
                key = (profile_id, alias)
                history = alias_history.get(key)
                if history is None:
                    alias_history[key] = AliasHistoryRow(
                        profile_id=profile_id, alias=alias, first_seen_at=seen_at, last_seen_at=seen_at
                    )
                else:
                    history.first_seen_at = min(history.first_seen_at, seen_at)
                    history.last_seen_at = max(history.last_seen_at, seen_at)

    result.players = list(players.values())
    result.alias_history = list(alias_history.values())
    result.discovered_profile_ids = list(discovered)
    return result


def normalize_personal_stats(raw_payload: Any) -> Optional[PersonalStats]:
    """
    Extract the player's own stat group member from a getPersonalStat response.

    Returns None when the response has no stat group member at all.
    """
    if not isinstance(raw_payload, Mapping):
        return None
    groups = pick(raw_payload, ("statGroups", "stat_groups"))
    if not isinstance(groups, list) or not groups or not isinstance(groups[0], Mapping):
        return None
    group = groups[0]
    members = group.get("members")
    if not isinstance(members, list) or not members or not isinstance(members[0], Mapping):
        return None
    member = members[0]

    name = to_trimmed_non_empty_string(pick(member, STAT_MEMBER_FIELDS["name"]))
    steam_match = STEAM_NAME_RE.search(name) if name else None

    return PersonalStats(
        profile_id=to_id_string(pick(member, STAT_MEMBER_FIELDS["profile_id"])),
        statgroup_id=to_id_string(pick(group, ("id", "statgroup_id", "statGroupId"))),
        alias=to_trimmed_non_empty_string(pick(member, STAT_MEMBER_FIELDS["alias"])),
        country=normalize_country(pick(member, STAT_MEMBER_FIELDS["country"])),
        steam_id64=steam_match.group(1) if steam_match else None,
        xp=to_int(pick(member, STAT_MEMBER_FIELDS["xp"])),
    )


__all__ = [
    "MatchRow",
    "ParticipantRow",
    "PlayerRow",
    "AliasHistoryRow",
    "RawPayloadRow",
    "NormalizedPayload",
    "PersonalStats",
    "determine_outcome",
    "build_alias_map",
    "normalize",
    "normalize_personal_stats",
]
