"""
Player level table.

Levels 1-10 take 10,000 XP each, 11-20 take 15,000, and every level after that
25,000, up to level 250 at 6,000,000 XP.
"""

from bisect import bisect_left
from typing import List, Optional

MAX_LEVEL = 250
XP_CAP = 6_000_000


def xp_required_for_level(level: int) -> int:
    if level <= 10:
        return 10_000
    if level <= 20:
        return 15_000
    return 25_000


def _build_level_maxima() -> List[int]:
    maxima = []
    cumulative = 0
    for level in range(1, MAX_LEVEL + 1):
        cumulative += xp_required_for_level(level)
        maxima.append(cumulative)
    return maxima


# LEVEL_MAXIMA[i] is the highest XP total still at level i + 1
LEVEL_MAXIMA = _build_level_maxima()


def get_level_from_xp(xp: Optional[float]) -> int:
    """Level for a cumulative XP total. Missing or non-positive XP is level 1."""
    if not xp or xp <= 0:
        return 1
    if xp >= XP_CAP:
        return MAX_LEVEL
    return min(MAX_LEVEL, bisect_left(LEVEL_MAXIMA, xp) + 1)


__all__ = ["MAX_LEVEL", "XP_CAP", "LEVEL_MAXIMA", "xp_required_for_level", "get_level_from_xp"]
