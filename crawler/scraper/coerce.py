"""
Tolerant value coercion for Relic API payloads.

Every field in the upstream JSON is optional and may arrive as a number, a
numeric string, null, or something else entirely. These helpers turn any of
that into a clean Python value or None, and never raise.
"""

import json
import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence


def pick(entry: Any, aliases: Sequence[str]) -> Any:
    """
    Return the first non-None value among the field aliases of a record.

    Args:
        entry: A decoded JSON object (anything else yields None)
        aliases: Accepted spellings of the logical field, in preference order

    Example:
        pick(member, ("oldrating", "oldRating", "old_rating"))
    """
    if not isinstance(entry, Mapping):
        return None
    for key in aliases:
        value = entry.get(key)
        if value is not None:
            return value
    return None


def to_finite_number(value: Any) -> Optional[float]:
    """Parse ints, floats and numeric strings; NaN, infinities, bools and junk become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    else:
        return None
    return num if math.isfinite(num) else None


def to_int(value: Any) -> Optional[int]:
    """Like to_finite_number, but only integral values survive."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    num = to_finite_number(value)
    if num is None or not num.is_integer():
        return None
    return int(num)


def to_datetime_from_epoch_seconds(value: Any) -> Optional[datetime]:
    """Convert upstream epoch seconds to an aware UTC datetime. Only strictly positive epochs are valid."""
    num = to_finite_number(value)
    if num is None or num <= 0:
        return None
    try:
        return datetime.fromtimestamp(num, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_trimmed_non_empty_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def to_id_string(value: Any) -> Optional[str]:
    """
    String-encode an upstream identifier.

    Profile and match ids can exceed 2**53, so they are stored as strings.
    Integral floats ("123.0" style) are collapsed back to their integer form.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        return str(int(value))
    if isinstance(value, str):
        text = value.strip()
        return text or None
    return None


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return False


def to_json_blob(value: Any) -> Optional[str]:
    """Serialize a raw sub-object for forward-compatible storage. Empty values become None."""
    if not value:
        return None
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return None


__all__ = [
    "pick",
    "to_finite_number",
    "to_int",
    "to_datetime_from_epoch_seconds",
    "to_trimmed_non_empty_string",
    "to_id_string",
    "to_bool",
    "to_json_blob",
]
