"""
ULID generation and timestamp utilities.

Instance ids, user task ids and history record ids are ULIDs so they sort by
creation time; all timestamps are timezone-aware UTC.

Tags:
    timestamps, ulid, utc, datetime, stepflow
"""

from __future__ import annotations

import random
import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def generate_ulid() -> str:
    """
    Generate a ULID-like identifier.

    Format: 26 characters, Crockford base32, time-sortable.
    """
    # 48-bit millisecond timestamp -> 10 chars
    timestamp_chars = _encode_base32(int(time.time() * 1000), 10)
    # 80 random bits -> 16 chars
    random_part = "".join(random.choices(_ENCODING, k=16))
    return timestamp_chars + random_part


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | datetime | None) -> datetime | None:
    """Parse ISO 8601 string to datetime (datetimes pass through)."""
    if s is None:
        return None
    if isinstance(s, datetime):
        return s
    return datetime.fromisoformat(s)


_ENCODING = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ENCODING_LEN = len(_ENCODING)


def _encode_base32(value: int, length: int) -> str:
    result = []
    for _ in range(length):
        result.append(_ENCODING[value % _ENCODING_LEN])
        value //= _ENCODING_LEN
    return "".join(reversed(result))


__all__ = ["utc_now", "generate_ulid", "to_iso8601", "from_iso8601"]
