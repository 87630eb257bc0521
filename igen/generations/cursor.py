"""Keyset pagination cursor: position = (created_at, id), newest first."""

from __future__ import annotations

import base64
from datetime import datetime, timezone

from igen.errors import ValidationError

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, int(limit)))


def _to_micros(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def encode_cursor(created_at: datetime, gen_id: str) -> str:
    raw = f"{_to_micros(created_at)}:{gen_id}"
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    """Return (created_at, id). Raises ValidationError on malformed input."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        micros_str, sep, gen_id = raw.partition(":")
        micros = int(micros_str)
        # Out-of-range timestamps raise OverflowError or OSError depending on platform
        created_at = datetime.fromtimestamp(micros // 1_000_000, tz=timezone.utc).replace(
            microsecond=micros % 1_000_000
        )
    except (ValueError, UnicodeDecodeError, OverflowError, OSError) as e:
        raise ValidationError(f"Invalid cursor: {cursor!r}") from e
    if not sep or not gen_id:
        raise ValidationError(f"Invalid cursor: {cursor!r}")
    return created_at, gen_id


def sort_key(created_at: datetime, gen_id: str) -> tuple[int, str]:
    return _to_micros(created_at), gen_id
