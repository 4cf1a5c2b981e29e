"""Cooldown evaluation between successive expansions."""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from volumescaler.utils.errors import InvalidDuration, InvalidTimestamp

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_cooldown(text) -> timedelta:
    """Parse a duration such as "10m", "90s", "1h30m" or "-5m".

    An empty value means no cooldown; a negative one never blocks scaling.

    Raises:
        InvalidDuration: If the text is not a valid duration
    """
    if text is None:
        return timedelta(0)
    value = str(text).strip()
    if not value:
        return timedelta(0)
    sign = 1
    if value[0] in "+-":
        sign = -1 if value[0] == "-" else 1
        value = value[1:]
    if value == "0":
        return timedelta(0)

    pos = 0
    total = timedelta(0)
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            raise InvalidDuration(str(text))
        number, unit = match.groups()
        total += float(number) * _DURATION_UNITS[unit]
        pos = match.end()
    if pos == 0 or pos != len(value):
        raise InvalidDuration(str(text))
    return sign * total


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise InvalidTimestamp(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(moment: datetime) -> str:
    """Render a timestamp as "2024-01-01T10:00:00Z"."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def can_scale_now(last_scaled_at: Optional[str],
                  cooldown: timedelta,
                  now: Optional[datetime] = None) -> bool:
    """Check whether the cooldown since the last expansion has elapsed.

    Args:
        last_scaled_at: RFC 3339 time of the last expansion, empty if never scaled
        cooldown: Minimum time between expansions
        now: Current time, defaults to the wall clock

    Returns:
        bool: True if a new expansion is permitted

    Raises:
        InvalidTimestamp: If last_scaled_at cannot be parsed
    """
    if cooldown <= timedelta(0):
        return True
    if not last_scaled_at:
        return True
    last = parse_timestamp(last_scaled_at)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now - last >= cooldown
