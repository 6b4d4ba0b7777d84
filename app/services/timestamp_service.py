"""Timestamp parsing and formatting.

Pure functions used by the ``/v1`` routes. Invalid input raises
``ValidationAppError``, which the exception handlers render as 400.
"""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import format_datetime
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

from app.core.errors import ValidationAppError
from app.schemas.timestamp import TimestampFormats

# Numeric inputs above this magnitude are read as milliseconds
MILLISECOND_THRESHOLD = 100_000_000_000

HUMAN_FORMAT = "%A, %B %d, %Y %I:%M:%S %p %Z"


def get_zone(name: str | None) -> ZoneInfo:
    """Resolve an IANA zone name (``UTC`` when empty).

    Raises:
        ValidationAppError: If the zone is unknown.
    """
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationAppError(
            code="invalid_timezone",
            message=f"Unknown timezone: '{name}'",
            details={"hint": "Use an IANA zone name such as 'Europe/Paris'; see /v1/timezones"},
        ) from exc


def parse_timestamp(value: str) -> datetime:
    """Parse unix seconds or milliseconds into an aware UTC datetime.

    Examples:
        >>> parse_timestamp("0").isoformat()
        '1970-01-01T00:00:00+00:00'
        >>> parse_timestamp("1700000000000") == parse_timestamp("1700000000")
        True
    """
    try:
        number = float(value)
    except ValueError as exc:
        raise ValidationAppError(
            code="invalid_timestamp",
            message="timestamp must be a number of seconds or milliseconds since the epoch",
        ) from exc

    if abs(number) >= MILLISECOND_THRESHOLD:
        number /= 1000
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValidationAppError(
            code="invalid_timestamp",
            message="timestamp is out of the supported range",
        ) from exc


def parse_date(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime. Naive values are read as UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationAppError(
            code="invalid_date",
            message="date must be an ISO-8601 value such as 2024-01-01T12:00:00Z",
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_instant(moment: datetime, zone: ZoneInfo) -> TimestampFormats:
    local = moment.astimezone(zone)
    return TimestampFormats(
        unix=int(local.timestamp()),
        unix_ms=int(round(local.timestamp() * 1000)),
        iso=local.isoformat(),
        rfc2822=format_datetime(local),
        human=local.strftime(HUMAN_FORMAT),
        timezone=zone.key,
    )


@lru_cache(maxsize=1)
def _all_timezones() -> tuple[str, ...]:
    return tuple(sorted(available_timezones()))


def list_timezones(search: str | None = None) -> list[str]:
    """Available IANA zones, optionally filtered by a case-insensitive substring."""
    zones = _all_timezones()
    if not search:
        return list(zones)
    needle = search.lower()
    return [zone for zone in zones if needle in zone.lower()]
