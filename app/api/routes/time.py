from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Query

from app.core.errors import ValidationAppError
from app.schemas.timestamp import ConvertResponse, NowResponse, TimezonesResponse
from app.services.timestamp_service import (
    format_instant,
    get_zone,
    list_timezones,
    parse_date,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Time"])


@router.get("/now", response_model=NowResponse)
async def now(
    timezone_name: str | None = Query(default=None, alias="timezone", description="IANA zone name"),
) -> NowResponse:
    """Current server time in UTC, plus the requested timezone when given."""
    moment = datetime.now(timezone.utc)
    local = format_instant(moment, get_zone(timezone_name)) if timezone_name else None
    return NowResponse(utc=format_instant(moment, get_zone("UTC")), local=local)


@router.get("/convert", response_model=ConvertResponse)
async def convert(
    timestamp: str | None = Query(default=None, description="Unix time in seconds or milliseconds"),
    date: str | None = Query(default=None, description="ISO-8601 date or datetime"),
    timezone_name: str | None = Query(default=None, alias="timezone", description="Target IANA zone"),
) -> ConvertResponse:
    """Convert a unix timestamp or an ISO date into every output format.

    Exactly one of ``timestamp`` and ``date`` must be provided.

    Raises:
        ValidationAppError: On missing, ambiguous or malformed input.
    """
    if (timestamp is None) == (date is None):
        raise ValidationAppError(
            code="invalid_convert_input",
            message="Provide exactly one of 'timestamp' or 'date'",
        )

    zone = get_zone(timezone_name)
    if timestamp is not None:
        moment, raw, input_type = parse_timestamp(timestamp), timestamp, "timestamp"
    else:
        moment, raw, input_type = parse_date(date), date, "date"

    logger.debug("convert.completed", extra={"input_type": input_type, "timezone": zone.key})
    return ConvertResponse(input=raw, input_type=input_type, result=format_instant(moment, zone))


@router.get("/timezones", response_model=TimezonesResponse)
async def timezones(
    search: str | None = Query(default=None, description="Case-insensitive substring filter"),
) -> TimezonesResponse:
    zones = list_timezones(search)
    return TimezonesResponse(count=len(zones), timezones=zones)
