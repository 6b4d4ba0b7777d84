"""Pydantic schemas for timestamp conversion responses."""

from typing import Literal

from pydantic import BaseModel, Field


class TimestampFormats(BaseModel):
    """One instant rendered in the supported output formats."""

    unix: int = Field(..., description="Seconds since the Unix epoch.")
    unix_ms: int = Field(..., description="Milliseconds since the Unix epoch.")
    iso: str = Field(..., description="ISO-8601 with UTC offset.")
    rfc2822: str = Field(..., description="RFC 2822 date (e-mail/HTTP style).")
    human: str = Field(
        ...,
        description="Readable form, e.g. 'Monday, January 01, 2024 12:00:00 PM UTC'.",
    )
    timezone: str = Field(..., description="IANA zone the instant is rendered in.")


class NowResponse(BaseModel):
    """Current server time, in UTC and optionally in a requested zone."""

    utc: TimestampFormats
    local: TimestampFormats | None = Field(
        default=None,
        description="Current time in the requested timezone, when one was given.",
    )


class ConvertResponse(BaseModel):
    input: str = Field(..., description="Raw value that was converted.")
    input_type: Literal["timestamp", "date"]
    result: TimestampFormats


class TimezonesResponse(BaseModel):
    count: int
    timezones: list[str]
