"""
Date and Time utilities

This module handles XMLTV timestamp parsing and timezone conversions.
Centralizes all date parsing logic to maintain consistency across the application.
"""
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import re

logger = logging.getLogger(__name__)

# Accepted XMLTV timestamp dialects, tried in order
_SPACED_OFFSET = re.compile(r"^(\d{14}) ([+-])(\d{2})(\d{2})$")
_JOINED_OFFSET = re.compile(r"^(\d{14})([+-])(\d{2})(\d{2})$")
_BARE = re.compile(r"^(\d{14})$")

_XMLTV_DIGITS_FORMAT = "%Y%m%d%H%M%S"


class DateFormatError(ValueError):
    """Raised when date format is invalid"""
    pass


def resolve_timezone(name: str) -> tzinfo:
    """
    Resolve an IANA zone name (or 'UTC') into a tzinfo

    Raises:
        DateFormatError: If the zone is unknown
    """
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise DateFormatError(f"Unknown timezone: '{name}'") from e


def parse_xmltv_timestamp(raw: str | None, default_tz: tzinfo = timezone.utc) -> datetime | None:
    """
    Convert an XMLTV timestamp into a UTC datetime.

    Accepts '20080715003000 -0600', '20080715003000-0600' and the bare
    '20080715003000'. A bare timestamp is read in default_tz, which callers
    take from the EPG_DEFAULT_TIMEZONE setting and never from the host clock.

    Args:
        raw: Timestamp string as found in a start/stop attribute
        default_tz: Zone assumed when the string carries no offset

    Returns:
        Timezone-aware datetime in UTC, or None if the string is not a
        recognised timestamp
    """
    if not raw:
        return None

    cleaned = raw.strip()

    for pattern in (_SPACED_OFFSET, _JOINED_OFFSET):
        match = pattern.match(cleaned)
        if match:
            digits, sign, hours, minutes = match.groups()
            return _build(digits, _offset_zone(sign, hours, minutes))

    match = _BARE.match(cleaned)
    if match:
        return _build(match.group(1), default_tz)

    return None


def _offset_zone(sign: str, hours: str, minutes: str) -> tzinfo | None:
    if int(minutes) >= 60:
        return None
    offset = timedelta(hours=int(hours), minutes=int(minutes))
    try:
        return timezone(-offset if sign == "-" else offset)
    except ValueError:
        # offsets must be strictly within 24h
        return None


def _build(digits: str, zone: tzinfo | None) -> datetime | None:
    if zone is None:
        return None
    try:
        naive = datetime.strptime(digits, _XMLTV_DIGITS_FORMAT)
        return naive.replace(tzinfo=zone).astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def _normalize_iso8601_string(date_str: str) -> str:
    """Normalize ISO8601 string by replacing 'Z' with '+00:00'"""
    return date_str.replace('Z', '+00:00') if date_str.endswith('Z') else date_str


def parse_iso8601_to_utc(date_str: str) -> datetime:
    """
    Parse ISO8601 date string and convert to UTC datetime

    Args:
        date_str: ISO8601 datetime string (e.g., '2025-10-09T00:00:00Z' or '2025-10-09T00:00:00+01:00')

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        DateFormatError: If the date string format is invalid
    """
    try:
        normalized = _normalize_iso8601_string(date_str)
        dt = datetime.fromisoformat(normalized)
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (ValueError, AttributeError) as e:
        raise DateFormatError(f"Invalid ISO8601 datetime format: '{date_str}'") from e


def convert_to_timezone(value: datetime, target_tz: str) -> str:
    """
    Render an aware datetime as ISO8601 in the target timezone

    Args:
        value: Timezone-aware datetime
        target_tz: Target timezone (IANA format or 'UTC')

    Returns:
        ISO8601 timestamp in target timezone
    """
    return value.astimezone(resolve_timezone(target_tz)).isoformat()
