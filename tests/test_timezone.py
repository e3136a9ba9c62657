"""
Unit tests for XMLTV timestamp parsing and timezone helpers.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from epg_aggregator.utils.timezone import (
    DateFormatError,
    convert_to_timezone,
    parse_iso8601_to_utc,
    parse_xmltv_timestamp,
    resolve_timezone,
)


class TestXmltvTimestamps:
    """Accepted dialects and their UTC normalization."""

    def test_spaced_offset(self):
        parsed = parse_xmltv_timestamp("20080715003000 -0600")
        assert parsed == datetime(2008, 7, 15, 6, 30, tzinfo=timezone.utc)
        assert parsed.tzinfo == timezone.utc

    def test_joined_offset(self):
        assert parse_xmltv_timestamp("20080715003000-0600") == datetime(2008, 7, 15, 6, 30, tzinfo=timezone.utc)

    def test_positive_offset_with_minutes(self):
        assert parse_xmltv_timestamp("20080715003000 +0530") == datetime(2008, 7, 14, 19, 0, tzinfo=timezone.utc)

    def test_bare_uses_default_utc(self):
        assert parse_xmltv_timestamp("20080715003000") == datetime(2008, 7, 15, 0, 30, tzinfo=timezone.utc)

    def test_bare_uses_configured_zone(self):
        london = ZoneInfo("Europe/London")
        # British Summer Time is UTC+1 in July
        assert parse_xmltv_timestamp("20080715003000", london) == datetime(2008, 7, 14, 23, 30, tzinfo=timezone.utc)

    def test_surrounding_whitespace_is_ignored(self):
        assert parse_xmltv_timestamp("  20080715003000 +0000\n") == datetime(2008, 7, 15, 0, 30, tzinfo=timezone.utc)

    def test_malformed_inputs_return_none(self):
        """Anything outside the three dialects is rejected."""
        test_cases = [
            None,
            "",
            "2008071500",
            "20080715003000 0600",
            "20080715003000  +0600",
            "2008-07-15T00:30:00Z",
            "20081315003000 +0000",
            "20080732003000",
            "20080715003000 +0075",
            "20080715003000 +2400",
            "abcdefghijklmn",
        ]
        for raw in test_cases:
            assert parse_xmltv_timestamp(raw) is None, f"Accepted: {raw!r}"


class TestTimezoneHelpers:

    def test_resolve_utc_alias(self):
        assert resolve_timezone("utc") is timezone.utc

    def test_resolve_unknown_zone(self):
        with pytest.raises(DateFormatError):
            resolve_timezone("Not/AZone")

    def test_iso8601_z_suffix(self):
        assert parse_iso8601_to_utc("2025-10-09T00:00:00Z") == datetime(2025, 10, 9, tzinfo=timezone.utc)

    def test_iso8601_offset_normalized(self):
        assert parse_iso8601_to_utc("2025-10-09T02:00:00+02:00") == datetime(2025, 10, 9, tzinfo=timezone.utc)

    def test_iso8601_invalid(self):
        with pytest.raises(DateFormatError):
            parse_iso8601_to_utc("yesterday")

    def test_convert_to_timezone(self):
        value = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert convert_to_timezone(value, "America/New_York") == "2025-01-01T07:00:00-05:00"
        assert convert_to_timezone(value, "UTC") == "2025-01-01T12:00:00+00:00"
