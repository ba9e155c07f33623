"""Tests for utils/timezone.py - UTC-everywhere time handling."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from utils.timezone import minutes_until, now_utc, parse_iso, seconds_until, to_utc

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestNowUtc:
    def test_is_aware_utc(self):
        assert now_utc().tzinfo == timezone.utc


class TestToUtc:
    def test_raises_on_naive(self):
        """Naive datetime must raise ValueError."""
        with pytest.raises(ValueError, match="naive"):
            to_utc(datetime(2024, 1, 1, 12, 0, 0))

    def test_converts_other_timezone(self):
        # Chicago is UTC-6 in January
        chicago = datetime(2024, 1, 1, 12, 0, 0, tzinfo=ZoneInfo("America/Chicago"))
        result = to_utc(chicago)
        assert result.tzinfo == timezone.utc
        assert result.hour == 18


class TestParseIso:
    def test_z_suffix(self):
        assert parse_iso("2025-01-01T12:00:00Z") == NOW

    def test_offset_normalized(self):
        result = parse_iso("2025-01-01T14:00:00+02:00")
        assert result == NOW
        assert result.tzinfo == timezone.utc

    def test_naive_string_rejected(self):
        with pytest.raises(ValueError, match="naive"):
            parse_iso("2025-01-01T12:00:00")


class TestSecondsUntil:
    def test_rounds_up(self):
        assert seconds_until(NOW + timedelta(seconds=1, milliseconds=1), NOW) == 2

    def test_past_is_zero(self):
        assert seconds_until(NOW - timedelta(minutes=1), NOW) == 0

    def test_defaults_to_current_time(self):
        assert 0 < seconds_until(now_utc() + timedelta(minutes=5)) <= 300


class TestMinutesUntil:
    def test_partial_minute_counts(self):
        assert minutes_until(NOW + timedelta(minutes=14, seconds=1), NOW) == 15

    def test_exact(self):
        assert minutes_until(NOW + timedelta(minutes=15), NOW) == 15
