"""Tests for duration parsing."""

from datetime import timedelta

import pytest

from infoline import ConfigurationError, parse_duration


class TestParseDuration:
    """Tests for parse_duration function."""

    def test_milliseconds(self) -> None:
        assert parse_duration("100ms") == 100
        assert parse_duration("0ms") == 0

    def test_seconds(self) -> None:
        assert parse_duration("15s") == 15_000
        assert parse_duration("1.5s") == 1_500

    def test_minutes_hours_days(self) -> None:
        assert parse_duration("5m") == 300_000
        assert parse_duration("2h") == 7_200_000
        assert parse_duration("1d") == 86_400_000

    def test_integer_passthrough(self) -> None:
        """Integers are milliseconds."""
        assert parse_duration(1000) == 1000
        assert parse_duration(0) == 0

    def test_digit_string_is_milliseconds(self) -> None:
        """Environment variables arrive as strings."""
        assert parse_duration("250") == 250

    def test_timedelta(self) -> None:
        assert parse_duration(timedelta(seconds=2)) == 2000

    def test_whitespace_is_tolerated(self) -> None:
        assert parse_duration(" 10 s ") == 10_000

    def test_invalid_format(self) -> None:
        """Invalid formats raise ConfigurationError, a ValueError."""
        for raw in ("invalid", "10x", "s10", ""):
            with pytest.raises(ValueError, match="Invalid duration"):
                parse_duration(raw)

    def test_negative_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            parse_duration(-1)

    def test_bool_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            parse_duration(True)
