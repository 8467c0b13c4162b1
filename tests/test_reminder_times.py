import datetime

import pytest

from firm_errors import ValidationFailed
from reminder_times import (
    MAX_REMINDER_SECONDS,
    TimeUnit,
    format_reminder_time,
    parse_time_string,
    validate_reminder_message,
    validate_reminder_time,
)


class TestParse:

    @pytest.mark.parametrize("text,seconds,unit", [
        ("10m", 600, TimeUnit.MINUTES),
        ("30min", 1800, TimeUnit.MINUTES),
        ("2h", 7200, TimeUnit.HOURS),
        ("5HOURS", 18000, TimeUnit.HOURS),
        ("1d", 86400, TimeUnit.DAYS),
        ("3days", 259200, TimeUnit.DAYS),
    ])
    def test_valid(self, text, seconds, unit):
        parsed = parse_time_string(text)
        assert parsed.seconds == seconds
        assert parsed.unit == unit
        assert parsed.delta == datetime.timedelta(seconds=seconds)

    @pytest.mark.parametrize("text", ["", "10", "m10", "10 m", "1w", "-5m", "1.5h", None, "\uff15m", "\u0665h"])
    def test_invalid(self, text):
        assert parse_time_string(text) is None


class TestValidate:

    def test_bounds(self):
        assert validate_reminder_time("7d").seconds == MAX_REMINDER_SECONDS
        assert validate_reminder_time("1m").seconds == 60

    def test_too_long(self):
        with pytest.raises(ValidationFailed, match="Maximum reminder time is 7 days"):
            validate_reminder_time("8d")
        with pytest.raises(ValidationFailed, match="Maximum"):
            validate_reminder_time("169h")

    def test_too_short(self):
        with pytest.raises(ValidationFailed, match="Minimum reminder time is 1 minute"):
            validate_reminder_time("0m")

    def test_bad_format(self):
        with pytest.raises(ValidationFailed, match="Invalid time format"):
            validate_reminder_time("tomorrow")

    def test_message(self):
        assert validate_reminder_message("  file brief  ") == "file brief"
        with pytest.raises(ValidationFailed):
            validate_reminder_message("   ")
        with pytest.raises(ValidationFailed):
            validate_reminder_message("x" * 501)
        assert len(validate_reminder_message("x" * 500)) == 500

    def test_format(self):
        assert format_reminder_time(parse_time_string("1m")) == "1 minute"
        assert format_reminder_time(parse_time_string("2h")) == "2 hours"
        assert format_reminder_time(parse_time_string("1day")) == "1 day"
