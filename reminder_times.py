import datetime
import enum
import re
from typing import NamedTuple, Optional

from firm_errors import ValidationFailed

MAX_REMINDER_DAYS = 7
MAX_REMINDER_SECONDS = MAX_REMINDER_DAYS * 24 * 60 * 60
MIN_REMINDER_SECONDS = 60
MAX_REMINDER_MESSAGE = 500

TIME_RE = re.compile(r"(\d+)(m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)", re.IGNORECASE | re.ASCII)


class TimeUnit(str, enum.Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


_UNIT_ALIASES = {
    TimeUnit.MINUTES: ({"m", "min", "mins", "minute", "minutes"}, 60),
    TimeUnit.HOURS: ({"h", "hr", "hrs", "hour", "hours"}, 60 * 60),
    TimeUnit.DAYS: ({"d", "day", "days"}, 24 * 60 * 60),
}


class ParsedTime(NamedTuple):
    seconds: int
    original: str
    unit: TimeUnit
    value: int

    @property
    def delta(self) -> datetime.timedelta:
        return datetime.timedelta(seconds=self.seconds)


def parse_time_string(text: str) -> Optional[ParsedTime]:
    """Parse ``10m``, ``2h``, ``1d``, ``30min``, ``5hours`` and friends."""
    match = TIME_RE.fullmatch((text or "").strip())
    if not match:
        return None
    value = int(match.group(1))
    suffix = match.group(2).lower()
    for unit, (aliases, multiplier) in _UNIT_ALIASES.items():
        if suffix in aliases:
            return ParsedTime(seconds=value * multiplier, original=text, unit=unit, value=value)
    return None


def validate_reminder_time(text: str) -> ParsedTime:
    parsed = parse_time_string(text)
    if not parsed:
        raise ValidationFailed(f"Invalid time format. Use formats like: 10m, 2h, 1d (max {MAX_REMINDER_DAYS} days)")
    if parsed.seconds > MAX_REMINDER_SECONDS:
        raise ValidationFailed(f"Maximum reminder time is {MAX_REMINDER_DAYS} days")
    if parsed.seconds < MIN_REMINDER_SECONDS:
        raise ValidationFailed("Minimum reminder time is 1 minute")
    return parsed


def validate_reminder_message(message: str) -> str:
    message = (message or "").strip()
    if not message:
        raise ValidationFailed("Reminder message is required")
    if len(message) > MAX_REMINDER_MESSAGE:
        raise ValidationFailed(f"Reminder message cannot exceed {MAX_REMINDER_MESSAGE} characters")
    return message


def format_reminder_time(parsed: ParsedTime) -> str:
    singular = parsed.unit.value[:-1]
    return f"{parsed.value} {singular}{'' if parsed.value == 1 else 's'}"
