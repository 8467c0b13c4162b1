import enum
import re
from typing import NamedTuple, Optional

from firm_errors import InvalidTransition, ValidationFailed

CHANNEL_NAME_LIMIT = 100  # Discord channel name limit

CASE_NUMBER_RE = re.compile(r"(\d{4})-(\d{4})-(.+)", re.ASCII)
_CHANNEL_UNSAFE_RE = re.compile(r"[^a-z0-9-]")


class CaseStatus(str, enum.Enum):
    PENDING = "pending"
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    CLOSED = "closed"


class CasePriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CaseResult(str, enum.Enum):
    WIN = "win"
    LOSS = "loss"
    SETTLEMENT = "settlement"
    DISMISSED = "dismissed"
    WITHDRAWN = "withdrawn"


STATUS_ORDER = [CaseStatus.PENDING, CaseStatus.OPEN, CaseStatus.IN_PROGRESS, CaseStatus.CLOSED]
CLOSABLE_STATUSES = frozenset({CaseStatus.OPEN, CaseStatus.IN_PROGRESS})


class CaseNumberParts(NamedTuple):
    year: int
    count: int
    username: str


def generate_case_number(year: int, count: int, username: str) -> str:
    """Format ``{year}-{count:04d}-{username}``.

    Counts of 10000 and up are not truncated, so :func:`parse_case_number` rejects
    them (returns None).
    """
    return f"{year}-{count:04d}-{username}"


def parse_case_number(case_number: str) -> Optional[CaseNumberParts]:
    match = CASE_NUMBER_RE.fullmatch(case_number or "")
    if not match:
        return None
    return CaseNumberParts(year=int(match.group(1)), count=int(match.group(2)), username=match.group(3))


def generate_channel_name(case_number: str) -> str:
    name = _CHANNEL_UNSAFE_RE.sub("-", f"case-{case_number}".lower())
    return name[:CHANNEL_NAME_LIMIT]


def can_transition(current, new) -> bool:
    current, new = CaseStatus(current), CaseStatus(new)
    if current is CaseStatus.CLOSED:
        return False
    return STATUS_ORDER.index(new) > STATUS_ORDER.index(current)


def validate_transition(current, new) -> None:
    if not can_transition(current, new):
        raise InvalidTransition(CaseStatus(current), CaseStatus(new))


def validate_closure(current, result) -> CaseResult:
    """Check a case in ``current`` status may be closed with ``result``."""
    current = CaseStatus(current)
    if current not in CLOSABLE_STATUSES:
        raise InvalidTransition(current, CaseStatus.CLOSED)
    try:
        return CaseResult(result)
    except ValueError:
        raise ValidationFailed(f"Unknown case result: {result!r}") from None
