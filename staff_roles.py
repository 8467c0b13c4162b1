import enum
import re
from types import MappingProxyType
from typing import NamedTuple, Optional

from firm_errors import CapacityExceeded, InvalidRoleChange, PermissionDenied, UnknownRole, ValidationFailed


class StaffRole(str, enum.Enum):
    MANAGING_PARTNER = "Managing Partner"
    SENIOR_PARTNER = "Senior Partner"
    JUNIOR_PARTNER = "Junior Partner"
    SENIOR_ASSOCIATE = "Senior Associate"
    JUNIOR_ASSOCIATE = "Junior Associate"
    PARALEGAL = "Paralegal"


class RoleRank(NamedTuple):
    level: int
    max_count: int


# Senior Partner and above may promote/demote.
SENIOR_STAFF_LEVEL = 5

ROLE_HIERARCHY = MappingProxyType({
    StaffRole.MANAGING_PARTNER: RoleRank(level=6, max_count=1),
    StaffRole.SENIOR_PARTNER:   RoleRank(level=5, max_count=3),
    StaffRole.JUNIOR_PARTNER:   RoleRank(level=4, max_count=5),
    StaffRole.SENIOR_ASSOCIATE: RoleRank(level=3, max_count=10),
    StaffRole.JUNIOR_ASSOCIATE: RoleRank(level=2, max_count=10),
    StaffRole.PARALEGAL:        RoleRank(level=1, max_count=10),
})

_ROLE_BY_LEVEL = MappingProxyType({rank.level: role for role, rank in ROLE_HIERARCHY.items()})

ROBLOX_USERNAME_RE = re.compile(r"[A-Za-z0-9_]{3,20}")


def is_valid_role(candidate) -> bool:
    if isinstance(candidate, StaffRole):
        return True
    if not isinstance(candidate, str):
        return False
    return any(candidate == role.value for role in StaffRole)


def coerce_role(value) -> StaffRole:
    """Turn a stored or user-supplied value into a StaffRole, or raise UnknownRole."""
    if not is_valid_role(value):
        raise UnknownRole(value)
    return StaffRole(value)


def _rank(role) -> RoleRank:
    return ROLE_HIERARCHY[coerce_role(role)]


def level(role) -> int:
    return _rank(role).level


def max_headcount(role) -> int:
    return _rank(role).max_count


def can_promote(actor_role, target_role) -> bool:
    actor_level = level(actor_role)
    return actor_level >= SENIOR_STAFF_LEVEL and level(target_role) < actor_level


def can_demote(actor_role, target_role) -> bool:
    # Same predicate as can_promote. Whether demotion should instead compare
    # against the destination role is undecided; keep the two in step.
    actor_level = level(actor_role)
    return actor_level >= SENIOR_STAFF_LEVEL and level(target_role) < actor_level


def next_promotion(role) -> Optional[StaffRole]:
    return _ROLE_BY_LEVEL.get(level(role) + 1)


def previous_demotion(role) -> Optional[StaffRole]:
    return _ROLE_BY_LEVEL.get(level(role) - 1)


def all_roles() -> list[StaffRole]:
    return list(StaffRole)


def all_roles_by_level_descending() -> list[StaffRole]:
    return sorted(StaffRole, key=lambda r: ROLE_HIERARCHY[r].level, reverse=True)


def check_capacity(role, active_count: int) -> None:
    maximum = max_headcount(role)
    if active_count >= maximum:
        raise CapacityExceeded(coerce_role(role), active_count, maximum)


def validate_promotion(current_role, new_role) -> None:
    if level(new_role) <= level(current_role):
        raise InvalidRoleChange("New role must be higher than the current role for a promotion.")


def validate_demotion(current_role, new_role) -> None:
    if level(new_role) >= level(current_role):
        raise InvalidRoleChange("New role must be lower than the current role for a demotion.")


def authorize_role_change(actor_role, target_role, *, demotion: bool = False, override: bool = False) -> None:
    """Raise PermissionDenied unless the actor may move someone currently at ``target_role``.

    ``override`` is for guild owners and configured admins, who are not bound
    by the ladder. ``actor_role`` is None when the actor is not active staff.
    """
    if override:
        return
    verb = "demote" if demotion else "promote"
    if actor_role is None:
        raise PermissionDenied(f"Only active senior staff can {verb} staff members.")
    allowed = can_demote(actor_role, target_role) if demotion else can_promote(actor_role, target_role)
    if not allowed:
        raise PermissionDenied(
            f"A {coerce_role(actor_role).value} cannot {verb} a {coerce_role(target_role).value}."
        )


def validate_roblox_username(name: str) -> str:
    name = (name or "").strip()
    if not ROBLOX_USERNAME_RE.fullmatch(name):
        raise ValidationFailed("Roblox usernames are 3-20 characters of letters, numbers and underscores.")
    if name.startswith("_") or name.endswith("_"):
        raise ValidationFailed("Roblox usernames cannot start or end with an underscore.")
    return name


def rank_role_changes(rank, member_role_names) -> tuple[list[StaffRole], list[StaffRole]]:
    """Which rank-named Discord roles to add and remove so a member holds exactly ``rank``.

    ``rank`` is None for members who are not active staff. Role names compare
    case-insensitively.
    """
    held = {name.lower() for name in member_role_names}
    wanted = coerce_role(rank) if rank is not None else None
    to_add = [wanted] if wanted is not None and wanted.value.lower() not in held else []
    to_remove = [r for r in all_roles_by_level_descending() if r is not wanted and r.value.lower() in held]
    return to_add, to_remove
