from dataclasses import dataclass, field
from typing import Optional

from firm_errors import PermissionDenied

PERMISSION_ACTIONS = ("admin", "hr", "case", "config", "retainer", "repair")

CHANNEL_SETTINGS = (
    "feedback_channel_id",
    "retainer_channel_id",
    "case_review_category_id",
    "case_archive_category_id",
    "modlog_channel_id",
    "application_channel_id",
    "client_role_id",
)


def _empty_permissions() -> dict[str, list[int]]:
    return {action: [] for action in PERMISSION_ACTIONS}


@dataclass
class GuildConfig:
    guild_id: int
    feedback_channel_id: Optional[int] = None
    retainer_channel_id: Optional[int] = None
    case_review_category_id: Optional[int] = None
    case_archive_category_id: Optional[int] = None
    modlog_channel_id: Optional[int] = None
    application_channel_id: Optional[int] = None
    client_role_id: Optional[int] = None
    permissions: dict[str, list[int]] = field(default_factory=_empty_permissions)
    admin_roles: list[int] = field(default_factory=list)
    admin_users: list[int] = field(default_factory=list)

    def roles_for(self, action: str) -> list[int]:
        if action not in PERMISSION_ACTIONS:
            raise ValueError(f"Unknown permission action: {action}")
        return self.permissions.get(action, [])


@dataclass(frozen=True)
class PermissionContext:
    guild_id: int
    user_id: int
    role_ids: frozenset[int] = frozenset()
    is_guild_owner: bool = False


def is_admin(config: GuildConfig, ctx: PermissionContext) -> bool:
    if ctx.is_guild_owner:
        return True
    if ctx.user_id in config.admin_users:
        return True
    return bool(ctx.role_ids & set(config.admin_roles))


def has_action_permission(config: GuildConfig, ctx: PermissionContext, action: str) -> bool:
    action_roles = config.roles_for(action)
    if is_admin(config, ctx):
        return True
    return bool(ctx.role_ids & set(action_roles))


def can_manage_config(config: GuildConfig, ctx: PermissionContext) -> bool:
    return has_action_permission(config, ctx, "config")


def permission_summary(config: GuildConfig, ctx: PermissionContext) -> dict[str, bool]:
    return {action: has_action_permission(config, ctx, action) for action in PERMISSION_ACTIONS}


def require(config: GuildConfig, ctx: PermissionContext, action: str) -> None:
    if not has_action_permission(config, ctx, action):
        raise PermissionDenied(f"You need the **{action}** permission to do that.")
