import datetime
import json
import time
from typing import Any

import asyncpg

from case_numbers import (
    CLOSABLE_STATUSES,
    CasePriority,
    CaseStatus,
    generate_case_number,
    generate_channel_name,
    validate_closure,
    validate_transition,
)
from feedback_rules import FeedbackSummary, summarize_ratings, validate_comment, validate_rating
from firm_errors import CapacityExceeded, InvalidRoleChange, InvalidTransition, NotFound, ValidationFailed
from permissions import CHANNEL_SETTINGS, PERMISSION_ACTIONS, GuildConfig
from staff_roles import (
    StaffRole,
    authorize_role_change,
    check_capacity,
    coerce_role,
    validate_demotion,
    validate_promotion,
    validate_roblox_username,
)

RETAINER_PENDING = "pending"
RETAINER_SIGNED = "signed"
RETAINER_CANCELLED = "cancelled"

STANDARD_RETAINER_TEMPLATE = (
    "This Retainer Agreement is entered into between the Client and the Firm. "
    "The Client engages the Firm to provide legal representation and agrees to cooperate "
    "fully with the assigned counsel, to provide truthful information, and to follow all "
    "server rules during the course of representation. Either party may end this agreement "
    "with notice to the other.\n\nClient Roblox username (signature): [CLIENT_SIGNATURE]"
)

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS guild_configs (
        guild_id BIGINT PRIMARY KEY,
        feedback_channel_id BIGINT,
        retainer_channel_id BIGINT,
        case_review_category_id BIGINT,
        case_archive_category_id BIGINT,
        modlog_channel_id BIGINT,
        application_channel_id BIGINT,
        client_role_id BIGINT,
        permissions JSONB NOT NULL DEFAULT '{}'::jsonb,
        admin_roles BIGINT[] NOT NULL DEFAULT '{}',
        admin_users BIGINT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ DEFAULT now(),
        updated_at TIMESTAMPTZ DEFAULT now()
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS staff (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        user_id BIGINT NOT NULL,
        roblox_username TEXT NOT NULL,
        role TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active', -- active|terminated
        hired_at TIMESTAMPTZ,
        hired_by BIGINT,
        promoted_at TIMESTAMPTZ,
        promoted_by BIGINT,
        demoted_at TIMESTAMPTZ,
        demoted_by BIGINT,
        terminated_at TIMESTAMPTZ,
        terminated_by BIGINT,
        UNIQUE (guild_id, user_id)
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS staff_role_history (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        user_id BIGINT NOT NULL,
        from_role TEXT,
        to_role TEXT,
        action_type TEXT NOT NULL, -- hire|promotion|demotion|fire
        actor_id BIGINT,
        reason TEXT,
        created_at TIMESTAMPTZ DEFAULT now()
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS case_counters (
        guild_id BIGINT NOT NULL,
        year INT NOT NULL,
        count INT NOT NULL DEFAULT 0,
        PRIMARY KEY (guild_id, year)
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS cases (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        case_number TEXT NOT NULL,
        client_id BIGINT NOT NULL,
        client_username TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'pending', -- pending|open|in-progress|closed
        priority TEXT NOT NULL DEFAULT 'medium',
        lead_attorney_id BIGINT,
        assigned_lawyer_ids BIGINT[] NOT NULL DEFAULT '{}',
        channel_id BIGINT,
        channel_name TEXT,
        result TEXT,
        result_notes TEXT,
        closed_at TIMESTAMPTZ,
        closed_by BIGINT,
        created_at TIMESTAMPTZ DEFAULT now(),
        updated_at TIMESTAMPTZ DEFAULT now(),
        UNIQUE (guild_id, case_number)
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS case_notes (
        id BIGSERIAL PRIMARY KEY,
        case_id BIGINT REFERENCES cases(id) ON DELETE CASCADE,
        author_id BIGINT NOT NULL,
        content TEXT NOT NULL,
        is_internal BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMPTZ DEFAULT now()
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS reminders (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        user_id BIGINT NOT NULL,
        username TEXT NOT NULL,
        message TEXT NOT NULL,
        scheduled_for TIMESTAMPTZ NOT NULL,
        channel_id BIGINT,
        case_id BIGINT REFERENCES cases(id) ON DELETE SET NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        delivered_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT now()
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS retainers (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        client_id BIGINT NOT NULL,
        lawyer_id BIGINT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending', -- pending|signed|cancelled
        agreement_template TEXT NOT NULL,
        client_roblox_username TEXT,
        digital_signature TEXT,
        signed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT now()
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS jobs (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        staff_role TEXT NOT NULL,
        is_open BOOLEAN NOT NULL DEFAULT TRUE,
        posted_by BIGINT,
        created_at TIMESTAMPTZ DEFAULT now(),
        closed_at TIMESTAMPTZ
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS job_applications (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        job_id BIGINT REFERENCES jobs(id) ON DELETE CASCADE,
        applicant_id BIGINT NOT NULL,
        roblox_username TEXT NOT NULL,
        answers JSONB NOT NULL DEFAULT '{}'::jsonb,
        status TEXT NOT NULL DEFAULT 'pending', -- pending|accepted|rejected
        reviewed_by BIGINT,
        reviewed_at TIMESTAMPTZ,
        review_reason TEXT,
        created_at TIMESTAMPTZ DEFAULT now()
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS feedback (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        submitter_id BIGINT NOT NULL,
        submitter_username TEXT NOT NULL,
        target_staff_id BIGINT,
        rating SMALLINT NOT NULL CHECK (rating BETWEEN 1 AND 5),
        comment TEXT NOT NULL,
        created_at TIMESTAMPTZ DEFAULT now()
    );
    ''',
    '''
    CREATE TABLE IF NOT EXISTS audit_log (
        id BIGSERIAL PRIMARY KEY,
        guild_id BIGINT NOT NULL,
        action TEXT NOT NULL,
        actor_id BIGINT,
        target_id BIGINT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ DEFAULT now()
    );
    ''',
    "CREATE INDEX IF NOT EXISTS reminders_due_idx ON reminders (scheduled_for) WHERE is_active;",
    "CREATE INDEX IF NOT EXISTS cases_channel_idx ON cases (guild_id, channel_id);",
]


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def _config_from_row(row) -> GuildConfig:
    raw_permissions = json.loads(row["permissions"] or "{}")
    permissions = {action: [int(r) for r in raw_permissions.get(action, [])] for action in PERMISSION_ACTIONS}
    return GuildConfig(
        guild_id=row["guild_id"],
        permissions=permissions,
        admin_roles=list(row["admin_roles"] or []),
        admin_users=list(row["admin_users"] or []),
        **{key: row[key] for key in CHANNEL_SETTINGS},
    )


class FirmStore:
    """All database access for the bot. Every method is scoped to one guild."""

    def __init__(self, pool: asyncpg.Pool, config_ttl: float = 60.0):
        self.pool = pool
        self.config_ttl = config_ttl
        self._config_cache: dict[int, tuple[float, GuildConfig]] = {}

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

    # --- audit ---
    async def record_audit(self, guild_id: int, action: str, actor_id: int | None,
                           target_id: int | None = None, details: dict[str, Any] | None = None, *, conn=None) -> None:
        query = "INSERT INTO audit_log (guild_id, action, actor_id, target_id, details) VALUES ($1, $2, $3, $4, $5::jsonb)"
        payload = json.dumps(details or {}, default=str)
        if conn is not None:
            await conn.execute(query, guild_id, action, actor_id, target_id, payload)
            return
        async with self.pool.acquire() as c:
            await c.execute(query, guild_id, action, actor_id, target_id, payload)

    async def recent_audit(self, guild_id: int, limit: int = 10):
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                "SELECT * FROM audit_log WHERE guild_id=$1 ORDER BY created_at DESC LIMIT $2", guild_id, limit
            )

    # --- guild config ---
    async def ensure_guild_config(self, guild_id: int) -> GuildConfig:
        cached = self._config_cache.get(guild_id)
        if cached and cached[0] > time.monotonic():
            return cached[1]
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM guild_configs WHERE guild_id=$1", guild_id)
            if not row:
                row = await conn.fetchrow(
                    "INSERT INTO guild_configs (guild_id, permissions) VALUES ($1, $2::jsonb) "
                    "ON CONFLICT (guild_id) DO UPDATE SET updated_at = guild_configs.updated_at "
                    "RETURNING *",
                    guild_id, json.dumps({action: [] for action in PERMISSION_ACTIONS}),
                )
                print(f"[DB] Created default configuration for guild {guild_id}")
        config = _config_from_row(row)
        self._config_cache[guild_id] = (time.monotonic() + self.config_ttl, config)
        return config

    def _forget_config(self, guild_id: int) -> None:
        self._config_cache.pop(guild_id, None)

    async def update_guild_setting(self, guild_id: int, setting: str, value: int | None) -> GuildConfig:
        if setting not in CHANNEL_SETTINGS:
            raise ValidationFailed(f"Unknown setting: {setting}")
        await self.ensure_guild_config(guild_id)
        async with self.pool.acquire() as conn:
            # setting is whitelisted above
            await conn.execute(
                f"UPDATE guild_configs SET {setting} = $2, updated_at = now() WHERE guild_id = $1",
                guild_id, value,
            )
        self._forget_config(guild_id)
        return await self.ensure_guild_config(guild_id)

    async def set_action_roles(self, guild_id: int, action: str, role_ids: list[int]) -> GuildConfig:
        if action not in PERMISSION_ACTIONS:
            raise ValidationFailed(f"Unknown permission action: {action}")
        await self.ensure_guild_config(guild_id)
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE guild_configs SET permissions = jsonb_set(permissions, $2::text[], $3::jsonb, true), "
                "updated_at = now() WHERE guild_id = $1",
                guild_id, [action], json.dumps(sorted(set(role_ids))),
            )
        self._forget_config(guild_id)
        return await self.ensure_guild_config(guild_id)

    async def _edit_admin_list(self, guild_id: int, column: str, value: int, add: bool) -> GuildConfig:
        await self.ensure_guild_config(guild_id)
        if add:
            expr = f"CASE WHEN $2 = ANY({column}) THEN {column} ELSE array_append({column}, $2) END"
        else:
            expr = f"array_remove({column}, $2)"
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"UPDATE guild_configs SET {column} = {expr}, updated_at = now() WHERE guild_id = $1",
                guild_id, value,
            )
        self._forget_config(guild_id)
        return await self.ensure_guild_config(guild_id)

    async def add_admin_user(self, guild_id: int, user_id: int) -> GuildConfig:
        return await self._edit_admin_list(guild_id, "admin_users", user_id, add=True)

    async def remove_admin_user(self, guild_id: int, user_id: int) -> GuildConfig:
        return await self._edit_admin_list(guild_id, "admin_users", user_id, add=False)

    async def add_admin_role(self, guild_id: int, role_id: int) -> GuildConfig:
        return await self._edit_admin_list(guild_id, "admin_roles", role_id, add=True)

    async def remove_admin_role(self, guild_id: int, role_id: int) -> GuildConfig:
        return await self._edit_admin_list(guild_id, "admin_roles", role_id, add=False)

    # --- staff ---
    async def get_staff(self, guild_id: int, user_id: int, *, active_only: bool = True):
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM staff WHERE guild_id=$1 AND user_id=$2", guild_id, user_id)
        if row and active_only and row["status"] != "active":
            return None
        return row

    async def list_staff(self, guild_id: int, role: StaffRole | None = None):
        async with self.pool.acquire() as conn:
            if role:
                return await conn.fetch(
                    "SELECT * FROM staff WHERE guild_id=$1 AND status='active' AND role=$2 ORDER BY hired_at",
                    guild_id, coerce_role(role).value,
                )
            return await conn.fetch(
                "SELECT * FROM staff WHERE guild_id=$1 AND status='active' ORDER BY hired_at", guild_id
            )

    async def role_counts(self, guild_id: int) -> dict[StaffRole, int]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT role, COUNT(*) AS cnt FROM staff WHERE guild_id=$1 AND status='active' GROUP BY role",
                guild_id,
            )
        counts = {role: 0 for role in StaffRole}
        for r in rows:
            counts[coerce_role(r["role"])] = r["cnt"]
        return counts

    async def _lock_staff_ladder(self, conn, guild_id: int) -> None:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", guild_id)

    async def _enforce_capacity(self, conn, guild_id: int, role: StaffRole, actor_id: int,
                                target_id: int, allow_over_capacity: bool, reason: str | None) -> None:
        active = await conn.fetchval(
            "SELECT COUNT(*) FROM staff WHERE guild_id=$1 AND status='active' AND role=$2", guild_id, role.value
        )
        try:
            check_capacity(role, active)
        except CapacityExceeded as exc:
            if not allow_over_capacity:
                raise
            await self.record_audit(
                guild_id, "role_limit_bypassed", actor_id, target_id,
                {"role": role.value, "current": exc.current, "max": exc.maximum, "reason": reason}, conn=conn,
            )
            print(f"[WARN] Role limit bypassed in guild {guild_id}: {role.value} {exc.current}/{exc.maximum}")

    async def hire_staff(self, guild_id: int, user_id: int, roblox_username: str, role, hired_by: int,
                         reason: str | None = None, *, allow_over_capacity: bool = False):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await self._hire_in_transaction(
                    conn, guild_id, user_id, roblox_username, role, hired_by, reason, allow_over_capacity
                )
        print(f"[Staff] Hired {user_id} as {row['role']} in guild {guild_id}")
        return row

    async def _hire_in_transaction(self, conn, guild_id: int, user_id: int, roblox_username: str, role,
                                   hired_by: int, reason: str | None, allow_over_capacity: bool):
        role = coerce_role(role)
        roblox_username = validate_roblox_username(roblox_username)
        now = utcnow()
        await self._lock_staff_ladder(conn, guild_id)
        existing = await conn.fetchrow(
            "SELECT status FROM staff WHERE guild_id=$1 AND user_id=$2", guild_id, user_id
        )
        if existing and existing["status"] == "active":
            raise InvalidRoleChange("That user is already an active staff member.")
        taken = await conn.fetchval(
            "SELECT user_id FROM staff WHERE guild_id=$1 AND status='active' AND lower(roblox_username)=lower($2)",
            guild_id, roblox_username,
        )
        if taken:
            raise ValidationFailed("That Roblox username is already linked to another staff member.")
        await self._enforce_capacity(conn, guild_id, role, hired_by, user_id, allow_over_capacity, reason)
        row = await conn.fetchrow(
            """
            INSERT INTO staff (guild_id, user_id, roblox_username, role, status, hired_at, hired_by)
            VALUES ($1, $2, $3, $4, 'active', $5, $6)
            ON CONFLICT (guild_id, user_id) DO UPDATE SET
                roblox_username = EXCLUDED.roblox_username,
                role = EXCLUDED.role,
                status = 'active',
                hired_at = EXCLUDED.hired_at,
                hired_by = EXCLUDED.hired_by,
                terminated_at = NULL,
                terminated_by = NULL
            RETURNING *
            """,
            guild_id, user_id, roblox_username, role.value, now, hired_by,
        )
        await conn.execute(
            "INSERT INTO staff_role_history (guild_id, user_id, from_role, to_role, action_type, actor_id, reason) "
            "VALUES ($1, $2, NULL, $3, 'hire', $4, $5)",
            guild_id, user_id, role.value, hired_by, reason,
        )
        await self.record_audit(
            guild_id, "staff_hired", hired_by, user_id,
            {"role": role.value, "roblox_username": roblox_username, "reason": reason}, conn=conn,
        )
        return row

    async def change_staff_role(self, guild_id: int, user_id: int, new_role, actor_id: int,
                                reason: str | None = None, *, demotion: bool = False, override: bool = False,
                                allow_over_capacity: bool = False):
        """Promote (or, with ``demotion=True``, demote) an active staff member."""
        new_role = coerce_role(new_role)
        if user_id == actor_id:
            raise InvalidRoleChange("Staff members cannot change their own rank.")
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_staff_ladder(conn, guild_id)
                target = await conn.fetchrow(
                    "SELECT * FROM staff WHERE guild_id=$1 AND user_id=$2 AND status='active'", guild_id, user_id
                )
                if not target:
                    raise NotFound("Staff member not found or inactive.")
                current_role = coerce_role(target["role"])
                actor_role = await conn.fetchval(
                    "SELECT role FROM staff WHERE guild_id=$1 AND user_id=$2 AND status='active'", guild_id, actor_id
                )
                authorize_role_change(actor_role, current_role, demotion=demotion, override=override)
                if demotion:
                    validate_demotion(current_role, new_role)
                else:
                    validate_promotion(current_role, new_role)
                    await self._enforce_capacity(conn, guild_id, new_role, actor_id, user_id, allow_over_capacity, reason)
                stamp = "demoted" if demotion else "promoted"
                # stamp is one of two literals
                row = await conn.fetchrow(
                    f"UPDATE staff SET role=$3, {stamp}_at=$4, {stamp}_by=$5 "
                    "WHERE guild_id=$1 AND user_id=$2 RETURNING *",
                    guild_id, user_id, new_role.value, utcnow(), actor_id,
                )
                action = "demotion" if demotion else "promotion"
                await conn.execute(
                    "INSERT INTO staff_role_history (guild_id, user_id, from_role, to_role, action_type, actor_id, reason) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7)",
                    guild_id, user_id, current_role.value, new_role.value, action, actor_id, reason,
                )
                await self.record_audit(
                    guild_id, f"staff_{stamp}", actor_id, user_id,
                    {"before": current_role.value, "after": new_role.value, "reason": reason}, conn=conn,
                )
        print(f"[Staff] {stamp.title()} {user_id} from {current_role.value} to {new_role.value} in guild {guild_id}")
        return row

    async def promote_staff(self, guild_id: int, user_id: int, new_role, actor_id: int, reason: str | None = None, **kw):
        return await self.change_staff_role(guild_id, user_id, new_role, actor_id, reason, demotion=False, **kw)

    async def demote_staff(self, guild_id: int, user_id: int, new_role, actor_id: int, reason: str | None = None, **kw):
        return await self.change_staff_role(guild_id, user_id, new_role, actor_id, reason, demotion=True, **kw)

    async def fire_staff(self, guild_id: int, user_id: int, terminated_by: int, reason: str | None = None):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "UPDATE staff SET status='terminated', terminated_at=$3, terminated_by=$4 "
                    "WHERE guild_id=$1 AND user_id=$2 AND status='active' RETURNING *",
                    guild_id, user_id, utcnow(), terminated_by,
                )
                if not row:
                    raise NotFound("Staff member not found or inactive.")
                await conn.execute(
                    "INSERT INTO staff_role_history (guild_id, user_id, from_role, to_role, action_type, actor_id, reason) "
                    "VALUES ($1, $2, $3, NULL, 'fire', $4, $5)",
                    guild_id, user_id, row["role"], terminated_by, reason,
                )
                await self.record_audit(
                    guild_id, "staff_fired", terminated_by, user_id,
                    {"role": row["role"], "roblox_username": row["roblox_username"], "reason": reason}, conn=conn,
                )
        print(f"[Staff] Terminated {user_id} ({row['role']}) in guild {guild_id}")
        return row

    async def staff_history(self, guild_id: int, user_id: int, limit: int = 10):
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                "SELECT * FROM staff_role_history WHERE guild_id=$1 AND user_id=$2 ORDER BY created_at DESC LIMIT $3",
                guild_id, user_id, limit,
            )

    # --- cases ---
    async def next_case_count(self, conn, guild_id: int, year: int) -> int:
        return await conn.fetchval(
            "INSERT INTO case_counters (guild_id, year, count) VALUES ($1, $2, 1) "
            "ON CONFLICT (guild_id, year) DO UPDATE SET count = case_counters.count + 1 "
            "RETURNING count",
            guild_id, year,
        )

    async def create_case(self, guild_id: int, client_id: int, client_username: str, title: str,
                          description: str, priority=CasePriority.MEDIUM):
        priority = CasePriority(priority)
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                year = utcnow().year
                count = await self.next_case_count(conn, guild_id, year)
                case_number = generate_case_number(year, count, client_username)
                row = await conn.fetchrow(
                    """
                    INSERT INTO cases (guild_id, case_number, client_id, client_username, title, description,
                                       status, priority, channel_name)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    RETURNING *
                    """,
                    guild_id, case_number, client_id, client_username, title, description,
                    CaseStatus.PENDING.value, priority.value, generate_channel_name(case_number),
                )
                await self.record_audit(guild_id, "case_created", client_id, None,
                                        {"case_number": case_number, "title": title}, conn=conn)
        print(f"[Cases] Created {case_number} in guild {guild_id}")
        return row

    async def get_case_by_number(self, guild_id: int, case_number: str):
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(
                "SELECT * FROM cases WHERE guild_id=$1 AND case_number=$2", guild_id, case_number
            )

    async def get_case_by_channel(self, guild_id: int, channel_id: int):
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(
                "SELECT * FROM cases WHERE guild_id=$1 AND channel_id=$2 ORDER BY created_at DESC LIMIT 1",
                guild_id, channel_id,
            )

    async def list_cases(self, guild_id: int, status: CaseStatus | None = None, lawyer_id: int | None = None,
                         limit: int = 25):
        clauses = ["guild_id=$1"]
        args: list[Any] = [guild_id]
        if status:
            args.append(CaseStatus(status).value)
            clauses.append(f"status=${len(args)}")
        if lawyer_id:
            args.append(lawyer_id)
            clauses.append(f"${len(args)} = ANY(assigned_lawyer_ids)")
        args.append(limit)
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                f"SELECT * FROM cases WHERE {' AND '.join(clauses)} ORDER BY created_at DESC LIMIT ${len(args)}",
                *args,
            )

    async def _require_case(self, conn, guild_id: int, case_id: int):
        row = await conn.fetchrow("SELECT * FROM cases WHERE guild_id=$1 AND id=$2", guild_id, case_id)
        if not row:
            raise NotFound("Case not found.")
        return row

    async def _move_case(self, conn, guild_id: int, case_id: int, new_status: CaseStatus, extra_sql: str = "",
                         extra_args: tuple = ()):
        current = await self._require_case(conn, guild_id, case_id)
        validate_transition(current["status"], new_status)
        # compare-and-set on the status we validated against
        row = await conn.fetchrow(
            f"UPDATE cases SET status=$4, updated_at=now(){extra_sql} "
            "WHERE guild_id=$1 AND id=$2 AND status=$3 RETURNING *",
            guild_id, case_id, current["status"], new_status.value, *extra_args,
        )
        if not row:
            latest = await self._require_case(conn, guild_id, case_id)
            raise InvalidTransition(latest["status"], new_status)
        return current, row

    async def accept_case(self, guild_id: int, case_id: int, lawyer_id: int):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                _, row = await self._move_case(
                    conn, guild_id, case_id, CaseStatus.OPEN,
                    ", lead_attorney_id=$5, assigned_lawyer_ids=ARRAY[$5]::bigint[]", (lawyer_id,),
                )
                await self.record_audit(guild_id, "case_accepted", lawyer_id, row["client_id"],
                                        {"case_number": row["case_number"]}, conn=conn)
        return row

    async def update_case_status(self, guild_id: int, case_id: int, status, actor_id: int):
        status = CaseStatus(status)
        if status is CaseStatus.CLOSED:
            raise ValidationFailed("Use `/case close` to close a case with a result.")
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                before, row = await self._move_case(conn, guild_id, case_id, status)
                await self.record_audit(guild_id, "case_status_changed", actor_id, None,
                                        {"case_number": row["case_number"], "before": before["status"],
                                         "after": status.value}, conn=conn)
        return row

    async def set_case_channel(self, guild_id: int, case_id: int, channel_id: int):
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE cases SET channel_id=$3, updated_at=now() WHERE guild_id=$1 AND id=$2 RETURNING *",
                guild_id, case_id, channel_id,
            )
        if not row:
            raise NotFound("Case not found.")
        return row

    async def assign_lawyer(self, guild_id: int, case_id: int, lawyer_id: int, assigned_by: int):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await self._require_case(conn, guild_id, case_id)
                if current["status"] == CaseStatus.CLOSED.value:
                    raise ValidationFailed("Lawyers cannot be assigned to a closed case.")
                row = await conn.fetchrow(
                    """
                    UPDATE cases SET
                        assigned_lawyer_ids = CASE WHEN $3 = ANY(assigned_lawyer_ids) THEN assigned_lawyer_ids
                                                   ELSE array_append(assigned_lawyer_ids, $3) END,
                        lead_attorney_id = COALESCE(lead_attorney_id, $3),
                        updated_at = now()
                    WHERE guild_id=$1 AND id=$2 RETURNING *
                    """,
                    guild_id, case_id, lawyer_id,
                )
                await self.record_audit(guild_id, "case_lawyer_assigned", assigned_by, lawyer_id,
                                        {"case_number": row["case_number"]}, conn=conn)
        return row

    async def unassign_lawyer(self, guild_id: int, case_id: int, lawyer_id: int, removed_by: int):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await self._require_case(conn, guild_id, case_id)
                if lawyer_id not in (current["assigned_lawyer_ids"] or []):
                    raise NotFound("That lawyer is not assigned to this case.")
                row = await conn.fetchrow(
                    """
                    UPDATE cases SET
                        assigned_lawyer_ids = array_remove(assigned_lawyer_ids, $3),
                        lead_attorney_id = CASE WHEN lead_attorney_id = $3 THEN NULL ELSE lead_attorney_id END,
                        updated_at = now()
                    WHERE guild_id=$1 AND id=$2 RETURNING *
                    """,
                    guild_id, case_id, lawyer_id,
                )
                await self.record_audit(guild_id, "case_lawyer_unassigned", removed_by, lawyer_id,
                                        {"case_number": row["case_number"]}, conn=conn)
        return row

    async def set_lead_attorney(self, guild_id: int, case_id: int, lawyer_id: int, changed_by: int):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await self._require_case(conn, guild_id, case_id)
                row = await conn.fetchrow(
                    """
                    UPDATE cases SET
                        lead_attorney_id = $3,
                        assigned_lawyer_ids = CASE WHEN $3 = ANY(assigned_lawyer_ids) THEN assigned_lawyer_ids
                                                   ELSE array_append(assigned_lawyer_ids, $3) END,
                        updated_at = now()
                    WHERE guild_id=$1 AND id=$2 RETURNING *
                    """,
                    guild_id, case_id, lawyer_id,
                )
                await self.record_audit(guild_id, "case_lead_changed", changed_by, lawyer_id,
                                        {"case_number": row["case_number"],
                                         "previous": current["lead_attorney_id"]}, conn=conn)
        return row

    async def close_case(self, guild_id: int, case_id: int, result, closed_by: int, notes: str | None = None):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await self._require_case(conn, guild_id, case_id)
                result = validate_closure(current["status"], result)
                row = await conn.fetchrow(
                    "UPDATE cases SET status=$3, result=$4, result_notes=$5, closed_at=now(), closed_by=$6, "
                    "updated_at=now() WHERE guild_id=$1 AND id=$2 AND status = ANY($7::text[]) RETURNING *",
                    guild_id, case_id, CaseStatus.CLOSED.value, result.value, notes, closed_by,
                    [s.value for s in CLOSABLE_STATUSES],
                )
                if not row:
                    latest = await self._require_case(conn, guild_id, case_id)
                    raise InvalidTransition(latest["status"], CaseStatus.CLOSED)
                await self.record_audit(guild_id, "case_closed", closed_by, row["client_id"],
                                        {"case_number": row["case_number"], "result": result.value}, conn=conn)
        print(f"[Cases] Closed {row['case_number']} ({result.value}) in guild {guild_id}")
        return row

    async def add_case_note(self, guild_id: int, case_id: int, author_id: int, content: str, is_internal: bool = True):
        async with self.pool.acquire() as conn:
            await self._require_case(conn, guild_id, case_id)
            return await conn.fetchrow(
                "INSERT INTO case_notes (case_id, author_id, content, is_internal) VALUES ($1, $2, $3, $4) RETURNING *",
                case_id, author_id, content, is_internal,
            )

    async def case_notes(self, case_id: int, include_internal: bool = True):
        async with self.pool.acquire() as conn:
            if include_internal:
                return await conn.fetch("SELECT * FROM case_notes WHERE case_id=$1 ORDER BY created_at", case_id)
            return await conn.fetch(
                "SELECT * FROM case_notes WHERE case_id=$1 AND NOT is_internal ORDER BY created_at", case_id
            )

    # --- reminders ---
    async def create_reminder(self, guild_id: int, user_id: int, username: str, message: str,
                              scheduled_for: datetime.datetime, channel_id: int | None = None):
        if not await self.get_staff(guild_id, user_id):
            raise ValidationFailed("Only staff members can set reminders.")
        case_id = None
        if channel_id:
            case_row = await self.get_case_by_channel(guild_id, channel_id)
            case_id = case_row["id"] if case_row else None
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(
                "INSERT INTO reminders (guild_id, user_id, username, message, scheduled_for, channel_id, case_id) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7) RETURNING *",
                guild_id, user_id, username, message, scheduled_for, channel_id, case_id,
            )

    async def list_user_reminders(self, guild_id: int, user_id: int, active_only: bool = True):
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                "SELECT * FROM reminders WHERE guild_id=$1 AND user_id=$2 AND (is_active OR NOT $3) "
                "ORDER BY scheduled_for",
                guild_id, user_id, active_only,
            )

    async def cancel_reminder(self, guild_id: int, reminder_id: int, user_id: int):
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM reminders WHERE guild_id=$1 AND id=$2", guild_id, reminder_id)
            if not row:
                raise NotFound("Reminder not found.")
            if row["user_id"] != user_id:
                raise ValidationFailed("You can only cancel your own reminders.")
            if not row["is_active"]:
                raise ValidationFailed("That reminder is already inactive.")
            return await conn.fetchrow(
                "UPDATE reminders SET is_active=FALSE WHERE id=$1 RETURNING *", reminder_id
            )

    async def due_reminders(self, now: datetime.datetime | None = None, limit: int = 50):
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                "SELECT * FROM reminders WHERE is_active AND scheduled_for <= $1 ORDER BY scheduled_for LIMIT $2",
                now or utcnow(), limit,
            )

    async def mark_reminder_delivered(self, reminder_id: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE reminders SET is_active=FALSE, delivered_at=now() WHERE id=$1", reminder_id
            )

    # --- retainers ---
    async def create_retainer(self, guild_id: int, client_id: int, lawyer_id: int):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchval(
                    "SELECT status FROM retainers WHERE guild_id=$1 AND client_id=$2 AND status = ANY($3::text[]) "
                    "LIMIT 1",
                    guild_id, client_id, [RETAINER_PENDING, RETAINER_SIGNED],
                )
                if existing == RETAINER_PENDING:
                    raise ValidationFailed("Client already has a pending retainer agreement.")
                if existing == RETAINER_SIGNED:
                    raise ValidationFailed("Client already has an active retainer agreement.")
                row = await conn.fetchrow(
                    "INSERT INTO retainers (guild_id, client_id, lawyer_id, status, agreement_template) "
                    "VALUES ($1, $2, $3, $4, $5) RETURNING *",
                    guild_id, client_id, lawyer_id, RETAINER_PENDING, STANDARD_RETAINER_TEMPLATE,
                )
                await self.record_audit(guild_id, "retainer_created", lawyer_id, client_id, {"retainer_id": row["id"]},
                                        conn=conn)
        return row

    async def sign_retainer(self, guild_id: int, retainer_id: int, client_id: int, roblox_username: str):
        roblox_username = validate_roblox_username(roblox_username)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE retainers SET status=$4, client_roblox_username=$5, digital_signature=$5, signed_at=now() "
                "WHERE guild_id=$1 AND id=$2 AND client_id=$3 AND status=$6 RETURNING *",
                guild_id, retainer_id, client_id, RETAINER_SIGNED, roblox_username, RETAINER_PENDING,
            )
            if not row:
                raise NotFound("No pending retainer agreement with that ID is waiting for your signature.")
            await self.record_audit(guild_id, "retainer_signed", client_id, row["lawyer_id"],
                                    {"retainer_id": retainer_id}, conn=conn)
        return row

    async def cancel_retainer(self, guild_id: int, retainer_id: int, cancelled_by: int):
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE retainers SET status=$3 WHERE guild_id=$1 AND id=$2 AND status=$4 RETURNING *",
                guild_id, retainer_id, RETAINER_CANCELLED, RETAINER_PENDING,
            )
            if not row:
                raise NotFound("Only pending retainer agreements can be cancelled.")
            await self.record_audit(guild_id, "retainer_cancelled", cancelled_by, row["client_id"],
                                    {"retainer_id": retainer_id}, conn=conn)
        return row

    async def list_retainers(self, guild_id: int, status: str = RETAINER_SIGNED, client_id: int | None = None):
        async with self.pool.acquire() as conn:
            if client_id:
                return await conn.fetch(
                    "SELECT * FROM retainers WHERE guild_id=$1 AND client_id=$2 ORDER BY created_at DESC",
                    guild_id, client_id,
                )
            return await conn.fetch(
                "SELECT * FROM retainers WHERE guild_id=$1 AND status=$2 ORDER BY created_at DESC", guild_id, status
            )

    # --- feedback ---
    async def submit_feedback(self, guild_id: int, submitter_id: int, submitter_username: str, rating: int,
                              comment: str, target_staff_id: int | None = None):
        rating = validate_rating(rating)
        comment = validate_comment(comment)
        if await self.get_staff(guild_id, submitter_id):
            raise ValidationFailed("Staff members cannot submit feedback. Only clients can provide feedback.")
        if target_staff_id is not None and not await self.get_staff(guild_id, target_staff_id):
            raise NotFound("Target staff member not found.")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "INSERT INTO feedback (guild_id, submitter_id, submitter_username, target_staff_id, rating, comment) "
                "VALUES ($1, $2, $3, $4, $5, $6) RETURNING *",
                guild_id, submitter_id, submitter_username, target_staff_id, rating, comment,
            )
            await self.record_audit(guild_id, "feedback_submitted", submitter_id, target_staff_id,
                                    {"feedback_id": row["id"], "rating": rating}, conn=conn)
        return row

    async def feedback_summary(self, guild_id: int, target_staff_id: int | None = None) -> FeedbackSummary:
        """Rating totals for one staff member, or the whole firm when ``target_staff_id`` is None."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT rating, COUNT(*) AS cnt FROM feedback "
                "WHERE guild_id=$1 AND ($2::bigint IS NULL OR target_staff_id=$2) GROUP BY rating",
                guild_id, target_staff_id,
            )
        return summarize_ratings({r["rating"]: r["cnt"] for r in rows})

    async def recent_feedback(self, guild_id: int, target_staff_id: int | None = None, limit: int = 5):
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                "SELECT * FROM feedback WHERE guild_id=$1 AND ($2::bigint IS NULL OR target_staff_id=$2) "
                "ORDER BY created_at DESC LIMIT $3",
                guild_id, target_staff_id, limit,
            )

    # --- jobs & applications ---
    async def add_job(self, guild_id: int, title: str, description: str, staff_role, posted_by: int):
        staff_role = coerce_role(staff_role)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "INSERT INTO jobs (guild_id, title, description, staff_role, posted_by) "
                "VALUES ($1, $2, $3, $4, $5) RETURNING *",
                guild_id, title, description, staff_role.value, posted_by,
            )
            await self.record_audit(guild_id, "job_created", posted_by, None,
                                    {"job_id": row["id"], "title": title, "role": staff_role.value}, conn=conn)
        return row

    async def close_job(self, guild_id: int, job_id: int, closed_by: int):
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE jobs SET is_open=FALSE, closed_at=now() WHERE guild_id=$1 AND id=$2 AND is_open RETURNING *",
                guild_id, job_id,
            )
            if not row:
                raise NotFound("Open job not found.")
            await self.record_audit(guild_id, "job_closed", closed_by, None, {"job_id": job_id}, conn=conn)
        return row

    async def list_jobs(self, guild_id: int, open_only: bool = True):
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                "SELECT * FROM jobs WHERE guild_id=$1 AND (is_open OR NOT $2) ORDER BY created_at DESC",
                guild_id, open_only,
            )

    async def submit_application(self, guild_id: int, job_id: int, applicant_id: int, roblox_username: str,
                                 answers: dict[str, str]):
        roblox_username = validate_roblox_username(roblox_username)
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                job = await conn.fetchrow("SELECT * FROM jobs WHERE guild_id=$1 AND id=$2", guild_id, job_id)
                if not job:
                    raise NotFound("Job not found.")
                if not job["is_open"]:
                    raise ValidationFailed("That job is not open for applications.")
                pending = await conn.fetchval(
                    "SELECT id FROM job_applications WHERE job_id=$1 AND applicant_id=$2 AND status='pending'",
                    job_id, applicant_id,
                )
                if pending:
                    raise ValidationFailed("You already have a pending application for this job.")
                return await conn.fetchrow(
                    "INSERT INTO job_applications (guild_id, job_id, applicant_id, roblox_username, answers) "
                    "VALUES ($1, $2, $3, $4, $5::jsonb) RETURNING *",
                    guild_id, job_id, applicant_id, roblox_username, json.dumps(answers),
                )

    async def get_application(self, guild_id: int, application_id: int):
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(
                "SELECT a.*, j.title AS job_title, j.staff_role FROM job_applications a "
                "JOIN jobs j ON j.id = a.job_id WHERE a.guild_id=$1 AND a.id=$2",
                guild_id, application_id,
            )

    async def review_application(self, guild_id: int, application_id: int, reviewer_id: int, approved: bool,
                                 reason: str | None = None, *, allow_over_capacity: bool = False):
        """Accept or reject a pending application.

        Accepting hires the applicant at the job's rank in the same transaction,
        so a failed hire leaves the application pending and a lost race leaves
        nobody hired. Returns ``(application_row, staff_row)``; ``staff_row`` is
        None for rejections.
        """
        status = "accepted" if approved else "rejected"
        staff_row = None
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                application = await conn.fetchrow(
                    "SELECT a.*, j.title AS job_title, j.staff_role FROM job_applications a "
                    "JOIN jobs j ON j.id = a.job_id WHERE a.guild_id=$1 AND a.id=$2 FOR UPDATE OF a",
                    guild_id, application_id,
                )
                if not application or application["status"] != "pending":
                    raise NotFound("Pending application not found.")
                if approved:
                    staff_row = await self._hire_in_transaction(
                        conn, guild_id, application["applicant_id"], application["roblox_username"],
                        application["staff_role"], reviewer_id, reason or f"Application #{application_id}",
                        allow_over_capacity,
                    )
                row = await conn.fetchrow(
                    "UPDATE job_applications SET status=$3, reviewed_by=$4, reviewed_at=now(), review_reason=$5 "
                    "WHERE guild_id=$1 AND id=$2 RETURNING *",
                    guild_id, application_id, status, reviewer_id, reason,
                )
                await self.record_audit(guild_id, f"application_{status}", reviewer_id, row["applicant_id"],
                                        {"application_id": application_id, "reason": reason}, conn=conn)
        if staff_row:
            print(f"[Staff] Hired {staff_row['user_id']} as {staff_row['role']} from application #{application_id}")
        return row, staff_row

    async def pending_applications(self, guild_id: int, limit: int = 25):
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                "SELECT a.*, j.title AS job_title, j.staff_role FROM job_applications a "
                "JOIN jobs j ON j.id = a.job_id WHERE a.guild_id=$1 AND a.status='pending' "
                "ORDER BY a.created_at LIMIT $2",
                guild_id, limit,
            )
