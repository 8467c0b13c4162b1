# main.py  (Law firm bot)

import discord
from discord.ext import commands, tasks
import os
from dotenv import load_dotenv
import datetime
import asyncpg
from aiohttp import web
from discord import app_commands
import asyncio
from typing import Optional
from discord.utils import escape_markdown

from case_numbers import CasePriority, CaseResult, CaseStatus, parse_case_number
from feedback_rules import star_display
from firm_errors import FirmError, NotFound, PermissionDenied, ValidationFailed
from firm_store import RETAINER_PENDING, RETAINER_SIGNED, FirmStore
from permissions import CHANNEL_SETTINGS, PERMISSION_ACTIONS, PermissionContext, can_manage_config, is_admin, require
from reminder_times import format_reminder_time, validate_reminder_message, validate_reminder_time
from staff_roles import (
    all_roles_by_level_descending,
    coerce_role,
    is_valid_role,
    level,
    max_headcount,
    next_promotion,
    previous_demotion,
    rank_role_changes,
)

# === Configuration ===
load_dotenv()

def getenv_int(name: str, default: int | None = None) -> int | None:
    val = os.getenv(name)
    try:
        return int(val) if val not in (None, "") else default
    except ValueError:
        return default

BOT_TOKEN    = os.getenv("BOT_TOKEN")
DATABASE_URL = os.getenv("DATABASE_URL")

COMMAND_LOG_CHANNEL_ID   = getenv_int("COMMAND_LOG_CHANNEL_ID")
WEB_PORT                 = getenv_int("WEB_PORT", 8080)
REMINDER_POLL_SECONDS    = getenv_int("REMINDER_POLL_SECONDS", 30)
GUILD_CONFIG_TTL_SECONDS = getenv_int("GUILD_CONFIG_TTL_SECONDS", 60)

FIRM_NAME = os.getenv("FIRM_NAME", "Anarchy & Associates")

# === Bot Setup ===
intents = discord.Intents.default()
intents.guilds = True
intents.members = True

ROLE_CHOICES = [app_commands.Choice(name=r.value, value=r.value) for r in all_roles_by_level_descending()]
PRIORITY_CHOICES = [app_commands.Choice(name=p.value.title(), value=p.value) for p in CasePriority]
RESULT_CHOICES = [app_commands.Choice(name=r.value.title(), value=r.value) for r in CaseResult]
STATUS_CHOICES = [app_commands.Choice(name=s.value, value=s.value) for s in CaseStatus]
ACTION_CHOICES = [app_commands.Choice(name=a, value=a) for a in PERMISSION_ACTIONS]
SETTING_CHOICES = [app_commands.Choice(name=s.removesuffix("_id"), value=s) for s in CHANNEL_SETTINGS]

STATUS_COLORS = {
    CaseStatus.PENDING.value: discord.Color.orange(),
    CaseStatus.OPEN.value: discord.Color.blue(),
    CaseStatus.IN_PROGRESS.value: discord.Color.blurple(),
    CaseStatus.CLOSED.value: discord.Color.dark_gray(),
}

def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)

def human_remaining(delta: datetime.timedelta) -> str:
    if delta.total_seconds() <= 0:
        return "now"
    days = delta.days
    hours = (delta.seconds // 3600)
    mins = (delta.seconds % 3600) // 60
    parts = []
    if days: parts.append(f"{days}d")
    if hours: parts.append(f"{hours}h")
    if mins and not days: parts.append(f"{mins}m")
    return " ".join(parts) if parts else "under 1m"

def fmt_time(dt: datetime.datetime | None) -> str:
    return dt.strftime('%Y-%m-%d %H:%M UTC') if dt else "—"

# === Helpers ===
def smart_chunk(text, size=4000):
    chunks = []
    while len(text) > size:
        split_index = text.rfind('\n', 0, size)
        if split_index == -1:
            split_index = text.rfind(' ', 0, size)
        if split_index == -1:
            split_index = size
        chunks.append(text[:split_index])
        text = text[split_index:].lstrip()
    chunks.append(text)
    return chunks

async def send_long_embed(target, title, description, color, footer_text, author_name=None, author_icon_url=None):
    chunks = smart_chunk(description)
    embed = discord.Embed(title=title, description=chunks[0], color=color, timestamp=utcnow())
    if footer_text: embed.set_footer(text=footer_text)
    if author_name: embed.set_author(name=author_name, icon_url=author_icon_url)
    await target.send(embed=embed)
    for i, chunk in enumerate(chunks[1:], start=2):
        follow_up = discord.Embed(description=chunk, color=color)
        follow_up.set_footer(text=f"Part {i}/{len(chunks)}")
        await target.send(embed=follow_up)

async def log_action(title: str, description: str, guild: discord.Guild | None = None):
    channel_id = COMMAND_LOG_CHANNEL_ID
    if guild and bot.store:
        config = await bot.store.ensure_guild_config(guild.id)
        channel_id = config.modlog_channel_id or channel_id
    if not channel_id:
        return
    ch = bot.get_channel(channel_id)
    if not ch:
        return
    embed = discord.Embed(title=title, description=description, color=discord.Color.dark_gray(), timestamp=utcnow())
    try:
        await ch.send(embed=embed)
    except discord.HTTPException as e:
        print(f"[WARN] Could not post audit embed '{title}': {e}")

async def reply(interaction: discord.Interaction, content: str | None = None, *, embed: discord.Embed | None = None,
                ephemeral: bool = True):
    if interaction.response.is_done():
        await interaction.followup.send(content, embed=embed, ephemeral=ephemeral)
    else:
        await interaction.response.send_message(content, embed=embed, ephemeral=ephemeral)

def permission_context(interaction: discord.Interaction) -> PermissionContext:
    user = interaction.user
    role_ids = frozenset(r.id for r in getattr(user, "roles", []))
    guild = interaction.guild
    return PermissionContext(
        guild_id=guild.id,
        user_id=user.id,
        role_ids=role_ids,
        is_guild_owner=bool(guild and guild.owner_id == user.id),
    )

async def require_permission(interaction: discord.Interaction, action: str):
    if not interaction.guild:
        raise ValidationFailed("This command can only be used inside the server.")
    await bot.ensure_bootstrap()
    config = await bot.store.ensure_guild_config(interaction.guild.id)
    ctx = permission_context(interaction)
    require(config, ctx, action)
    return config, ctx

def find_discord_role(guild: discord.Guild, name: str) -> Optional[discord.Role]:
    name_lower = name.lower()
    for role in guild.roles:
        if role.name.lower() == name_lower:
            return role
    return None

async def sync_staff_role(member: discord.Member, old: str | None, new: str | None, reason: str):
    """Swap the Discord role named after the old rank for the one named after the new rank."""
    try:
        if old:
            old_role = find_discord_role(member.guild, old)
            if old_role and old_role in member.roles:
                await member.remove_roles(old_role, reason=reason)
        if new:
            new_role = find_discord_role(member.guild, new)
            if new_role:
                await member.add_roles(new_role, reason=reason)
    except discord.HTTPException as e:
        print(f"[WARN] Role sync failed for {member.id}: {e}")

def case_embed(row, title_prefix: str = "⚖️") -> discord.Embed:
    embed = discord.Embed(
        title=f"{title_prefix} Case {row['case_number']}",
        description=f"**{escape_markdown(row['title'])}**\n{escape_markdown(row['description'] or '')}"[:4000],
        color=STATUS_COLORS.get(row["status"], discord.Color.blurple()),
        timestamp=utcnow(),
    )
    embed.add_field(name="Client", value=f"<@{row['client_id']}>", inline=True)
    embed.add_field(name="Status", value=row["status"], inline=True)
    embed.add_field(name="Priority", value=row["priority"], inline=True)
    lead = f"<@{row['lead_attorney_id']}>" if row["lead_attorney_id"] else "TBD"
    embed.add_field(name="Lead Attorney", value=lead, inline=True)
    lawyers = ", ".join(f"<@{lid}>" for lid in row["assigned_lawyer_ids"]) or "None"
    embed.add_field(name="Assigned Lawyers", value=lawyers, inline=False)
    if row["result"]:
        embed.add_field(name="Result", value=row["result"], inline=True)
        embed.add_field(name="Closed", value=fmt_time(row["closed_at"]), inline=True)
        if row["result_notes"]:
            embed.add_field(name="Result Notes", value=row["result_notes"][:1024], inline=False)
    if row["channel_id"]:
        embed.add_field(name="Channel", value=f"<#{row['channel_id']}>", inline=True)
    embed.set_footer(text=FIRM_NAME)
    return embed

# === Bot class ===
class FIRM_BOT(commands.Bot):
    def __init__(self):
        super().__init__(command_prefix='!', intents=intents)
        self.db_pool: Optional[asyncpg.Pool] = None
        self.store: Optional[FirmStore] = None
        self._bootstrap_lock = asyncio.Lock()
        self._bootstrap_complete = False
        self.web_runner: web.AppRunner | None = None
        self.web_site: web.TCPSite | None = None

    async def setup_hook(self):
        # DB pool
        try:
            self.db_pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=10)
            async with self.db_pool.acquire() as c:
                await c.execute('SELECT 1')
            self.store = FirmStore(self.db_pool, config_ttl=GUILD_CONFIG_TTL_SECONDS)
            print("[DB] Connected.")
        except Exception as e:
            print(f"[DB] FAILED: {e}")
            return
        await self.ensure_bootstrap()

    async def ensure_bootstrap(self) -> None:
        if self._bootstrap_complete or not self.store:
            return

        async with self._bootstrap_lock:
            if self._bootstrap_complete or not self.store:
                return

            await self.store.ensure_schema()
            print("[DB] Tables ready.")

            if not self.web_runner:
                app = web.Application()
                app.router.add_get('/health', self.health_handler)
                self.web_runner = web.AppRunner(app)
                await self.web_runner.setup()
                self.web_site = web.TCPSite(self.web_runner, '0.0.0.0', WEB_PORT)
                await self.web_site.start()
                print(f"[Web] Server up on :{WEB_PORT} (GET /health).")

            # Sync slash commands once
            try:
                synced = await self.tree.sync()
                print(f"[Slash] Synced {len(synced)} command(s)")
            except discord.HTTPException as e:
                print(f"[Slash] Sync failed: {e}")

            self._bootstrap_complete = True

    async def health_handler(self, request):
        db_ok = False
        if self.db_pool:
            try:
                async with self.db_pool.acquire() as conn:
                    db_ok = (await conn.fetchval('SELECT 1')) == 1
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                print(f"[Web] Health DB check failed: {e}")
        return web.json_response({"status": "ok" if db_ok else "degraded", "database": db_ok},
                                 status=200 if db_ok else 503)

    async def close(self):
        if self.web_runner:
            await self.web_runner.cleanup()
        if self.db_pool:
            await self.db_pool.close()
        await super().close()


bot = FIRM_BOT()

staff_group       = app_commands.Group(name="staff", description="Hire, promote, demote and fire firm staff.")
case_group        = app_commands.Group(name="case", description="Open, staff and close legal cases.")
reminder_group    = app_commands.Group(name="reminder", description="Personal reminders for staff.")
retainer_group    = app_commands.Group(name="retainer", description="Client retainer agreements.")
job_group         = app_commands.Group(name="job", description="Firm job postings.")
application_group = app_commands.Group(name="application", description="Review job applications.")
config_group      = app_commands.Group(name="config", description="Server configuration for the firm bot.")
feedback_group    = app_commands.Group(name="feedback", description="Client feedback and ratings.")
repair_group      = app_commands.Group(name="repair", description="Maintenance tools for the firm bot.")

# === Events ===
@bot.event
async def on_ready():
    print(f'[READY] Logged in as {bot.user.name}')
    print("Command log channel:", bot.get_channel(COMMAND_LOG_CHANNEL_ID) if COMMAND_LOG_CHANNEL_ID else None)
    if not reminder_delivery_loop.is_running():
        reminder_delivery_loop.start()

@bot.tree.error
async def global_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    original = getattr(error, "original", error)
    if isinstance(original, FirmError):
        await reply(interaction, f"❌ {original}")
        return
    try:
        await log_action("Slash Command Error", f"Command: **/{getattr(interaction.command, 'qualified_name', 'unknown')}**\nError: `{original}`")
    finally:
        print(f"[WARN] /{getattr(interaction.command, 'qualified_name', 'unknown')} failed: {original!r}")
        try:
            await reply(interaction, "Sorry, something went wrong running that command.")
        except discord.HTTPException:
            pass

# ---------- Staff ----------
@staff_group.command(name="hire", description="(HR) Hire a member into the firm.")
@app_commands.describe(member="Member to hire", role="Starting rank", roblox_username="Their Roblox username", reason="Optional reason")
@app_commands.choices(role=ROLE_CHOICES)
async def staff_hire(interaction: discord.Interaction, member: discord.Member, role: str, roblox_username: str, reason: str | None = None):
    _, ctx = await require_permission(interaction, "hr")
    row = await bot.store.hire_staff(
        interaction.guild.id, member.id, roblox_username, role, interaction.user.id, reason,
        allow_over_capacity=ctx.is_guild_owner,
    )
    await sync_staff_role(member, None, row["role"], f"Hired via /staff hire by {interaction.user}")
    await log_action("Staff Hired",
                     f"By: {interaction.user.mention}\nMember: {member.mention}\nRole: **{row['role']}**\n"
                     f"Roblox: **{escape_markdown(row['roblox_username'])}**\nReason: {reason or '—'}",
                     interaction.guild)
    await reply(interaction, f"Hired {member.mention} as **{row['role']}**.")

async def _change_rank(interaction: discord.Interaction, member: discord.Member, role: str | None, reason: str | None, *, demotion: bool):
    config, ctx = await require_permission(interaction, "hr")
    current = await bot.store.get_staff(interaction.guild.id, member.id)
    if not current:
        raise NotFound(f"{member.display_name} is not active staff.")
    if role is None:
        # default to one step along the ladder
        step = previous_demotion(current["role"]) if demotion else next_promotion(current["role"])
        if step is None:
            edge = "lowest" if demotion else "highest"
            raise ValidationFailed(f"{member.display_name} is already at the {edge} rank.")
        role = step.value
    elif not is_valid_role(role):
        raise ValidationFailed(f"Unknown role: {role}")
    change = bot.store.demote_staff if demotion else bot.store.promote_staff
    row = await change(
        interaction.guild.id, member.id, role, interaction.user.id, reason,
        override=is_admin(config, ctx), allow_over_capacity=ctx.is_guild_owner,
    )
    verb = "Demoted" if demotion else "Promoted"
    await sync_staff_role(member, current["role"], row["role"], f"{verb} via /staff by {interaction.user}")
    await log_action(f"Staff {verb}",
                     f"By: {interaction.user.mention}\nMember: {member.mention}\n"
                     f"**{current['role']}** → **{row['role']}**\nReason: {reason or '—'}",
                     interaction.guild)
    await reply(interaction, f"{verb} {member.mention} from **{current['role']}** to **{row['role']}**.")

@staff_group.command(name="promote", description="(Senior staff) Promote a staff member.")
@app_commands.describe(role="New rank (defaults to the next rank up)")
@app_commands.choices(role=ROLE_CHOICES)
async def staff_promote(interaction: discord.Interaction, member: discord.Member, role: str | None = None, reason: str | None = None):
    await _change_rank(interaction, member, role, reason, demotion=False)

@staff_group.command(name="demote", description="(Senior staff) Demote a staff member.")
@app_commands.describe(role="New rank (defaults to the next rank down)")
@app_commands.choices(role=ROLE_CHOICES)
async def staff_demote(interaction: discord.Interaction, member: discord.Member, role: str | None = None, reason: str | None = None):
    await _change_rank(interaction, member, role, reason, demotion=True)

@staff_group.command(name="fire", description="(HR) Terminate a staff member.")
async def staff_fire(interaction: discord.Interaction, member: discord.Member, reason: str | None = None):
    await require_permission(interaction, "hr")
    if member.id == interaction.user.id:
        raise ValidationFailed("You cannot fire yourself.")
    row = await bot.store.fire_staff(interaction.guild.id, member.id, interaction.user.id, reason)
    await sync_staff_role(member, row["role"], None, f"Fired via /staff fire by {interaction.user}")
    await log_action("Staff Fired",
                     f"By: {interaction.user.mention}\nMember: {member.mention}\nRole: **{row['role']}**\nReason: {reason or '—'}",
                     interaction.guild)
    await reply(interaction, f"{member.mention} has been terminated from **{row['role']}**.")

@staff_group.command(name="info", description="View a staff member's rank and history.")
async def staff_info(interaction: discord.Interaction, member: discord.Member | None = None):
    target = member or interaction.user
    if target.id != interaction.user.id:
        await require_permission(interaction, "hr")
    else:
        await bot.ensure_bootstrap()
    row = await bot.store.get_staff(interaction.guild.id, target.id, active_only=False)
    if not row:
        await reply(interaction, f"{target.display_name} has never been on staff.")
        return
    history = await bot.store.staff_history(interaction.guild.id, target.id)
    embed = discord.Embed(title=f"👔 {target.display_name}", color=discord.Color.blurple(), timestamp=utcnow())
    embed.add_field(name="Role", value=f"{row['role']} (level {level(row['role'])})", inline=True)
    embed.add_field(name="Status", value=row["status"], inline=True)
    embed.add_field(name="Roblox", value=escape_markdown(row["roblox_username"]), inline=True)
    embed.add_field(name="Hired", value=f"{fmt_time(row['hired_at'])} by <@{row['hired_by']}>", inline=False)
    if history:
        lines = [
            f"`{fmt_time(h['created_at'])}` **{h['action_type']}** {h['from_role'] or '—'} → {h['to_role'] or '—'}"
            for h in history
        ]
        embed.add_field(name="History", value="\n".join(lines)[:1024], inline=False)
    await reply(interaction, embed=embed)

@staff_group.command(name="list", description="List active staff, optionally filtered by rank.")
@app_commands.choices(role=ROLE_CHOICES)
async def staff_list(interaction: discord.Interaction, role: str | None = None):
    await bot.ensure_bootstrap()
    rows = await bot.store.list_staff(interaction.guild.id, coerce_role(role) if role else None)
    if not rows:
        await reply(interaction, "No active staff found.")
        return
    by_role: dict[str, list[str]] = {}
    for r in rows:
        by_role.setdefault(r["role"], []).append(f"<@{r['user_id']}>")
    lines = []
    for staff_role in all_roles_by_level_descending():
        members = by_role.get(staff_role.value)
        if members:
            lines.append(f"**{staff_role.value}** ({len(members)}/{max_headcount(staff_role)})\n" + ", ".join(members))
    embed = discord.Embed(title=f"🏛️ {FIRM_NAME} Staff", description="\n\n".join(lines)[:4000],
                          color=discord.Color.gold(), timestamp=utcnow())
    embed.set_footer(text=f"Total active staff: {len(rows)}")
    await reply(interaction, embed=embed)

@staff_group.command(name="roles", description="Show the rank ladder with headcount limits.")
async def staff_roles_cmd(interaction: discord.Interaction):
    await bot.ensure_bootstrap()
    counts = await bot.store.role_counts(interaction.guild.id)
    lines = [
        f"**{level(r)}. {r.value}** — {counts.get(r, 0)}/{max_headcount(r)}"
        for r in all_roles_by_level_descending()
    ]
    embed = discord.Embed(title="📜 Rank Ladder", description="\n".join(lines), color=discord.Color.blurple())
    embed.set_footer(text="Senior Partners and above may promote or demote lower ranks.")
    await reply(interaction, embed=embed)

# ---------- Cases ----------
async def resolve_case(interaction: discord.Interaction, case_number: str | None):
    guild_id = interaction.guild.id
    if case_number:
        case_number = case_number.strip()
        if parse_case_number(case_number) is None:
            raise ValidationFailed("That doesn't look like a case number (YYYY-NNNN-username).")
        row = await bot.store.get_case_by_number(guild_id, case_number)
    else:
        row = await bot.store.get_case_by_channel(guild_id, interaction.channel_id)
    if not row:
        raise NotFound("Case not found. Pass a case number or run this inside a case channel.")
    return row

async def create_case_channel(guild: discord.Guild, row, category_id: int | None) -> Optional[discord.TextChannel]:
    category = guild.get_channel(category_id) if category_id else None
    if category_id and not isinstance(category, discord.CategoryChannel):
        print(f"[WARN] Case review category {category_id} missing in guild {guild.id}")
        category = None
    overwrites = {guild.default_role: discord.PermissionOverwrite(view_channel=False)}
    client = guild.get_member(row["client_id"])
    if client:
        overwrites[client] = discord.PermissionOverwrite(view_channel=True, send_messages=True, read_message_history=True)
    if guild.me:
        overwrites[guild.me] = discord.PermissionOverwrite(view_channel=True, send_messages=True, manage_channels=True)
    try:
        return await guild.create_text_channel(
            row["channel_name"],
            category=category,
            overwrites=overwrites,
            topic=f"Case: {row['title']} | Client: {row['client_username']}"[:1024],
            reason=f"Case {row['case_number']}",
        )
    except discord.HTTPException as e:
        print(f"[WARN] Could not create case channel for {row['case_number']}: {e}")
        return None

async def grant_case_channel(guild: discord.Guild, row, lawyer_ids):
    channel = guild.get_channel(row["channel_id"]) if row["channel_id"] else None
    if not isinstance(channel, discord.TextChannel):
        return
    for lawyer_id in lawyer_ids:
        lawyer = guild.get_member(lawyer_id)
        if not lawyer:
            continue
        try:
            await channel.set_permissions(lawyer, view_channel=True, send_messages=True,
                                          read_message_history=True, manage_messages=True)
        except discord.HTTPException as e:
            print(f"[WARN] Could not grant case channel access to {lawyer_id}: {e}")
    lead = f"<@{row['lead_attorney_id']}>" if row["lead_attorney_id"] else "TBD"
    try:
        await channel.edit(topic=f"Case: {row['title']} | Client: {row['client_username']} | Lead: {lead}"[:1024])
    except discord.HTTPException as e:
        print(f"[WARN] Could not update case channel topic: {e}")

@case_group.command(name="review", description="Request a case review from the firm.")
@app_commands.describe(title="Short title for your case", details="Describe your legal matter", priority="How urgent is it?")
@app_commands.choices(priority=PRIORITY_CHOICES)
async def case_review(interaction: discord.Interaction, title: app_commands.Range[str, 3, 200], details: app_commands.Range[str, 10, 2000], priority: str = CasePriority.MEDIUM.value):
    await bot.ensure_bootstrap()
    await interaction.response.defer(ephemeral=True, thinking=True)
    config = await bot.store.ensure_guild_config(interaction.guild.id)
    row = await bot.store.create_case(
        interaction.guild.id, interaction.user.id, interaction.user.name, title, details, priority
    )
    channel = await create_case_channel(interaction.guild, row, config.case_review_category_id)
    if channel:
        row = await bot.store.set_case_channel(interaction.guild.id, row["id"], channel.id)
        await channel.send(
            content=f"{interaction.user.mention} your case review request has been received. A lawyer will be with you shortly.",
            embed=case_embed(row, "🆕"),
        )
    await log_action("Case Review Requested",
                     f"Client: {interaction.user.mention}\nCase: **{row['case_number']}**\nPriority: {row['priority']}",
                     interaction.guild)
    where = f" in <#{channel.id}>" if channel else ""
    await reply(interaction, f"Your case **{row['case_number']}** has been submitted{where}.")

@case_group.command(name="accept", description="(Case) Accept a pending case and become its lead attorney.")
async def case_accept(interaction: discord.Interaction, case_number: str | None = None):
    await require_permission(interaction, "case")
    row = await resolve_case(interaction, case_number)
    row = await bot.store.accept_case(interaction.guild.id, row["id"], interaction.user.id)
    await grant_case_channel(interaction.guild, row, [interaction.user.id])
    await log_action("Case Accepted", f"Lawyer: {interaction.user.mention}\nCase: **{row['case_number']}**", interaction.guild)
    await reply(interaction, embed=case_embed(row, "✅"), ephemeral=False)

@case_group.command(name="status", description="(Case) Move a case forward to a new status.")
@app_commands.choices(status=[c for c in STATUS_CHOICES if c.value != CaseStatus.CLOSED.value])
async def case_status(interaction: discord.Interaction, status: str, case_number: str | None = None):
    await require_permission(interaction, "case")
    row = await resolve_case(interaction, case_number)
    before = row["status"]
    row = await bot.store.update_case_status(interaction.guild.id, row["id"], status, interaction.user.id)
    await log_action("Case Status Changed",
                     f"By: {interaction.user.mention}\nCase: **{row['case_number']}**\n{before} → **{row['status']}**",
                     interaction.guild)
    await reply(interaction, f"Case **{row['case_number']}** is now **{row['status']}**.")

@case_group.command(name="assign", description="(Case) Assign a lawyer to a case.")
async def case_assign(interaction: discord.Interaction, lawyer: discord.Member, case_number: str | None = None):
    await require_permission(interaction, "case")
    if not await bot.store.get_staff(interaction.guild.id, lawyer.id):
        raise ValidationFailed(f"{lawyer.display_name} is not active staff.")
    row = await resolve_case(interaction, case_number)
    row = await bot.store.assign_lawyer(interaction.guild.id, row["id"], lawyer.id, interaction.user.id)
    await grant_case_channel(interaction.guild, row, [lawyer.id])
    await log_action("Lawyer Assigned", f"By: {interaction.user.mention}\nLawyer: {lawyer.mention}\nCase: **{row['case_number']}**", interaction.guild)
    await reply(interaction, f"Assigned {lawyer.mention} to **{row['case_number']}**.")

@case_group.command(name="unassign", description="(Case) Remove a lawyer from a case.")
async def case_unassign(interaction: discord.Interaction, lawyer: discord.Member, case_number: str | None = None):
    await require_permission(interaction, "case")
    row = await resolve_case(interaction, case_number)
    row = await bot.store.unassign_lawyer(interaction.guild.id, row["id"], lawyer.id, interaction.user.id)
    channel = interaction.guild.get_channel(row["channel_id"]) if row["channel_id"] else None
    if isinstance(channel, discord.TextChannel):
        try:
            await channel.set_permissions(lawyer, overwrite=None)
        except discord.HTTPException as e:
            print(f"[WARN] Could not revoke case channel access for {lawyer.id}: {e}")
    await log_action("Lawyer Unassigned", f"By: {interaction.user.mention}\nLawyer: {lawyer.mention}\nCase: **{row['case_number']}**", interaction.guild)
    await reply(interaction, f"Removed {lawyer.mention} from **{row['case_number']}**.")

@case_group.command(name="lead", description="(Case) Set a case's lead attorney.")
async def case_lead(interaction: discord.Interaction, lawyer: discord.Member, case_number: str | None = None):
    await require_permission(interaction, "case")
    if not await bot.store.get_staff(interaction.guild.id, lawyer.id):
        raise ValidationFailed(f"{lawyer.display_name} is not active staff.")
    row = await resolve_case(interaction, case_number)
    row = await bot.store.set_lead_attorney(interaction.guild.id, row["id"], lawyer.id, interaction.user.id)
    await grant_case_channel(interaction.guild, row, [lawyer.id])
    await log_action("Lead Attorney Changed", f"By: {interaction.user.mention}\nLead: {lawyer.mention}\nCase: **{row['case_number']}**", interaction.guild)
    await reply(interaction, f"{lawyer.mention} is now lead attorney on **{row['case_number']}**.")

@case_group.command(name="close", description="(Case) Close a case with a result.")
@app_commands.choices(result=RESULT_CHOICES)
async def case_close(interaction: discord.Interaction, result: str, notes: str | None = None, case_number: str | None = None):
    config, _ = await require_permission(interaction, "case")
    row = await resolve_case(interaction, case_number)
    row = await bot.store.close_case(interaction.guild.id, row["id"], result, interaction.user.id, notes)
    channel = interaction.guild.get_channel(row["channel_id"]) if row["channel_id"] else None
    archive = interaction.guild.get_channel(config.case_archive_category_id) if config.case_archive_category_id else None
    if isinstance(channel, discord.TextChannel) and isinstance(archive, discord.CategoryChannel):
        try:
            await channel.edit(category=archive, reason=f"Case {row['case_number']} closed")
        except discord.HTTPException as e:
            print(f"[WARN] Could not archive case channel {channel.id}: {e}")
    await log_action("Case Closed",
                     f"By: {interaction.user.mention}\nCase: **{row['case_number']}**\nResult: **{row['result']}**",
                     interaction.guild)
    await reply(interaction, embed=case_embed(row, "🔒"), ephemeral=False)

@case_group.command(name="info", description="Show a case's details.")
async def case_info(interaction: discord.Interaction, case_number: str | None = None):
    await bot.ensure_bootstrap()
    row = await resolve_case(interaction, case_number)
    is_client = row["client_id"] == interaction.user.id
    if not is_client:
        await require_permission(interaction, "case")
    embed = case_embed(row)
    notes = await bot.store.case_notes(row["id"], include_internal=not is_client)
    if notes:
        lines = [f"`{fmt_time(n['created_at'])}` <@{n['author_id']}>: {escape_markdown(n['content'])[:200]}" for n in notes[-5:]]
        embed.add_field(name=f"Notes ({len(notes)})", value="\n".join(lines)[:1024], inline=False)
    await reply(interaction, embed=embed)

@case_group.command(name="list", description="(Case) List recent cases.")
@app_commands.choices(status=STATUS_CHOICES)
async def case_list(interaction: discord.Interaction, status: str | None = None, lawyer: discord.Member | None = None):
    await require_permission(interaction, "case")
    rows = await bot.store.list_cases(interaction.guild.id, status, lawyer.id if lawyer else None)
    if not rows:
        await reply(interaction, "No cases found.")
        return
    lines = [f"`{r['case_number']}` — {escape_markdown(r['title'][:60])} (**{r['status']}**, {r['priority']})" for r in rows]
    embed = discord.Embed(title="🗂️ Cases", description="\n".join(lines)[:4000], color=discord.Color.blurple(), timestamp=utcnow())
    await reply(interaction, embed=embed)

@case_group.command(name="note", description="(Case) Add a note to a case.")
@app_commands.describe(internal="Hide the note from the client (default: yes)")
async def case_note(interaction: discord.Interaction, content: app_commands.Range[str, 1, 1500], internal: bool = True, case_number: str | None = None):
    await require_permission(interaction, "case")
    row = await resolve_case(interaction, case_number)
    await bot.store.add_case_note(interaction.guild.id, row["id"], interaction.user.id, content, internal)
    await reply(interaction, f"Note added to **{row['case_number']}**{' (internal)' if internal else ''}.")

# ---------- Reminders ----------
@reminder_group.command(name="set", description="Set a reminder (e.g. 10m, 2h, 1d; max 7 days).")
async def reminder_set(interaction: discord.Interaction, time: str, message: str):
    await bot.ensure_bootstrap()
    parsed = validate_reminder_time(time)
    message = validate_reminder_message(message)
    scheduled_for = utcnow() + parsed.delta
    row = await bot.store.create_reminder(
        interaction.guild.id, interaction.user.id, interaction.user.name, message, scheduled_for, interaction.channel_id
    )
    case_note_txt = " (linked to this case)" if row["case_id"] else ""
    await reply(interaction, f"⏰ Reminder #{row['id']} set for **{format_reminder_time(parsed)}** from now{case_note_txt}.")

@reminder_group.command(name="list", description="List your active reminders.")
async def reminder_list(interaction: discord.Interaction):
    await bot.ensure_bootstrap()
    rows = await bot.store.list_user_reminders(interaction.guild.id, interaction.user.id)
    if not rows:
        await reply(interaction, "You have no active reminders.")
        return
    now = utcnow()
    lines = [f"**#{r['id']}** in {human_remaining(r['scheduled_for'] - now)} — {escape_markdown(r['message'][:80])}" for r in rows]
    await reply(interaction, "\n".join(lines)[:2000])

@reminder_group.command(name="cancel", description="Cancel one of your reminders.")
async def reminder_cancel(interaction: discord.Interaction, reminder_id: int):
    await bot.ensure_bootstrap()
    await bot.store.cancel_reminder(interaction.guild.id, reminder_id, interaction.user.id)
    await reply(interaction, f"Reminder #{reminder_id} cancelled.")

async def deliver_reminder(store: FirmStore, row) -> None:
    text = f"⏰ <@{row['user_id']}> reminder: {row['message']}"
    channel = bot.get_channel(row["channel_id"]) if row["channel_id"] else None
    try:
        if channel:
            await channel.send(text)
        else:
            user = bot.get_user(row["user_id"]) or await bot.fetch_user(row["user_id"])
            await user.send(text)
    except discord.HTTPException as e:
        print(f"[Reminders] Could not deliver #{row['id']}: {e}")
    await store.mark_reminder_delivered(row["id"])

async def deliver_due_reminders(store: FirmStore) -> int:
    """Send every due reminder; one failing row never blocks the rest."""
    delivered = 0
    for row in await store.due_reminders():
        try:
            await deliver_reminder(store, row)
            delivered += 1
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            print(f"[Reminders] Delivery of #{row['id']} failed: {e}")
    return delivered

@tasks.loop(seconds=REMINDER_POLL_SECONDS)
async def reminder_delivery_loop():
    if not bot.store:
        return
    try:
        await deliver_due_reminders(bot.store)
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        print(f"[Reminders] Poll failed: {e}")

@reminder_delivery_loop.before_loop
async def before_reminder_loop():
    await bot.wait_until_ready()

# ---------- Retainers ----------
@retainer_group.command(name="create", description="(Retainer) Send a retainer agreement to a client.")
async def retainer_create(interaction: discord.Interaction, client: discord.Member):
    await require_permission(interaction, "retainer")
    row = await bot.store.create_retainer(interaction.guild.id, client.id, interaction.user.id)
    agreement = row["agreement_template"].replace("[CLIENT_SIGNATURE]", "*(pending)*")
    try:
        await send_long_embed(
            target=client,
            title=f"📄 Retainer Agreement #{row['id']}",
            description=f"{agreement}\n\nTo sign, run `/retainer sign retainer_id:{row['id']} roblox_username:<your username>` in the server.",
            color=discord.Color.gold(),
            footer_text=f"{FIRM_NAME} • Lawyer: {interaction.user.display_name}",
        )
        sent = True
    except discord.Forbidden:
        sent = False
    await log_action("Retainer Created", f"Lawyer: {interaction.user.mention}\nClient: {client.mention}\nID: #{row['id']}", interaction.guild)
    note = "" if sent else " I couldn't DM them, so please share the retainer ID manually."
    await reply(interaction, f"Retainer #{row['id']} sent to {client.mention}.{note}")

@retainer_group.command(name="sign", description="Sign a retainer agreement sent to you.")
async def retainer_sign(interaction: discord.Interaction, retainer_id: int, roblox_username: str):
    await bot.ensure_bootstrap()
    row = await bot.store.sign_retainer(interaction.guild.id, retainer_id, interaction.user.id, roblox_username)
    config = await bot.store.ensure_guild_config(interaction.guild.id)
    if config.client_role_id and isinstance(interaction.user, discord.Member):
        client_role = interaction.guild.get_role(config.client_role_id)
        if client_role:
            try:
                await interaction.user.add_roles(client_role, reason=f"Signed retainer #{retainer_id}")
            except discord.HTTPException as e:
                print(f"[WARN] Could not grant client role: {e}")
    archive = interaction.guild.get_channel(config.retainer_channel_id) if config.retainer_channel_id else None
    if archive:
        agreement = row["agreement_template"].replace("[CLIENT_SIGNATURE]", escape_markdown(row["digital_signature"]))
        await send_long_embed(
            target=archive,
            title=f"✍️ Signed Retainer #{row['id']}",
            description=f"Client: <@{row['client_id']}>\nLawyer: <@{row['lawyer_id']}>\n\n{agreement}",
            color=discord.Color.green(),
            footer_text=f"Signed {fmt_time(row['signed_at'])}",
        )
    await log_action("Retainer Signed", f"Client: {interaction.user.mention}\nID: #{retainer_id}", interaction.guild)
    await reply(interaction, f"Thank you! Retainer #{retainer_id} is signed.")

@retainer_group.command(name="cancel", description="(Retainer) Cancel a pending retainer agreement.")
async def retainer_cancel(interaction: discord.Interaction, retainer_id: int):
    await require_permission(interaction, "retainer")
    await bot.store.cancel_retainer(interaction.guild.id, retainer_id, interaction.user.id)
    await log_action("Retainer Cancelled", f"By: {interaction.user.mention}\nID: #{retainer_id}", interaction.guild)
    await reply(interaction, f"Retainer #{retainer_id} cancelled.")

@retainer_group.command(name="list", description="(Retainer) List signed or pending retainers.")
@app_commands.choices(status=[
    app_commands.Choice(name="Signed", value=RETAINER_SIGNED),
    app_commands.Choice(name="Pending", value=RETAINER_PENDING),
])
async def retainer_list(interaction: discord.Interaction, status: str = RETAINER_SIGNED):
    await require_permission(interaction, "retainer")
    rows = await bot.store.list_retainers(interaction.guild.id, status)
    if not rows:
        await reply(interaction, f"No {status} retainers.")
        return
    lines = [f"**#{r['id']}** client <@{r['client_id']}> • lawyer <@{r['lawyer_id']}> • {fmt_time(r['signed_at'] or r['created_at'])}" for r in rows]
    await reply(interaction, "\n".join(lines)[:2000])

# ---------- Jobs & applications ----------
class ApplicationModal(discord.ui.Modal, title='Job Application'):
    def __init__(self, job):
        super().__init__()
        self.job = job

    roblox_username = discord.ui.TextInput(label='Roblox username', style=discord.TextStyle.short, required=True, min_length=3, max_length=20)
    experience      = discord.ui.TextInput(label='Relevant legal/RP experience', style=discord.TextStyle.paragraph, required=True, min_length=20, max_length=1000)
    availability    = discord.ui.TextInput(label='Weekly availability', style=discord.TextStyle.short, required=True, max_length=200)
    motivation      = discord.ui.TextInput(label='Why do you want this position?', style=discord.TextStyle.paragraph, required=True, min_length=20, max_length=1000)

    async def on_submit(self, interaction: discord.Interaction):
        answers = {
            "experience": self.experience.value,
            "availability": self.availability.value,
            "motivation": self.motivation.value,
        }
        try:
            row = await bot.store.submit_application(
                interaction.guild.id, self.job["id"], interaction.user.id, self.roblox_username.value, answers
            )
        except FirmError as e:
            await reply(interaction, f"❌ {e}")
            return
        config = await bot.store.ensure_guild_config(interaction.guild.id)
        channel = interaction.guild.get_channel(config.application_channel_id) if config.application_channel_id else None
        if channel:
            embed = discord.Embed(
                title=f"📝 Application #{row['id']} — {self.job['title']}",
                color=discord.Color.blurple(),
                timestamp=utcnow(),
            )
            embed.add_field(name="Applicant", value=interaction.user.mention, inline=True)
            embed.add_field(name="Role", value=self.job["staff_role"], inline=True)
            embed.add_field(name="Roblox", value=escape_markdown(row["roblox_username"]), inline=True)
            for key, value in answers.items():
                embed.add_field(name=key.title(), value=escape_markdown(value)[:1024], inline=False)
            embed.set_footer(text=f"Review with /application review application_id:{row['id']}")
            await channel.send(embed=embed)
        await log_action("Application Submitted", f"User: {interaction.user.mention}\nJob: **{self.job['title']}**", interaction.guild)
        await reply(interaction, "Your application has been submitted. Good luck!")

@job_group.command(name="add", description="(HR) Post a new job opening.")
@app_commands.choices(role=ROLE_CHOICES)
async def job_add(interaction: discord.Interaction, title: app_commands.Range[str, 3, 100], role: str, description: app_commands.Range[str, 10, 1500]):
    await require_permission(interaction, "hr")
    row = await bot.store.add_job(interaction.guild.id, title, description, role, interaction.user.id)
    await log_action("Job Posted", f"By: {interaction.user.mention}\nJob: **{title}** ({row['staff_role']})", interaction.guild)
    await reply(interaction, f"Job #{row['id']} **{title}** posted for **{row['staff_role']}**.")

@job_group.command(name="close", description="(HR) Close a job opening.")
async def job_close(interaction: discord.Interaction, job_id: int):
    await require_permission(interaction, "hr")
    row = await bot.store.close_job(interaction.guild.id, job_id, interaction.user.id)
    await log_action("Job Closed", f"By: {interaction.user.mention}\nJob: **{row['title']}**", interaction.guild)
    await reply(interaction, f"Job #{job_id} closed.")

@job_group.command(name="list", description="List open job postings.")
async def job_list(interaction: discord.Interaction):
    await bot.ensure_bootstrap()
    rows = await bot.store.list_jobs(interaction.guild.id)
    if not rows:
        await reply(interaction, "There are no open positions right now.")
        return
    embed = discord.Embed(title="💼 Open Positions", color=discord.Color.green(), timestamp=utcnow())
    for r in rows[:25]:
        embed.add_field(name=f"#{r['id']} {r['title']} — {r['staff_role']}", value=escape_markdown(r["description"] or "")[:1024] or "—", inline=False)
    embed.set_footer(text="Apply with /apply job_id:<id>")
    await reply(interaction, embed=embed)

@bot.tree.command(name="apply", description="Apply for an open position at the firm.")
async def apply(interaction: discord.Interaction, job_id: int):
    await bot.ensure_bootstrap()
    jobs = await bot.store.list_jobs(interaction.guild.id)
    job = next((j for j in jobs if j["id"] == job_id), None)
    if not job:
        await reply(interaction, "That job isn't open. Use `/job list` to see open positions.")
        return
    await interaction.response.send_modal(ApplicationModal(job))

@application_group.command(name="pending", description="(HR) List applications awaiting review.")
async def application_pending(interaction: discord.Interaction):
    await require_permission(interaction, "hr")
    rows = await bot.store.pending_applications(interaction.guild.id)
    if not rows:
        await reply(interaction, "No pending applications.")
        return
    lines = [f"**#{r['id']}** <@{r['applicant_id']}> → {r['job_title']} ({r['staff_role']}) • {fmt_time(r['created_at'])}" for r in rows]
    await reply(interaction, "\n".join(lines)[:2000])

@application_group.command(name="review", description="(HR) Accept or reject an application. Accepting hires the applicant.")
async def application_review(interaction: discord.Interaction, application_id: int, approve: bool, reason: str | None = None):
    _, ctx = await require_permission(interaction, "hr")
    app_row = await bot.store.get_application(interaction.guild.id, application_id)
    if not app_row or app_row["status"] != "pending":
        raise NotFound("Pending application not found.")
    applicant = interaction.guild.get_member(app_row["applicant_id"])
    if approve and not applicant:
        raise ValidationFailed("The applicant is no longer in the server.")
    row, staff_row = await bot.store.review_application(
        interaction.guild.id, application_id, interaction.user.id, approve, reason,
        allow_over_capacity=ctx.is_guild_owner,
    )
    if staff_row:
        await sync_staff_role(applicant, None, staff_row["role"], f"Application #{application_id} accepted")
    verdict = "accepted" if approve else "rejected"
    if applicant:
        try:
            await applicant.send(f"Your application for **{app_row['job_title']}** was **{verdict}**." + (f"\nReason: {reason}" if reason else ""))
        except discord.Forbidden:
            pass
    await log_action(f"Application {verdict.title()}",
                     f"By: {interaction.user.mention}\nApplicant: <@{row['applicant_id']}>\nJob: **{app_row['job_title']}**\nReason: {reason or '—'}",
                     interaction.guild)
    await reply(interaction, f"Application #{application_id} {verdict}.")

# ---------- Feedback ----------
@feedback_group.command(name="submit", description="Rate the firm or one of its staff members.")
@app_commands.describe(rating="1 (poor) to 5 (excellent)", comment="Tell us about your experience", staff="Staff member this is about (leave blank for the firm)")
async def feedback_submit(interaction: discord.Interaction, rating: app_commands.Range[int, 1, 5], comment: app_commands.Range[str, 10, 2000], staff: discord.Member | None = None):
    await bot.ensure_bootstrap()
    row = await bot.store.submit_feedback(
        interaction.guild.id, interaction.user.id, interaction.user.name, rating, comment, staff.id if staff else None
    )
    config = await bot.store.ensure_guild_config(interaction.guild.id)
    channel = interaction.guild.get_channel(config.feedback_channel_id) if config.feedback_channel_id else None
    if channel:
        embed = discord.Embed(title=f"📝 Feedback {star_display(row['rating'])}", description=escape_markdown(row["comment"])[:4000],
                              color=discord.Color.gold(), timestamp=utcnow())
        embed.add_field(name="From", value=interaction.user.mention, inline=True)
        embed.add_field(name="About", value=staff.mention if staff else FIRM_NAME, inline=True)
        try:
            await channel.send(embed=embed)
        except discord.HTTPException as e:
            print(f"[WARN] Could not post feedback #{row['id']}: {e}")
    await reply(interaction, "Thank you for your feedback!")

@feedback_group.command(name="view", description="(HR) Show average ratings for the firm or a staff member.")
async def feedback_view(interaction: discord.Interaction, staff: discord.Member | None = None):
    if not staff or staff.id != interaction.user.id:
        await require_permission(interaction, "hr")
    else:
        await bot.ensure_bootstrap()
    target_id = staff.id if staff else None
    summary = await bot.store.feedback_summary(interaction.guild.id, target_id)
    title = f"📊 Performance Overview — {staff.display_name}" if staff else "📊 Firm Performance Overview"
    embed = discord.Embed(title=title, color=discord.Color.gold(), timestamp=utcnow())
    if not summary.total:
        embed.description = "No feedback yet."
        await reply(interaction, embed=embed)
        return
    embed.add_field(name="Average", value=f"{star_display(round(summary.average))} {summary.average:.2f}", inline=True)
    embed.add_field(name="Total", value=f"{summary.total} reviews", inline=True)
    embed.add_field(name="Distribution",
                    value="\n".join(f"{r}★ — {n}" for r, n in sorted(summary.distribution.items(), reverse=True)),
                    inline=False)
    recent = await bot.store.recent_feedback(interaction.guild.id, target_id)
    if recent:
        lines = [f"{star_display(f['rating'])} {escape_markdown(f['comment'])[:120]}" for f in recent]
        embed.add_field(name="Recent", value="\n".join(lines)[:1024], inline=False)
    await reply(interaction, embed=embed)

# ---------- Repair ----------
@repair_group.command(name="staff-roles", description="(Repair) Make Discord rank roles match the staff records.")
@app_commands.describe(dry_run="Only list the changes (default: yes)")
async def repair_staff_roles(interaction: discord.Interaction, dry_run: bool = True):
    await require_permission(interaction, "repair")
    await interaction.response.defer(ephemeral=True, thinking=True)
    guild = interaction.guild
    ranks = {r["user_id"]: r["role"] for r in await bot.store.list_staff(guild.id)}
    rank_names = {r.value.lower() for r in all_roles_by_level_descending()}
    members = {m.id: m for m in guild.members if any(role.name.lower() in rank_names for role in m.roles)}
    for user_id in ranks:
        member = guild.get_member(user_id)
        if member:
            members[user_id] = member
    changes = []
    for member in members.values():
        to_add, to_remove = rank_role_changes(ranks.get(member.id), [role.name for role in member.roles])
        if not to_add and not to_remove:
            continue
        summary = ", ".join([f"+{r.value}" for r in to_add] + [f"-{r.value}" for r in to_remove])
        changes.append(f"{member.mention}: {summary}")
        if dry_run:
            continue
        remove_names = {r.value.lower() for r in to_remove}
        remove = [role for role in member.roles if role.name.lower() in remove_names]
        add = [role for role in (find_discord_role(guild, r.value) for r in to_add) if role]
        try:
            if remove:
                await member.remove_roles(*remove, reason="/repair staff-roles")
            if add:
                await member.add_roles(*add, reason="/repair staff-roles")
        except discord.HTTPException as e:
            print(f"[WARN] Rank role repair failed for {member.id}: {e}")
    if not dry_run and changes:
        await log_action("Staff Roles Repaired", f"By: {interaction.user.mention}\nMembers updated: {len(changes)}", guild)
    header = "Planned changes" if dry_run else "Applied changes"
    body = "\n".join(changes) if changes else "Everything is already in sync."
    await reply(interaction, f"**{header}**\n{body}"[:2000])

@repair_group.command(name="health", description="(Repair) Check the database and configuration.")
async def repair_health(interaction: discord.Interaction):
    config, _ = await require_permission(interaction, "repair")
    db_ok = False
    try:
        async with bot.db_pool.acquire() as conn:
            db_ok = (await conn.fetchval('SELECT 1')) == 1
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        print(f"[Repair] Health DB check failed: {e}")
    missing = [s.removesuffix("_id") for s in CHANNEL_SETTINGS
               if getattr(config, s) and not (interaction.guild.get_channel(getattr(config, s)) or interaction.guild.get_role(getattr(config, s)))]
    lines = [
        f"Database: {'✅ ok' if db_ok else '❌ unreachable'}",
        f"Reminder loop: {'✅ running' if reminder_delivery_loop.is_running() else '❌ stopped'}",
        f"Configured IDs that no longer exist: {', '.join(missing) if missing else 'none'}",
    ]
    await reply(interaction, "\n".join(lines))

# ---------- Config ----------
@config_group.command(name="show", description="(Config) Show this server's firm configuration.")
async def config_show(interaction: discord.Interaction):
    await bot.ensure_bootstrap()
    config = await bot.store.ensure_guild_config(interaction.guild.id)
    ctx = permission_context(interaction)
    if not can_manage_config(config, ctx):
        raise PermissionDenied("You need the **config** permission to do that.")
    embed = discord.Embed(title="⚙️ Firm Configuration", color=discord.Color.dark_teal(), timestamp=utcnow())
    for setting in CHANNEL_SETTINGS:
        value = getattr(config, setting)
        shown = "—" if not value else (f"<@&{value}>" if setting == "client_role_id" else f"<#{value}>")
        embed.add_field(name=setting.removesuffix("_id"), value=shown, inline=True)
    for action in PERMISSION_ACTIONS:
        roles = " ".join(f"<@&{r}>" for r in config.permissions.get(action, [])) or "—"
        embed.add_field(name=f"perm: {action}", value=roles, inline=True)
    admins = " ".join([f"<@&{r}>" for r in config.admin_roles] + [f"<@{u}>" for u in config.admin_users]) or "—"
    embed.add_field(name="Admins", value=admins, inline=False)
    await reply(interaction, embed=embed)

@config_group.command(name="channel", description="(Config) Set or clear a channel, category or role setting.")
@app_commands.describe(value_id="Channel/category/role ID; leave empty to clear")
@app_commands.choices(setting=SETTING_CHOICES)
async def config_channel(interaction: discord.Interaction, setting: str, value_id: str | None = None):
    await require_permission(interaction, "config")
    value = None
    if value_id:
        try:
            value = int(value_id.strip().strip("<#@&>"))
        except ValueError:
            raise ValidationFailed("Please pass a numeric ID or a channel/role mention.") from None
    await bot.store.update_guild_setting(interaction.guild.id, setting, value)
    await log_action("Config Updated", f"By: {interaction.user.mention}\n{setting}: `{value or 'cleared'}`", interaction.guild)
    await reply(interaction, f"**{setting.removesuffix('_id')}** set to `{value or 'nothing'}`.")

@config_group.command(name="permission", description="(Config) Grant or revoke a role's permission for an action.")
@app_commands.choices(action=ACTION_CHOICES)
async def config_permission(interaction: discord.Interaction, action: str, role: discord.Role, grant: bool = True):
    config, _ = await require_permission(interaction, "config")
    roles = set(config.permissions.get(action, []))
    if grant:
        roles.add(role.id)
    else:
        roles.discard(role.id)
    await bot.store.set_action_roles(interaction.guild.id, action, list(roles))
    await log_action("Permission Updated", f"By: {interaction.user.mention}\n{'Granted' if grant else 'Revoked'} **{action}** for {role.mention}", interaction.guild)
    await reply(interaction, f"{'Granted' if grant else 'Revoked'} **{action}** for {role.mention}.")

@config_group.command(name="admin", description="(Admin) Add or remove a firm admin user or role.")
async def config_admin(interaction: discord.Interaction, add: bool, user: discord.Member | None = None, role: discord.Role | None = None):
    await require_permission(interaction, "admin")
    if not user and not role:
        raise ValidationFailed("Pick a user or a role.")
    store = bot.store
    gid = interaction.guild.id
    changes = []
    if user:
        await (store.add_admin_user(gid, user.id) if add else store.remove_admin_user(gid, user.id))
        changes.append(user.mention)
    if role:
        await (store.add_admin_role(gid, role.id) if add else store.remove_admin_role(gid, role.id))
        changes.append(role.mention)
    verb = "Added" if add else "Removed"
    await log_action("Admins Updated", f"By: {interaction.user.mention}\n{verb}: {', '.join(changes)}", interaction.guild)
    await reply(interaction, f"{verb} admin: {', '.join(changes)}.")

@config_group.command(name="audit", description="(Admin) Show the most recent audit log entries.")
async def config_audit(interaction: discord.Interaction, limit: app_commands.Range[int, 1, 25] = 10):
    await require_permission(interaction, "admin")
    rows = await bot.store.recent_audit(interaction.guild.id, limit)
    if not rows:
        await reply(interaction, "The audit log is empty.")
        return
    lines = []
    for r in rows:
        target = f" → <@{r['target_id']}>" if r["target_id"] else ""
        actor = f"<@{r['actor_id']}>" if r["actor_id"] else "system"
        lines.append(f"`{fmt_time(r['created_at'])}` **{r['action']}** by {actor}{target}")
    embed = discord.Embed(title="🧾 Audit Log", description="\n".join(lines)[:4000], color=discord.Color.dark_gray(), timestamp=utcnow())
    await reply(interaction, embed=embed)

# ---------- Register groups ----------
bot.tree.add_command(staff_group)
bot.tree.add_command(case_group)
bot.tree.add_command(reminder_group)
bot.tree.add_command(retainer_group)
bot.tree.add_command(job_group)
bot.tree.add_command(application_group)
bot.tree.add_command(config_group)
bot.tree.add_command(feedback_group)
bot.tree.add_command(repair_group)

# ---------- Run ----------
if __name__ == "__main__":
    if not DATABASE_URL:
        print("[WARN] DATABASE_URL not set; the bot will start without persistence.")
    bot.run(BOT_TOKEN)
