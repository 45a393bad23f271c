from dotenv import load_dotenv
import os
import asyncio
import logging
import logging.handlers
from datetime import time as dtime, timezone
from pathlib import Path
import discord
from discord.ext import commands, tasks

import prime_clock
from keep_alive import keep_alive
from prime_backup import WebhookBackup, push_backup, reconcile_on_startup
from prime_expiry import PurchaseRequest, handle_purchase, list_members
from prime_ports import InvalidArgument, PrimeContext, TransientDeliveryFailure
from prime_revenue import RevenueFilter, format_revenue_report, query_revenue
from prime_store import SqliteMembershipStore
from prime_sweep import run_daily_sweep

load_dotenv()  # loads variables from .env into the process environment

logger = logging.getLogger("primebot")


def configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_level = getattr(logging, log_level_name, logging.INFO)
    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    stdout_handler = logging.StreamHandler()
    stdout_handler.setFormatter(formatter)
    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / "primebot.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)
    root_logger.addHandler(stdout_handler)
    root_logger.addHandler(file_handler)
    logger.info("logging_configured level=%s", logging.getLevelName(log_level))


def interaction_log_context(interaction: discord.Interaction) -> dict[str, object]:
    return {
        "guild_id": getattr(interaction.guild, "id", None),
        "channel_id": getattr(interaction.channel, "id", None),
        "user_id": getattr(interaction.user, "id", None),
        "interaction": getattr(getattr(interaction, "command", None), "qualified_name", None),
    }


def register_loop_exception_handler(loop: asyncio.AbstractEventLoop) -> None:
    if getattr(loop, "_primebot_exception_handler_installed", False):
        return
    default_handler = loop.get_exception_handler()

    def _loop_exception_handler(active_loop: asyncio.AbstractEventLoop, context: dict[str, object]) -> None:
        message = context.get("message", "Unhandled asyncio loop exception")
        exception = context.get("exception")
        if exception is not None:
            logger.exception("loop_exception message=%s context=%r", message, context, exc_info=exception)
        else:
            logger.error("loop_exception message=%s context=%r", message, context)
        if default_handler is not None:
            default_handler(active_loop, context)
        else:
            active_loop.default_exception_handler(context)

    loop.set_exception_handler(_loop_exception_handler)
    setattr(loop, "_primebot_exception_handler_installed", True)
    logger.info("loop_exception_handler_registered")


configure_logging()


def env_int(name: str, default: int | None = None) -> int | None:
    value = os.getenv(name)
    try:
        return int(value) if value else default
    except ValueError:
        logger.warning("config_invalid_int name=%s value=%r", name, value)
        return default


# =========================
# CONFIG
# =========================
TOKEN = os.getenv("DISCORD_TOKEN")
if not TOKEN:
    raise RuntimeError("DISCORD_TOKEN not found. Check your .env file and WorkingDirectory.")
GUILD_ID = env_int("PRIME_GUILD_ID")
ROLE_ID = env_int("PRIME_ROLE_ID")
if not GUILD_ID or not ROLE_ID:
    raise RuntimeError("PRIME_GUILD_ID and PRIME_ROLE_ID must be set.")
# Commands are only accepted here when set
ADMIN_CHANNEL_ID = env_int("PRIME_ADMIN_CHANNEL_ID")
BACKUP_WEBHOOK_URL = os.getenv("BACKUP_WEBHOOK_URL", "").strip() or None
PRICE_PER_MONTH = env_int("PRIME_PRICE_GP", 1)
WARN_DAYS = env_int("PRIME_WARN_DAYS", 3)
SWEEP_HOUR_UTC = min(max(env_int("PRIME_SWEEP_HOUR_UTC", 0), 0), 23)
DB_PATH = os.getenv("PRIME_DB_PATH", os.path.join("db", "prime.db"))
KEEP_ALIVE_PORT = env_int("KEEP_ALIVE_PORT")

# =========================
# DISCORD SETUP
# =========================
intents = discord.Intents.default()
intents.members = True  # needed to resolve members for role changes and nicknames
bot = commands.Bot(command_prefix="!", intents=intents)


# =========================
# DISCORD ADAPTERS
# =========================
async def resolve_member(user_id: str) -> discord.Member | None:
    guild = bot.get_guild(GUILD_ID)
    if guild is None:
        return None
    member = guild.get_member(int(user_id))
    if member is not None:
        return member
    try:
        return await guild.fetch_member(int(user_id))
    except (discord.NotFound, discord.Forbidden, discord.HTTPException):
        return None


class DiscordRoles:
    async def _role(self) -> discord.Role | None:
        guild = bot.get_guild(GUILD_ID)
        return guild.get_role(ROLE_ID) if guild is not None else None

    async def grant(self, user_id: str) -> bool:
        member = await resolve_member(user_id)
        role = await self._role()
        if member is None or role is None:
            return False
        if role in member.roles:
            return True
        try:
            await member.add_roles(role, reason="Prime membership active")
        except (discord.Forbidden, discord.HTTPException) as exc:
            raise TransientDeliveryFailure(str(exc)) from exc
        return True

    async def revoke(self, user_id: str) -> bool:
        member = await resolve_member(user_id)
        role = await self._role()
        if member is None or role is None:
            return False
        if role not in member.roles:
            return True
        try:
            await member.remove_roles(role, reason="Prime membership ended")
        except (discord.Forbidden, discord.HTTPException) as exc:
            raise TransientDeliveryFailure(str(exc)) from exc
        return True


class DiscordDirectMessages:
    async def send(self, user_id: str, message: str) -> bool:
        try:
            user = bot.get_user(int(user_id)) or await bot.fetch_user(int(user_id))
            dm_channel = user.dm_channel or await user.create_dm()
            await dm_channel.send(message)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as exc:
            raise TransientDeliveryFailure(str(exc)) from exc
        return True


def member_display_name(user_id: str) -> str | None:
    guild = bot.get_guild(GUILD_ID)
    member = guild.get_member(int(user_id)) if guild is not None else None
    return member.display_name if member is not None else None


store = SqliteMembershipStore(DB_PATH)
prime_ctx = PrimeContext(
    store=store,
    roles=DiscordRoles(),
    notifier=DiscordDirectMessages(),
    backup=WebhookBackup(BACKUP_WEBHOOK_URL) if BACKUP_WEBHOOK_URL else None,
    price_per_month=PRICE_PER_MONTH,
    warn_window_days=WARN_DAYS,
    name_resolver=member_display_name,
)


# =========================
# DAILY SWEEP
# =========================
@tasks.loop(time=dtime(hour=SWEEP_HOUR_UTC, minute=0, tzinfo=timezone.utc))
async def daily_prime_sweep():
    actions = await run_daily_sweep(prime_ctx)
    logger.info("daily_sweep_done actions=%s", len(actions))


@daily_prime_sweep.error
async def daily_prime_sweep_error(exc: BaseException):
    logger.exception("daily_sweep_failed", exc_info=exc)


# =========================
# COMMAND HELPERS
# =========================
async def ensure_admin_channel(interaction: discord.Interaction) -> bool:
    if interaction.guild is None or interaction.guild.id != GUILD_ID:
        await interaction.response.send_message("This command only works in the Prime server.", ephemeral=True)
        return False
    if ADMIN_CHANNEL_ID and getattr(interaction.channel, "id", None) != ADMIN_CHANNEL_ID:
        await interaction.response.send_message(
            f"Prime commands can only be used in <#{ADMIN_CHANNEL_ID}>.",
            ephemeral=True,
        )
        return False
    return True


async def run_membership_command(interaction: discord.Interaction, action: str, user: discord.Member, amount: int | None = None):
    if not await ensure_admin_channel(interaction):
        return
    await interaction.response.defer()
    try:
        result = await handle_purchase(prime_ctx, PurchaseRequest(action=action, user_id=str(user.id), amount=amount))
    except InvalidArgument as exc:
        await interaction.followup.send(f"❌ {exc}", ephemeral=True)
        return
    logger.info("prime_command action=%s target=%s found=%s context=%r", action, user.id, result.found, interaction_log_context(interaction))
    if not result.found:
        await interaction.followup.send(f"{user.mention} has no Prime membership on record.")
        return
    if action == "remove":
        await interaction.followup.send(f"🗑️ Removed Prime membership for {user.mention}.")
        return
    expiry = prime_clock.fmt_expiry(result.record.expiry_at)
    if action == "check":
        await interaction.followup.send(
            f"{user.mention} — Prime until **{expiry}** ({result.remaining_days} days remaining)"
            f"{' · warned' if result.record.warned else ''}."
        )
        return
    await interaction.followup.send(
        f"✅ {user.mention} is Prime until **{expiry}** ({result.remaining_days} days remaining)."
    )


# =========================
# COMMANDS (slash)
# =========================
@bot.slash_command(name="primeadd", description="Add months of Prime to a member.")
@discord.default_permissions(manage_roles=True)
@discord.guild_only()
async def primeadd(
    interaction: discord.Interaction,
    user: discord.Option(discord.Member, "Member receiving Prime."),
    months: discord.Option(int, "Months to add.", min_value=1),
):
    await run_membership_command(interaction, "add", user, months)


@bot.slash_command(name="primeset", description="Set a member's Prime to expire a number of days from now.")
@discord.default_permissions(manage_roles=True)
@discord.guild_only()
async def primeset(
    interaction: discord.Interaction,
    user: discord.Option(discord.Member, "Member to update."),
    days: discord.Option(int, "Days from now.", min_value=1),
):
    await run_membership_command(interaction, "set", user, days)


@bot.slash_command(name="primeremove", description="Remove a member's Prime membership.")
@discord.default_permissions(manage_roles=True)
@discord.guild_only()
async def primeremove(interaction: discord.Interaction, user: discord.Option(discord.Member, "Member to remove.")):
    await run_membership_command(interaction, "remove", user)


@bot.slash_command(name="primecheck", description="Show when a member's Prime expires.")
@discord.default_permissions(manage_roles=True)
@discord.guild_only()
async def primecheck(interaction: discord.Interaction, user: discord.Option(discord.Member, "Member to look up.")):
    await run_membership_command(interaction, "check", user)


@bot.slash_command(name="primelist", description="List every Prime member by expiry.")
@discord.default_permissions(manage_roles=True)
@discord.guild_only()
async def primelist(interaction: discord.Interaction):
    if not await ensure_admin_channel(interaction):
        return
    rows = list_members(prime_ctx)
    if not rows:
        await interaction.response.send_message("No Prime members on record.")
        return
    lines = [f"**Prime members ({len(rows)})**"]
    for record, days in rows:
        lines.append(f"- <@{record.user_id}> — {prime_clock.fmt_expiry(record.expiry_at)} ({days}d)")
    # Discord caps messages at 2000 chars
    chunk: list[str] = []
    first = True
    for line in lines:
        if sum(len(x) + 1 for x in chunk) + len(line) > 1900:
            if first:
                await interaction.response.send_message("\n".join(chunk))
                first = False
            else:
                await interaction.followup.send("\n".join(chunk))
            chunk = []
        chunk.append(line)
    if first:
        await interaction.response.send_message("\n".join(chunk))
    else:
        await interaction.followup.send("\n".join(chunk))


@bot.slash_command(name="primerevenue", description="Show Prime revenue by month.")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def primerevenue(
    interaction: discord.Interaction,
    year: discord.Option(int, "Year (single month, or range start).", required=False, default=None),
    month: discord.Option(int, "Month 1-12 (single month, or range start).", min_value=1, max_value=12, required=False, default=None),
    to_year: discord.Option(int, "Range end year.", required=False, default=None),
    to_month: discord.Option(int, "Range end month 1-12.", min_value=1, max_value=12, required=False, default=None),
):
    if not await ensure_admin_channel(interaction):
        return
    try:
        if year is None and month is None:
            revenue_filter = RevenueFilter()
        elif year is None or month is None:
            raise InvalidArgument("provide both year and month")
        elif to_year is None and to_month is None:
            revenue_filter = RevenueFilter.single(year, month)
        elif to_year is None or to_month is None:
            raise InvalidArgument("provide both to_year and to_month for a range")
        else:
            revenue_filter = RevenueFilter.between((year, month), (to_year, to_month))
    except InvalidArgument as exc:
        await interaction.response.send_message(f"❌ {exc}", ephemeral=True)
        return
    totals = query_revenue(prime_ctx, revenue_filter)
    await interaction.response.send_message(format_revenue_report(totals))


@bot.slash_command(name="primebackup", description="Push the Prime member list to the backup sheet now.")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def primebackup(interaction: discord.Interaction):
    if not await ensure_admin_channel(interaction):
        return
    if prime_ctx.backup is None:
        await interaction.response.send_message("No backup webhook is configured.", ephemeral=True)
        return
    await interaction.response.defer(ephemeral=True)
    ok = await push_backup(prime_ctx)
    await interaction.followup.send("✅ Backup complete." if ok else "⚠️ Backup failed, check the logs.", ephemeral=True)


@bot.slash_command(name="primerestore", description="Restore Prime members from the backup sheet (empty database only).")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def primerestore(interaction: discord.Interaction):
    if not await ensure_admin_channel(interaction):
        return
    if prime_ctx.backup is None:
        await interaction.response.send_message("No backup webhook is configured.", ephemeral=True)
        return
    await interaction.response.defer(ephemeral=True)
    restored = await reconcile_on_startup(prime_ctx)
    if restored:
        await interaction.followup.send(f"✅ Restored {restored} members from backup.", ephemeral=True)
    else:
        await interaction.followup.send(
            "Nothing restored. The database must be empty and the backup reachable.",
            ephemeral=True,
        )


@bot.slash_command(name="primehelp", description="Show all Prime bot commands.")
async def primehelp(interaction: discord.Interaction):
    command_lines = [
        "**Prime Bot Commands**",
        "- `/primeadd <user> <months>` — Add months of Prime.",
        "- `/primeset <user> <days>` — Set Prime to expire N days from now.",
        "- `/primeremove <user>` — Remove a member's Prime.",
        "- `/primecheck <user>` — Show a member's expiry.",
        "- `/primelist` — List every Prime member.",
        "- `/primerevenue [year month [to_year to_month]]` — Revenue by month.",
        "- `/primebackup` — Push members to the backup sheet.",
        "- `/primerestore` — Restore members from the backup sheet.",
        "- `/primehelp` — Show this help message.",
    ]
    await interaction.response.send_message("\n".join(command_lines), ephemeral=True)


# =========================
# STARTUP
# =========================
@bot.event
async def on_ready():
    register_loop_exception_handler(asyncio.get_running_loop())
    store.init_db()
    try:
        await bot.sync_commands()
    except (discord.HTTPException, discord.Forbidden):
        logger.warning("command_sync_failed")
    await reconcile_on_startup(prime_ctx)
    if not daily_prime_sweep.is_running():
        daily_prime_sweep.start()
    logger.info("bot_ready user=%s user_id=%s", bot.user, bot.user.id)


if __name__ == "__main__":
    if KEEP_ALIVE_PORT:
        keep_alive(KEEP_ALIVE_PORT)
    bot.run(TOKEN)
