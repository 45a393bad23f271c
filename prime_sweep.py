import logging
from dataclasses import dataclass

import prime_clock
from prime_backup import schedule_push
from prime_ports import MembershipRecord, PrimeContext, change_role_best_effort, send_best_effort

logger = logging.getLogger("primebot.sweep")

EXPIRE = "expire"
WARN = "warn"

WARN_DM = (
    "⏳ Your Prime membership expires on **{expiry}** ({days} days left). "
    "Renew before then to keep your role."
)
EXPIRED_DM = "⌛ Your Prime membership has expired and the Prime role was removed. Thanks for being a member!"


@dataclass(frozen=True)
class SweepAction:
    action: str
    user_id: str


def classify(record: MembershipRecord, now: int, warn_window_ms: int) -> str | None:
    if record.expiry_at <= now:
        return EXPIRE
    if record.expiry_at - now <= warn_window_ms and not record.warned:
        return WARN
    return None


def plan_daily_sweep(now: int, members: list[MembershipRecord], warn_window_days: int = 3) -> list[SweepAction]:
    """Pure decision pass: which members are due a warning and which have expired."""
    warn_window_ms = warn_window_days * prime_clock.DAY_MS
    actions = []
    for record in members:
        action = classify(record, now, warn_window_ms)
        if action is not None:
            actions.append(SweepAction(action=action, user_id=record.user_id))
    return actions


async def run_daily_sweep(ctx: PrimeContext, now: int | None = None) -> list[SweepAction]:
    """Plan against a snapshot taken at tick start, then apply each transition on its own.

    A record is re-read under the write lock before it changes, so a renewal
    that lands mid-sweep is not expired or re-warned. One member failing
    never stops the rest.
    """
    now = prime_clock.now_ms() if now is None else now
    warn_window_ms = ctx.warn_window_days * prime_clock.DAY_MS
    planned = plan_daily_sweep(now, ctx.store.list_all(), ctx.warn_window_days)
    applied: list[SweepAction] = []
    for step in planned:
        try:
            if await _apply(ctx, step, now, warn_window_ms):
                applied.append(step)
        except Exception:
            logger.exception("sweep_member_failed user_id=%s action=%s", step.user_id, step.action)
    logger.info(
        "sweep_complete planned=%s expired=%s warned=%s",
        len(planned),
        sum(1 for a in applied if a.action == EXPIRE),
        sum(1 for a in applied if a.action == WARN),
    )
    schedule_push(ctx)
    return applied


async def _apply(ctx: PrimeContext, step: SweepAction, now: int, warn_window_ms: int) -> bool:
    async with ctx.write_lock:
        record = ctx.store.get(step.user_id)
        if record is None or classify(record, now, warn_window_ms) != step.action:
            return False
        if step.action == EXPIRE:
            ctx.store.delete(record.user_id)
        else:
            record.warned = True
            ctx.store.upsert(record)

    if step.action == EXPIRE:
        logger.info("sweep_expired user_id=%s expiry=%s", record.user_id, record.expiry_at)
        await change_role_best_effort(ctx, record.user_id, grant=False)
        await send_best_effort(ctx, record.user_id, EXPIRED_DM)
    else:
        logger.info("sweep_warned user_id=%s expiry=%s", record.user_id, record.expiry_at)
        await send_best_effort(
            ctx,
            record.user_id,
            WARN_DM.format(
                expiry=prime_clock.fmt_expiry(record.expiry_at),
                days=prime_clock.remaining_days(record.expiry_at, now),
            ),
        )
    return True
