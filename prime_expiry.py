import logging
from dataclasses import dataclass, field

import prime_clock
from prime_backup import schedule_push
from prime_ports import (
    AllocationRecord,
    InvalidArgument,
    MembershipRecord,
    PrimeContext,
    change_role_best_effort,
    send_best_effort,
)

logger = logging.getLogger("primebot.expiry")

ACTIONS = ("add", "set", "remove", "check")

PURCHASE_DM = "✅ Your Prime membership is active until **{expiry}** ({days} days remaining)."
REMOVED_DM = "Your Prime membership has been removed by a moderator."


@dataclass
class ExpiryChange:
    new_expiry_at: int
    warned: bool = False


@dataclass
class PurchaseRequest:
    action: str
    user_id: str
    amount: int | None = None


@dataclass
class PurchaseResult:
    action: str
    user_id: str
    found: bool
    record: MembershipRecord | None = None
    remaining_days: int | None = None
    allocations: list[AllocationRecord] = field(default_factory=list)


def _require_positive(value: object, what: str) -> int:
    # bool is an int subclass; True is not "1 month"
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgument(f"{what} must be a positive integer, got {value!r}")
    return value


# =========================
# CALCULATOR
# =========================
def extend_by_months(current: MembershipRecord | None, months: int, now: int) -> ExpiryChange:
    """Extend an active membership from its expiry, a lapsed or missing one from now."""
    _require_positive(months, "months")
    base = current.expiry_at if current is not None and current.expiry_at > now else now
    return ExpiryChange(new_expiry_at=prime_clock.add_months(base, months), warned=False)


def set_exact_days(now: int, days: int) -> ExpiryChange:
    _require_positive(days, "days")
    return ExpiryChange(new_expiry_at=prime_clock.add_days(now, days), warned=False)


def allocate_revenue(base_date: int, months: int, price_per_month: int) -> list[AllocationRecord]:
    """One allocation per calendar month, starting at base_date's month."""
    _require_positive(months, "months")
    year, month = prime_clock.year_month(base_date)
    allocations = []
    for i in range(months):
        y, m = prime_clock.step_month(year, month, i)
        allocations.append(AllocationRecord(year=y, month=m, amount=price_per_month))
    return allocations


# =========================
# COMMAND HANDLING
# =========================
async def handle_purchase(ctx: PrimeContext, request: PurchaseRequest, now: int | None = None) -> PurchaseResult:
    """Apply one already-parsed membership command against the store.

    Raises InvalidArgument before touching state; every side effect after the
    store write (role, DM, backup push) is best-effort.
    """
    if request.action not in ACTIONS:
        raise InvalidArgument(f"unknown action {request.action!r}")
    if request.action in ("add", "set"):
        _require_positive(request.amount, "months" if request.action == "add" else "days")
    now = prime_clock.now_ms() if now is None else now
    user_id = str(request.user_id)

    if request.action == "check":
        record = ctx.store.get(user_id)
        if record is None:
            return PurchaseResult(action="check", user_id=user_id, found=False)
        return PurchaseResult(
            action="check",
            user_id=user_id,
            found=True,
            record=record,
            remaining_days=prime_clock.remaining_days(record.expiry_at, now),
        )

    if request.action == "remove":
        return await _remove_member(ctx, user_id)

    allocations: list[AllocationRecord] = []
    async with ctx.write_lock:
        current = ctx.store.get(user_id)
        if request.action == "add":
            change = extend_by_months(current, request.amount, now)
            allocations = allocate_revenue(now, request.amount, ctx.price_per_month)
        else:
            change = set_exact_days(now, request.amount)
        record = MembershipRecord(user_id=user_id, expiry_at=change.new_expiry_at, warned=change.warned)
        ctx.store.upsert(record)
        for allocation in allocations:
            ctx.store.insert_allocation(allocation)
    logger.info(
        "membership_%s user_id=%s amount=%s previous_expiry=%s new_expiry=%s",
        request.action,
        user_id,
        request.amount,
        current.expiry_at if current else None,
        record.expiry_at,
    )

    days = prime_clock.remaining_days(record.expiry_at, now)
    await change_role_best_effort(ctx, user_id, grant=True)
    await send_best_effort(ctx, user_id, PURCHASE_DM.format(expiry=prime_clock.fmt_expiry(record.expiry_at), days=days))
    schedule_push(ctx)
    return PurchaseResult(
        action=request.action,
        user_id=user_id,
        found=True,
        record=record,
        remaining_days=days,
        allocations=allocations,
    )


async def _remove_member(ctx: PrimeContext, user_id: str) -> PurchaseResult:
    async with ctx.write_lock:
        record = ctx.store.get(user_id)
        if record is None:
            return PurchaseResult(action="remove", user_id=user_id, found=False)
        ctx.store.delete(user_id)
    logger.info("membership_removed user_id=%s expiry=%s", user_id, record.expiry_at)
    await change_role_best_effort(ctx, user_id, grant=False)
    await send_best_effort(ctx, user_id, REMOVED_DM)
    schedule_push(ctx)
    return PurchaseResult(action="remove", user_id=user_id, found=True, record=record)


def list_members(ctx: PrimeContext, now: int | None = None) -> list[tuple[MembershipRecord, int]]:
    """Every member, soonest expiry first, paired with whole days remaining."""
    now = prime_clock.now_ms() if now is None else now
    return [(r, prime_clock.remaining_days(r.expiry_at, now)) for r in ctx.store.list_all()]
