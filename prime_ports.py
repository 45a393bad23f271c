import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

logger = logging.getLogger("primebot.delivery")


# =========================
# RECORDS
# =========================
@dataclass
class MembershipRecord:
    user_id: str
    expiry_at: int  # epoch ms
    warned: bool = False


@dataclass
class AllocationRecord:
    year: int
    month: int
    amount: int
    id: int | None = None


@dataclass
class BackupMember:
    user_id: str
    expiry: int
    nickname: str | None = None

    def to_wire(self) -> dict[str, object]:
        payload: dict[str, object] = {"userId": self.user_id, "expiry": self.expiry}
        if self.nickname:
            payload["nickname"] = self.nickname
        return payload


# =========================
# ERRORS
# =========================
class PrimeError(Exception):
    pass


class InvalidArgument(PrimeError):
    """A month or day count that is not a positive integer."""


class TransientDeliveryFailure(PrimeError):
    """A role change or direct message could not be delivered."""


class BackupUnavailable(PrimeError):
    """The remote backup could not be reached or returned garbage."""


# =========================
# PORTS
# =========================
class MembershipStore(Protocol):
    def get(self, user_id: str) -> MembershipRecord | None: ...
    def upsert(self, record: MembershipRecord) -> None: ...
    def delete(self, user_id: str) -> None: ...
    def list_all(self) -> list[MembershipRecord]: ...  # soonest expiry first
    def count(self) -> int: ...
    def insert_allocation(self, allocation: AllocationRecord) -> None: ...
    def query_allocations(
        self,
        start: tuple[int, int] | None = None,
        end: tuple[int, int] | None = None,
    ) -> list[AllocationRecord]: ...


class RolePort(Protocol):
    async def grant(self, user_id: str) -> bool: ...
    async def revoke(self, user_id: str) -> bool: ...


class NotificationPort(Protocol):
    async def send(self, user_id: str, message: str) -> bool: ...


class BackupPort(Protocol):
    async def push(self, members: list[BackupMember]) -> bool: ...
    async def pull(self) -> list[BackupMember]: ...


# =========================
# CONTEXT
# =========================
@dataclass
class PrimeContext:
    """Everything the core needs, built once at startup and passed in explicitly."""
    store: MembershipStore
    roles: RolePort | None = None
    notifier: NotificationPort | None = None
    backup: BackupPort | None = None
    price_per_month: int = 1
    warn_window_days: int = 3
    name_resolver: Callable[[str], str | None] | None = None
    # serialize store read-modify-write so two purchases for one user can't lose an update
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # one push in flight at a time; the snapshot is taken once the lock is held
    push_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending_tasks: set[asyncio.Task] = field(default_factory=set)

    async def drain(self):
        while self.pending_tasks:
            await asyncio.gather(*list(self.pending_tasks), return_exceptions=True)


# =========================
# BEST-EFFORT DELIVERY
# =========================
async def send_best_effort(ctx: PrimeContext, user_id: str, message: str) -> bool:
    if ctx.notifier is None:
        return False
    try:
        delivered = await ctx.notifier.send(user_id, message)
    except TransientDeliveryFailure as exc:
        logger.warning("notify_failed user_id=%s error=%s", user_id, exc)
        return False
    if not delivered:
        logger.warning("notify_failed user_id=%s", user_id)
    return bool(delivered)


async def change_role_best_effort(ctx: PrimeContext, user_id: str, grant: bool) -> bool:
    if ctx.roles is None:
        return False
    op = "grant" if grant else "revoke"
    try:
        if grant:
            changed = await ctx.roles.grant(user_id)
        else:
            changed = await ctx.roles.revoke(user_id)
    except TransientDeliveryFailure as exc:
        logger.warning("role_%s_failed user_id=%s error=%s", op, user_id, exc)
        return False
    if not changed:
        logger.warning("role_%s_failed user_id=%s", op, user_id)
    return bool(changed)
