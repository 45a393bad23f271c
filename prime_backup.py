import asyncio
import json
import logging
import sqlite3
import urllib.request

from prime_ports import (
    BackupMember,
    BackupUnavailable,
    MembershipRecord,
    PrimeContext,
    change_role_best_effort,
)

logger = logging.getLogger("primebot.backup")

BACKUP_TIMEOUT_SECONDS = 20


# =========================
# WEBHOOK TRANSPORT
# =========================
def _http_request(url: str, payload: dict | None = None, timeout: float = BACKUP_TIMEOUT_SECONDS) -> str:
    data = None
    headers = {"User-Agent": "primebot/1.0"}
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    req = urllib.request.Request(url, data=data, headers=headers, method="POST" if data else "GET")
    with urllib.request.urlopen(req, timeout=timeout) as response:
        return response.read().decode("utf-8")


def parse_snapshot(payload: object) -> list[BackupMember]:
    """Turn the sheet's `{"members": [...]}` reply into BackupMembers.

    Sheet cells come back loosely typed (numeric ids, float expiries, blank
    rows); anything without a usable id and expiry is skipped.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("members"), list):
        raise BackupUnavailable("backup payload has no members list")
    members: list[BackupMember] = []
    for raw in payload["members"]:
        if not isinstance(raw, dict):
            logger.warning("backup_row_skipped row=%r", raw)
            continue
        user_id = raw.get("userId")
        if isinstance(user_id, float) and user_id.is_integer():
            user_id = int(user_id)
        user_id = str(user_id).strip() if user_id is not None else ""
        try:
            expiry = int(float(raw.get("expiry")))
        except (TypeError, ValueError):
            expiry = None
        if not user_id or expiry is None:
            logger.warning("backup_row_skipped row=%r", raw)
            continue
        nickname = raw.get("nickname")
        members.append(BackupMember(user_id=user_id, expiry=expiry, nickname=str(nickname) if nickname else None))
    return members


class WebhookBackup:
    """BackupPort speaking JSON to a spreadsheet web app: POST replaces the sheet, GET reads it."""

    def __init__(self, url: str, timeout: float = BACKUP_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    async def push(self, members: list[BackupMember]) -> bool:
        payload = {"members": [m.to_wire() for m in members]}
        try:
            await asyncio.to_thread(_http_request, self.url, payload, self.timeout)
        except OSError as exc:
            raise BackupUnavailable(f"push failed: {exc}") from exc
        return True

    async def pull(self) -> list[BackupMember]:
        try:
            text = await asyncio.to_thread(_http_request, self.url, None, self.timeout)
        except OSError as exc:
            raise BackupUnavailable(f"pull failed: {exc}") from exc
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise BackupUnavailable("backup reply is not JSON") from exc
        return parse_snapshot(payload)


# =========================
# RECONCILER
# =========================
def build_snapshot(ctx: PrimeContext) -> list[BackupMember]:
    snapshot = []
    for record in ctx.store.list_all():
        nickname = ctx.name_resolver(record.user_id) if ctx.name_resolver else None
        snapshot.append(BackupMember(user_id=record.user_id, expiry=record.expiry_at, nickname=nickname))
    return snapshot


async def push_backup(ctx: PrimeContext) -> bool:
    if ctx.backup is None:
        return False
    async with ctx.push_lock:
        snapshot = build_snapshot(ctx)
        try:
            await ctx.backup.push(snapshot)
        except BackupUnavailable as exc:
            logger.warning("backup_push_failed members=%s error=%s", len(snapshot), exc)
            return False
    logger.info("backup_pushed members=%s", len(snapshot))
    return True


def schedule_push(ctx: PrimeContext) -> asyncio.Task | None:
    """Fire-and-forget push; the caller's outcome never depends on it."""
    if ctx.backup is None:
        return None
    task = asyncio.create_task(push_backup(ctx))
    ctx.pending_tasks.add(task)
    task.add_done_callback(ctx.pending_tasks.discard)
    return task


async def reconcile_on_startup(ctx: PrimeContext) -> int:
    """Restore from backup, but only into an empty store. Returns how many members were restored."""
    if ctx.backup is None:
        logger.info("backup_restore_skipped reason=no_backup")
        return 0
    restored: list[str] = []
    async with ctx.write_lock:
        existing = ctx.store.count()
        if existing:
            logger.info("backup_restore_skipped reason=store_not_empty members=%s", existing)
            return 0
        try:
            snapshot = await ctx.backup.pull()
        except BackupUnavailable as exc:
            logger.warning("backup_pull_failed error=%s", exc)
            return 0
        for member in snapshot:
            try:
                ctx.store.upsert(MembershipRecord(user_id=member.user_id, expiry_at=member.expiry, warned=False))
            except sqlite3.Error:
                logger.exception("backup_restore_row_failed user_id=%s", member.user_id)
                continue
            restored.append(member.user_id)
    for user_id in restored:
        await change_role_best_effort(ctx, user_id, grant=True)
    logger.info("backup_restored members=%s", len(restored))
    return len(restored)
