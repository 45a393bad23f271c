"""
Backup reconciler and the spreadsheet webhook transport.
"""
import asyncio
import json

import pytest

import prime_backup
from prime_backup import WebhookBackup, parse_snapshot, push_backup, reconcile_on_startup, schedule_push
from prime_clock import DAY_MS
from prime_expiry import PurchaseRequest, handle_purchase
from prime_ports import BackupMember, BackupUnavailable, MembershipRecord
from tests.fakes import FakeBackup, FakeRoles


# ── Reconcile on startup ─────────────────────────────────────────────


async def test_restore_into_empty_store(ctx, store, roles, now):
    ctx.backup = FakeBackup(
        members=[
            BackupMember(user_id="1", expiry=now + 10 * DAY_MS),
            BackupMember(user_id="2", expiry=now + 40 * DAY_MS, nickname="Goki"),
        ]
    )

    restored = await reconcile_on_startup(ctx)

    assert restored == 2
    assert store.get("1") == MembershipRecord(user_id="1", expiry_at=now + 10 * DAY_MS, warned=False)
    assert store.get("2").warned is False
    assert sorted(roles.granted) == ["1", "2"]


async def test_non_empty_store_is_left_alone(ctx, store, roles, now):
    store.upsert(MembershipRecord(user_id="local", expiry_at=now + DAY_MS, warned=True))
    ctx.backup = FakeBackup(members=[BackupMember(user_id="remote", expiry=now + 99 * DAY_MS)])

    assert await reconcile_on_startup(ctx) == 0
    assert ctx.backup.pulls == 0
    assert store.list_all() == [MembershipRecord(user_id="local", expiry_at=now + DAY_MS, warned=True)]
    assert roles.granted == []


async def test_pull_failure_leaves_store_empty(ctx, store):
    ctx.backup = FakeBackup(fail=True)
    assert await reconcile_on_startup(ctx) == 0
    assert store.count() == 0


async def test_restore_without_backup_configured(ctx, store):
    ctx.backup = None
    assert await reconcile_on_startup(ctx) == 0
    assert store.count() == 0


async def test_role_failure_during_restore_is_isolated(ctx, store, now):
    ctx.roles = FakeRoles(fail_for={"1"})
    ctx.backup = FakeBackup(
        members=[BackupMember(user_id="1", expiry=now + DAY_MS), BackupMember(user_id="2", expiry=now + DAY_MS)]
    )

    assert await reconcile_on_startup(ctx) == 2
    assert ctx.roles.granted == ["2"]
    assert store.count() == 2


# ── Push ─────────────────────────────────────────────────────────────


async def test_push_sends_full_membership(ctx, store, backup, now):
    store.upsert(MembershipRecord(user_id="1", expiry_at=now + DAY_MS, warned=True))
    store.upsert(MembershipRecord(user_id="2", expiry_at=now + 2 * DAY_MS))
    ctx.name_resolver = lambda user_id: "Goki" if user_id == "2" else None

    assert await push_backup(ctx) is True
    assert backup.pushes[-1] == [
        BackupMember(user_id="1", expiry=now + DAY_MS),
        BackupMember(user_id="2", expiry=now + 2 * DAY_MS, nickname="Goki"),
    ]


async def test_push_failure_is_not_fatal(ctx, store, now):
    ctx.backup = FakeBackup(fail=True)
    store.upsert(MembershipRecord(user_id="1", expiry_at=now + DAY_MS))

    assert await push_backup(ctx) is False
    assert store.count() == 1


async def test_schedule_push_runs_in_background(ctx, backup):
    task = schedule_push(ctx)
    assert task in ctx.pending_tasks
    await ctx.drain()
    assert ctx.pending_tasks == set()
    assert backup.pushes == [[]]


async def test_schedule_push_without_backup(ctx):
    ctx.backup = None
    assert schedule_push(ctx) is None


# ── Snapshot parsing ─────────────────────────────────────────────────


def test_parse_snapshot_coerces_sheet_cells():
    members = parse_snapshot(
        {
            "members": [
                {"userId": 1234.0, "expiry": 1700000000000.0},
                {"userId": "5678", "expiry": "1700000000001", "nickname": "Goki"},
                {"userId": "", "expiry": 1},
                {"userId": "9", "expiry": ""},
                {"userId": "10"},
                "garbage",
            ]
        }
    )
    assert members == [
        BackupMember(user_id="1234", expiry=1700000000000),
        BackupMember(user_id="5678", expiry=1700000000001, nickname="Goki"),
    ]


@pytest.mark.parametrize("payload", [None, [], {}, {"members": "nope"}])
def test_parse_snapshot_rejects_bad_payload(payload):
    with pytest.raises(BackupUnavailable):
        parse_snapshot(payload)


def test_wire_shape_omits_missing_nickname():
    assert BackupMember(user_id="1", expiry=5).to_wire() == {"userId": "1", "expiry": 5}
    assert BackupMember(user_id="1", expiry=5, nickname="G").to_wire() == {"userId": "1", "expiry": 5, "nickname": "G"}


# ── Webhook transport ────────────────────────────────────────────────


async def test_webhook_push_posts_members(monkeypatch):
    calls = []

    def fake_request(url, payload=None, timeout=20):
        calls.append((url, payload))
        return "Backup complete"

    monkeypatch.setattr(prime_backup, "_http_request", fake_request)

    ok = await WebhookBackup("https://sheet.example/exec").push([BackupMember(user_id="1", expiry=5)])

    assert ok is True
    assert calls == [("https://sheet.example/exec", {"members": [{"userId": "1", "expiry": 5}]})]


async def test_webhook_pull_parses_reply(monkeypatch):
    reply = json.dumps({"members": [{"userId": 42, "expiry": 99}]})
    monkeypatch.setattr(prime_backup, "_http_request", lambda url, payload=None, timeout=20: reply)

    assert await WebhookBackup("https://sheet.example/exec").pull() == [BackupMember(user_id="42", expiry=99)]


async def test_webhook_network_error_is_backup_unavailable(monkeypatch):
    def offline(url, payload=None, timeout=20):
        raise OSError("connection refused")

    monkeypatch.setattr(prime_backup, "_http_request", offline)
    hook = WebhookBackup("https://sheet.example/exec")

    with pytest.raises(BackupUnavailable):
        await hook.push([])
    with pytest.raises(BackupUnavailable):
        await hook.pull()


async def test_webhook_non_json_reply(monkeypatch):
    monkeypatch.setattr(prime_backup, "_http_request", lambda url, payload=None, timeout=20: "<html>login</html>")
    with pytest.raises(BackupUnavailable):
        await WebhookBackup("https://sheet.example/exec").pull()


class SlowFirstBackup(FakeBackup):
    """The first push stalls so a later push would overtake it without ordering."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def push(self, members):
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(0.2)
        return await super().push(members)


async def test_pushes_land_in_order_and_last_one_is_current(ctx, store, now):
    ctx.backup = SlowFirstBackup()

    await handle_purchase(ctx, PurchaseRequest(action="add", user_id="1", amount=1), now=now)
    await asyncio.sleep(0.05)
    await handle_purchase(ctx, PurchaseRequest(action="add", user_id="2", amount=1), now=now)
    await ctx.drain()

    assert [m.user_id for m in ctx.backup.pushes[-1]] == sorted(r.user_id for r in store.list_all())
    assert [len(p) for p in ctx.backup.pushes] == [1, 2]
