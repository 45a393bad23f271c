"""
Shared fixtures for the Prime bot tests.

Provides a throwaway SQLite store per test and in-memory fakes for the
role, direct-message and backup ports so nothing touches Discord or HTTP.
"""
from datetime import datetime, timezone

import pytest

from prime_clock import to_epoch_ms
from prime_ports import PrimeContext
from prime_store import SqliteMembershipStore
from tests.fakes import FakeBackup, FakeNotifier, FakeRoles

@pytest.fixture
def now() -> int:
    return to_epoch_ms(datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc))

@pytest.fixture
def store(tmp_path) -> SqliteMembershipStore:
    s = SqliteMembershipStore(str(tmp_path / "db" / "prime.db"))
    s.init_db()
    return s

@pytest.fixture
def roles() -> FakeRoles:
    return FakeRoles()

@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()

@pytest.fixture
def backup() -> FakeBackup:
    return FakeBackup()

@pytest.fixture
async def ctx(store, roles, notifier, backup):
    context = PrimeContext(
        store=store,
        roles=roles,
        notifier=notifier,
        backup=backup,
        price_per_month=25,
        warn_window_days=3,
    )
    yield context
    # let fire-and-forget backup pushes finish inside the test loop
    await context.drain()
