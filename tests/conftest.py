import fnmatch
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DB_HOST", "")
os.environ.setdefault("DB_USER", "")
os.environ.setdefault("DB_PASSWORD", "")
os.environ.setdefault("DB_NAME", "")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("DEV_PERMISSIONS_HEX", "")

from ticketcore.core.database import Database  # noqa: E402
from ticketcore.repositories import guilds as guild_repo  # noqa: E402
from ticketcore.repositories import lifecycle_events as event_repo  # noqa: E402
from ticketcore.repositories import member_permissions as grant_repo  # noqa: E402
from ticketcore.repositories import role_members as membership_repo  # noqa: E402
from ticketcore.repositories import roles as role_repo  # noqa: E402
from ticketcore.repositories import tickets as ticket_repo  # noqa: E402
from ticketcore.services import permissions as permission_service  # noqa: E402
from ticketcore.services import ticket_lifecycle  # noqa: E402

_DB_MODULES = (
    guild_repo,
    event_repo,
    grant_repo,
    membership_repo,
    role_repo,
    ticket_repo,
    ticket_lifecycle,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def sqlite_db(tmp_path, monkeypatch):
    """Fresh migrated SQLite database wired into every repository module."""

    test_db = Database()
    test_db._use_sqlite = True
    test_db._get_sqlite_path = lambda: tmp_path / "ticketcore-test.db"
    await test_db.run_migrations()
    for module in _DB_MODULES:
        monkeypatch.setattr(module, "db", test_db)
    try:
        yield test_db
    finally:
        await test_db.disconnect()


@pytest.fixture
def resolver():
    """Uncached resolver installed as the actor context lookup."""

    instance = permission_service.PermissionResolver()
    permission_service.configure_resolver(instance)
    try:
        yield instance
    finally:
        permission_service.configure_resolver(None)


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio calls the cache makes."""

    def __init__(self):
        self.store = {}
        self.expiry = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.expiry[key] = ex

    async def mget(self, *keys):
        return [self.store.get(key) for key in keys]

    async def incr(self, key):
        value = int(self.store.get(key) or 0) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self.expiry[key] = seconds
        return key in self.store

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.expiry.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match=None, count=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatch(key, match):
                yield key


@pytest.fixture
def fake_redis():
    return FakeRedis()
