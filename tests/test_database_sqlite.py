"""SQLite fallback: placeholder translation, migrations and transaction semantics."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from ticketcore.core.config import Settings
from ticketcore.core.database import Database, _prepare_sqlite
from ticketcore.core.errors import TransactionTimeoutError


@pytest.fixture
def anyio_backend():
    return "asyncio"


def test_sqlite_mode_detection():
    test_db = Database()
    test_db._settings = Settings(DB_HOST=None, DB_USER=None, DB_PASSWORD=None, DB_NAME=None)
    test_db._use_sqlite = test_db._should_use_sqlite()
    assert test_db.is_sqlite() is True


def test_mysql_mode_detection():
    test_db = Database()
    test_db._settings = Settings(
        DB_HOST="localhost", DB_USER="ticketcore", DB_PASSWORD="secret", DB_NAME="ticketcore"
    )
    test_db._use_sqlite = test_db._should_use_sqlite()
    assert test_db.is_sqlite() is False


def test_prepare_sqlite_translates_placeholders_and_values():
    moment = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    sql, params = _prepare_sqlite(
        "SELECT * FROM tickets WHERE id = %s AND updated_at < %s FOR UPDATE",
        (7, moment),
    )
    assert sql == "SELECT * FROM tickets WHERE id = ? AND updated_at < ?"
    assert params == (7, "2024-05-01 12:30:00.000000")

    _, params = _prepare_sqlite("UPDATE tickets SET exclude_from_autoclose = %s", (True,))
    assert params == (1,)


def test_adapt_sql_for_sqlite_rewrites_mysql_ddl():
    adapted = Database()._adapt_sql_for_sqlite(
        "CREATE TABLE t (id BIGINT AUTO_INCREMENT PRIMARY KEY, bits BIGINT UNSIGNED NOT NULL, "
        "payload JSON NULL, at DATETIME NOT NULL) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;"
    )
    assert "INTEGER PRIMARY KEY AUTOINCREMENT" in adapted
    assert "UNSIGNED" not in adapted
    assert "ENGINE" not in adapted
    assert "JSON" not in adapted
    assert "DATETIME" not in adapted


@pytest.mark.anyio
async def test_migrations_create_every_table(sqlite_db):
    rows = await sqlite_db.fetch_all("SELECT name FROM sqlite_master WHERE type = 'table'")
    names = {row["name"] for row in rows}
    assert {
        "guilds",
        "guild_roles",
        "guild_role_members",
        "guild_member_permissions",
        "tickets",
        "ticket_participants",
        "ticket_lifecycle_events",
        "migrations",
    } <= names

    applied = await sqlite_db.fetch_all("SELECT name FROM migrations ORDER BY name")
    assert [row["name"] for row in applied] == [
        "001_guilds.sql",
        "002_guild_roles.sql",
        "003_tickets.sql",
    ]

    await sqlite_db.run_migrations()
    again = await sqlite_db.fetch_all("SELECT name FROM migrations")
    assert len(again) == 3


async def _insert_guild(tx, guild_id):
    now = datetime.now(timezone.utc)
    await tx.execute(
        "INSERT INTO guilds (id, owner_discord_id, max_tickets_per_user, total_tickets, created_at, updated_at) "
        "VALUES (%s, %s, 0, 0, %s, %s)",
        (guild_id, "100", now, now),
    )


@pytest.mark.anyio
async def test_transaction_commits_on_success(sqlite_db):
    async def _work(tx):
        await _insert_guild(tx, "g1")
        return "done"

    assert await sqlite_db.run_in_transaction(_work) == "done"
    row = await sqlite_db.fetch_one("SELECT id FROM guilds WHERE id = %s", ("g1",))
    assert row == {"id": "g1"}


@pytest.mark.anyio
async def test_transaction_rolls_back_on_error(sqlite_db):
    async def _work(tx):
        await _insert_guild(tx, "g1")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await sqlite_db.run_in_transaction(_work)

    assert await sqlite_db.fetch_one("SELECT id FROM guilds WHERE id = %s", ("g1",)) is None


@pytest.mark.anyio
async def test_transaction_rolls_back_on_timeout(sqlite_db):
    async def _work(tx):
        await _insert_guild(tx, "g1")
        await asyncio.sleep(1)

    with pytest.raises(TransactionTimeoutError):
        await sqlite_db.run_in_transaction(_work, timeout=0.05)

    assert await sqlite_db.fetch_one("SELECT id FROM guilds WHERE id = %s", ("g1",)) is None


@pytest.mark.anyio
async def test_execute_reports_affected_rows(sqlite_db):
    async def _work(tx):
        await _insert_guild(tx, "g1")
        await _insert_guild(tx, "g2")
        return await tx.execute("UPDATE guilds SET total_tickets = 5 WHERE owner_discord_id = %s", ("100",))

    assert await sqlite_db.run_in_transaction(_work) == 2
