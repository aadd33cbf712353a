from __future__ import annotations

import asyncio
import re
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import aiomysql
import aiosqlite
from loguru import logger

from .config import get_settings
from .errors import TransactionTimeoutError

T = TypeVar("T")

DRIVER_ERRORS: tuple[type[BaseException], ...] = (aiomysql.Error, sqlite3.Error)
INTEGRITY_ERRORS: tuple[type[BaseException], ...] = (aiomysql.IntegrityError, sqlite3.IntegrityError)

_FOR_UPDATE_PATTERN = re.compile(r"\s+FOR\s+UPDATE\b", re.IGNORECASE)


def _sqlite_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat(sep=" ", timespec="microseconds")
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _prepare_sqlite(sql: str, params: tuple | dict | None) -> tuple[str, Any]:
    """Translate the ``%s`` placeholder style used by the repositories to SQLite."""

    sql = _FOR_UPDATE_PATTERN.sub("", sql).replace("%s", "?")
    if params is None:
        return sql, ()
    if isinstance(params, dict):
        return sql, {key: _sqlite_value(value) for key, value in params.items()}
    return sql, tuple(_sqlite_value(value) for value in params)


class Transaction:
    """Connection-bound handle passed to ``Database.run_in_transaction`` callbacks.

    Every statement issued through it belongs to the same transaction; it is
    only valid for the duration of the callback.
    """

    def __init__(self, conn: Any, *, sqlite: bool) -> None:
        self._conn = conn
        self._sqlite = sqlite

    def is_sqlite(self) -> bool:
        return self._sqlite

    async def execute(self, sql: str, params: tuple | dict | None = None) -> int:
        """Run a statement and return the number of affected rows."""

        if self._sqlite:
            sql, params = _prepare_sqlite(sql, params)
            cursor = await self._conn.execute(sql, params)
            return cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
        async with self._conn.cursor() as cursor:
            affected = await cursor.execute(sql, params)
        return int(affected or 0)

    async def execute_returning_lastrowid(
        self, sql: str, params: tuple | dict | None = None
    ) -> int:
        if self._sqlite:
            sql, params = _prepare_sqlite(sql, params)
            cursor = await self._conn.execute(sql, params)
            return cursor.lastrowid if cursor.lastrowid else 0
        async with self._conn.cursor() as cursor:
            await cursor.execute(sql, params)
            last_row_id = cursor.lastrowid
        return int(last_row_id) if last_row_id is not None else 0

    async def fetch_one(self, sql: str, params: tuple | dict | None = None):
        if self._sqlite:
            sql, params = _prepare_sqlite(sql, params)
            cursor = await self._conn.execute(sql, params)
            row = await cursor.fetchone()
            return dict(row) if row else None
        async with self._conn.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(sql, params)
            return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: tuple | dict | None = None):
        if self._sqlite:
            sql, params = _prepare_sqlite(sql, params)
            cursor = await self._conn.execute(sql, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]
        async with self._conn.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(sql, params)
            return await cursor.fetchall()


class Database:
    def __init__(self) -> None:
        self._pool: aiomysql.Pool | None = None
        self._sqlite_conn: aiosqlite.Connection | None = None
        self._sqlite_lock: asyncio.Lock | None = None
        self._settings = get_settings()
        self._use_sqlite = self._should_use_sqlite()

    def _should_use_sqlite(self) -> bool:
        """Determine if SQLite should be used instead of MySQL.

        Returns True if any MySQL config is missing, False otherwise.
        """
        return not all([
            self._settings.database_host,
            self._settings.database_user,
            self._settings.database_name,
        ])

    def _get_sqlite_path(self) -> Path:
        """Get the path to the SQLite database file."""
        if self._settings.sqlite_path:
            return Path(self._settings.sqlite_path).expanduser()
        return Path(__file__).resolve().parent.parent.parent / "ticketcore.db"

    def is_sqlite(self) -> bool:
        """Check if using SQLite instead of MySQL."""
        return self._use_sqlite

    def _split_sql_statements(self, sql: str) -> list[str]:
        """Split raw SQL script content into executable statements.

        Tracks quote and comment state so semicolons inside literals do not
        terminate a statement early.
        """

        statements: list[str] = []
        statement_chars: list[str] = []
        in_single_quote = False
        in_double_quote = False
        i = 0
        length = len(sql)

        while i < length:
            char = sql[i]
            next_char = sql[i + 1] if i + 1 < length else ""

            if not in_single_quote and not in_double_quote:
                if char == "-" and next_char == "-":
                    i += 2
                    while i < length and sql[i] != "\n":
                        i += 1
                    continue
                if char == "/" and next_char == "*":
                    i += 2
                    while i + 1 < length and not (sql[i] == "*" and sql[i + 1] == "/"):
                        i += 1
                    i += 2
                    continue

            if char == "'" and not in_double_quote:
                statement_chars.append(char)
                if in_single_quote:
                    if next_char == "'":
                        statement_chars.append(next_char)
                        i += 2
                        continue
                    in_single_quote = False
                else:
                    in_single_quote = True
                i += 1
                continue

            if char == '"' and not in_single_quote:
                statement_chars.append(char)
                if in_double_quote:
                    if next_char == '"':
                        statement_chars.append(next_char)
                        i += 2
                        continue
                    in_double_quote = False
                else:
                    in_double_quote = True
                i += 1
                continue

            if char == ";" and not in_single_quote and not in_double_quote:
                statement = "".join(statement_chars).strip()
                if statement:
                    statements.append(statement)
                statement_chars = []
                i += 1
                continue

            statement_chars.append(char)
            i += 1

        remaining = "".join(statement_chars).strip()
        if remaining:
            statements.append(remaining)
        return statements

    async def connect(self) -> None:
        if self._pool or self._sqlite_conn:
            return

        if self._use_sqlite:
            db_path = self._get_sqlite_path()
            logger.info("Connecting to SQLite database at {path}", path=str(db_path))
            self._sqlite_conn = await aiosqlite.connect(str(db_path), isolation_level=None)
            self._sqlite_conn.row_factory = aiosqlite.Row
            self._sqlite_lock = asyncio.Lock()
            await self._sqlite_conn.execute("PRAGMA foreign_keys = ON")
        else:
            logger.info("Connecting to MySQL at {host}", host=self._settings.database_host)
            self._pool = await aiomysql.create_pool(
                host=self._settings.database_host,
                user=self._settings.database_user,
                password=self._settings.database_password or "",
                db=self._settings.database_name,
                autocommit=True,
                minsize=1,
                maxsize=10,
                pool_recycle=600,
                init_command="SET time_zone = '+00:00'",
            )

    async def disconnect(self) -> None:
        if self._sqlite_conn:
            logger.info("Disconnecting from SQLite database")
            await self._sqlite_conn.close()
            self._sqlite_conn = None
            self._sqlite_lock = None
        elif self._pool:
            logger.info("Disconnecting from MySQL database")
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None

    def is_connected(self) -> bool:
        return self._pool is not None or self._sqlite_conn is not None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        """Acquire a database connection.

        For MySQL, this returns a connection from the pool.
        For SQLite, this returns the single connection while holding the
        connection lock, so statements never interleave with an open
        transaction.
        """
        if self._use_sqlite:
            if not self._sqlite_conn or not self._sqlite_lock:
                raise RuntimeError("SQLite database not initialised")
            async with self._sqlite_lock:
                yield self._sqlite_conn
        else:
            if not self._pool:
                raise RuntimeError("Database pool not initialised")
            conn = await self._pool.acquire()
            try:
                yield conn
            finally:
                self._pool.release(conn)

    async def execute(self, sql: str, params: tuple | dict | None = None) -> int:
        async with self.acquire() as conn:
            return await Transaction(conn, sqlite=self._use_sqlite).execute(sql, params)

    async def execute_returning_lastrowid(
        self, sql: str, params: tuple | dict | None = None
    ) -> int:
        async with self.acquire() as conn:
            return await Transaction(conn, sqlite=self._use_sqlite).execute_returning_lastrowid(
                sql, params
            )

    async def fetch_one(self, sql: str, params: tuple | dict | None = None):
        async with self.acquire() as conn:
            return await Transaction(conn, sqlite=self._use_sqlite).fetch_one(sql, params)

    async def fetch_all(self, sql: str, params: tuple | dict | None = None):
        async with self.acquire() as conn:
            return await Transaction(conn, sqlite=self._use_sqlite).fetch_all(sql, params)

    async def run_in_transaction(
        self,
        callback: Callable[[Transaction], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Run ``callback`` inside one transaction and return its result.

        The transaction commits only when the callback returns. Any exception,
        cancellation or an elapsed ``timeout`` rolls it back completely before
        the error propagates.
        """
        limit = timeout if timeout is not None else self._settings.transaction_timeout
        try:
            return await asyncio.wait_for(self._run_transaction(callback), timeout=limit)
        except asyncio.TimeoutError as exc:
            logger.warning("Transaction rolled back after {timeout}s timeout", timeout=limit)
            raise TransactionTimeoutError(limit) from exc

    async def _run_transaction(self, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self.acquire() as conn:
            if self._use_sqlite:
                await conn.execute("BEGIN IMMEDIATE")
            else:
                await conn.begin()
            try:
                result = await callback(Transaction(conn, sqlite=self._use_sqlite))
            except BaseException:
                await self._rollback(conn)
                raise
            if self._use_sqlite:
                await conn.execute("COMMIT")
            else:
                await conn.commit()
            return result

    async def _rollback(self, conn: Any) -> None:
        try:
            if self._use_sqlite:
                await conn.execute("ROLLBACK")
            else:
                await conn.rollback()
        except DRIVER_ERRORS as exc:
            logger.error("Transaction rollback failed: {error}", error=str(exc))

    def _get_migrations_dir(self) -> Path:
        return Path(__file__).resolve().parent.parent.parent / "migrations"

    async def _ensure_migrations_table(self, conn: Any) -> None:
        """Create migrations tracking table if it doesn't exist."""
        if self._use_sqlite:
            await conn.execute(
                "CREATE TABLE IF NOT EXISTS migrations (name VARCHAR(255) PRIMARY KEY)"
            )
        else:
            async with conn.cursor() as cursor:
                await cursor.execute("SET sql_notes = 0")
                try:
                    await cursor.execute(
                        "CREATE TABLE IF NOT EXISTS migrations (name VARCHAR(255) PRIMARY KEY)"
                    )
                finally:
                    await cursor.execute("SET sql_notes = 1")

    def _adapt_sql_for_sqlite(self, sql: str) -> str:
        """Adapt MySQL SQL to SQLite-compatible SQL.

        This handles the MySQL-specific syntax used by the migrations in this
        repository.
        """
        sql = re.sub(r'\s*ENGINE\s*=\s*\w+', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\s*DEFAULT\s+CHARSET\s*=\s*\w+', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\s*COLLATE\s*=\s*\w+', '', sql, flags=re.IGNORECASE)

        # SQLite only auto-increments a column declared exactly INTEGER PRIMARY KEY
        sql = re.sub(
            r'\b(?:BIG)?INT(?:EGER)?\s+(?:NOT\s+NULL\s+)?AUTO_INCREMENT\s+PRIMARY\s+KEY',
            'INTEGER PRIMARY KEY AUTOINCREMENT',
            sql,
            flags=re.IGNORECASE,
        )
        sql = re.sub(r'\bAUTO_INCREMENT\b', 'AUTOINCREMENT', sql, flags=re.IGNORECASE)

        sql = re.sub(r'\s*COMMENT\s+\'[^\']*\'', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\s*COMMENT\s+"[^"]*"', '', sql, flags=re.IGNORECASE)

        sql = re.sub(r'\bDATETIME\b', 'TEXT', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\s*ON\s+UPDATE\s+CURRENT_TIMESTAMP', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\bJSON\b', 'TEXT', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\bUNSIGNED\b', '', sql, flags=re.IGNORECASE)

        return sql

    async def _apply_migration_file(self, conn: Any, path: Path) -> None:
        """Apply a migration file to the database."""
        sql = path.read_text(encoding="utf-8")

        if self._use_sqlite:
            sql = self._adapt_sql_for_sqlite(sql)

        statements = self._split_sql_statements(sql)

        if self._use_sqlite:
            await conn.execute("BEGIN")
            try:
                for statement in statements:
                    await conn.execute(statement)
                await conn.execute("INSERT INTO migrations (name) VALUES (?)", (path.name,))
            except sqlite3.Error:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")
        else:
            async with conn.cursor() as cursor:
                for statement in statements:
                    await cursor.execute(statement)
                await cursor.execute(
                    "INSERT INTO migrations (name) VALUES (%s)",
                    (path.name,),
                )

    async def run_migrations(self) -> None:
        """Run all pending migrations."""
        if not self._use_sqlite:
            temp_conn = await aiomysql.connect(
                host=self._settings.database_host,
                user=self._settings.database_user,
                password=self._settings.database_password or "",
                autocommit=True,
                init_command="SET time_zone = '+00:00'",
            )
            async with temp_conn.cursor() as cursor:
                await cursor.execute("SET sql_notes = 0")
                try:
                    await cursor.execute(
                        f"CREATE DATABASE IF NOT EXISTS `{self._settings.database_name}`"
                    )
                finally:
                    await cursor.execute("SET sql_notes = 1")
            temp_conn.close()

        await self.connect()
        migrations_dir = self._get_migrations_dir()
        if not migrations_dir.exists():
            logger.warning("No migrations directory found at {path}", path=str(migrations_dir))
            return

        lock_name = f"{self._settings.database_name or 'ticketcore'}_migration_lock"
        lock_timeout = self._settings.migration_lock_timeout
        lock_acquired = False

        async with self.acquire() as conn:
            try:
                if not self._use_sqlite:
                    async with conn.cursor() as cursor:
                        await cursor.execute("SELECT GET_LOCK(%s, %s)", (lock_name, lock_timeout))
                        result = await cursor.fetchone()
                    lock_acquired = bool(result and result[0] == 1)
                    if not lock_acquired:
                        logger.error(
                            "Unable to obtain database migration lock {lock} within {timeout}s",
                            lock=lock_name,
                            timeout=lock_timeout,
                        )
                        raise RuntimeError("Could not obtain database migration lock")
                else:
                    lock_acquired = True

                await self._ensure_migrations_table(conn)

                if self._use_sqlite:
                    cursor = await conn.execute("SELECT name FROM migrations")
                    applied_rows = await cursor.fetchall()
                    applied = {dict(row)["name"] for row in applied_rows}
                else:
                    async with conn.cursor(aiomysql.DictCursor) as cursor:
                        await cursor.execute("SELECT name FROM migrations")
                        applied_rows = await cursor.fetchall()
                    applied = {row["name"] for row in applied_rows}

                for path in sorted(migrations_dir.glob("*.sql")):
                    if path.name in applied:
                        continue
                    await self._apply_migration_file(conn, path)
                    logger.info("Applied migration {name}", name=path.name)
            finally:
                if lock_acquired and not self._use_sqlite:
                    async with conn.cursor() as cursor:
                        await cursor.execute("SELECT RELEASE_LOCK(%s)", (lock_name,))


db = Database()
