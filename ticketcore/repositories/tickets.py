from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from ticketcore.core.database import Transaction, db
from ticketcore.core.logging import log_debug
from ticketcore.services.time_utils import make_aware

TicketRecord = dict[str, Any]

STATUS_OPEN = "OPEN"
STATUS_CLAIMED = "CLAIMED"
STATUS_CLOSED = "CLOSED"
TICKET_STATUSES = (STATUS_OPEN, STATUS_CLAIMED, STATUS_CLOSED)

# Columns a lifecycle transition is allowed to write.
_MUTABLE_COLUMNS = {
    "status",
    "claimed_by_id",
    "close_request_id",
    "close_request_by",
    "close_request_reason",
    "close_request_created_at",
    "auto_close_at",
    "exclude_from_autoclose",
    "closed_at",
    "updated_at",
}

_UNSET = object()


def _normalise_ticket(row: dict[str, Any]) -> TicketRecord:
    record = dict(row)
    for key in ("id", "number", "panel_id"):
        if key in record and record[key] is not None:
            record[key] = int(record[key])
    for key in ("opener_id", "claimed_by_id", "close_request_by", "channel_id"):
        if record.get(key) is not None:
            record[key] = str(record[key])
    record["exclude_from_autoclose"] = bool(record.get("exclude_from_autoclose", 0))
    for key in (
        "created_at",
        "updated_at",
        "closed_at",
        "auto_close_at",
        "close_request_created_at",
    ):
        record[key] = make_aware(record.get(key))
    return record


def _normalise_participant(row: dict[str, Any]) -> dict[str, Any]:
    record = dict(row)
    for key in ("id", "ticket_id"):
        if key in record and record[key] is not None:
            record[key] = int(record[key])
    record["joined_at"] = make_aware(record.get("joined_at"))
    return record


async def get_ticket(
    ticket_id: int,
    *,
    tx: Transaction | None = None,
    for_update: bool = False,
) -> Optional[TicketRecord]:
    """Fetch one ticket; ``for_update`` takes the row lock inside ``tx``."""

    runner = tx or db
    sql = "SELECT * FROM tickets WHERE id = %s"
    if for_update:
        if tx is None:
            raise ValueError("Row locks require a transaction")
        sql += " FOR UPDATE"
    row = await runner.fetch_one(sql, (ticket_id,))
    if not row:
        return None
    return _normalise_ticket(row)


async def get_ticket_by_number(guild_id: str, number: int) -> Optional[TicketRecord]:
    row = await db.fetch_one(
        "SELECT * FROM tickets WHERE guild_id = %s AND number = %s",
        (guild_id, number),
    )
    if not row:
        return None
    return _normalise_ticket(row)


async def count_active_tickets_for_opener(
    tx: Transaction, guild_id: str, opener_id: str
) -> int:
    row = await tx.fetch_one(
        """
        SELECT COUNT(*) AS count
        FROM tickets
        WHERE guild_id = %s AND opener_id = %s AND status <> %s
        """,
        (guild_id, opener_id, STATUS_CLOSED),
    )
    if not row:
        return 0
    return int(row.get("count") or 0)


async def insert_ticket(
    tx: Transaction,
    *,
    guild_id: str,
    number: int,
    opener_id: str,
    subject: str | None,
    channel_id: str | None,
    panel_id: int | None,
    created_at: datetime,
) -> int:
    ticket_id = await tx.execute_returning_lastrowid(
        """
        INSERT INTO tickets
            (guild_id, number, opener_id, status, subject, channel_id, panel_id, exclude_from_autoclose, created_at, updated_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s, %s)
        """,
        (
            guild_id,
            number,
            opener_id,
            STATUS_OPEN,
            subject,
            channel_id,
            panel_id,
            created_at,
            created_at,
        ),
    )
    log_debug("Inserted ticket row", ticket_id=ticket_id, guild_id=guild_id, number=number)
    return ticket_id


async def update_ticket_if(
    tx: Transaction,
    ticket_id: int,
    *,
    expected_status: str | Iterable[str],
    expected_claimed_by: Any = _UNSET,
    close_request_pending: bool | None = None,
    **updates: Any,
) -> int:
    """Conditionally update a ticket; returns the affected row count.

    The WHERE clause repeats the state the caller validated, so a concurrent
    transition that got there first makes this a no-op (0 rows) instead of a
    lost update.
    """

    if not updates:
        raise ValueError("No ticket columns to update")
    unknown = set(updates) - _MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported ticket columns: {', '.join(sorted(unknown))}")

    statuses = [expected_status] if isinstance(expected_status, str) else list(expected_status)
    if not statuses:
        raise ValueError("At least one expected status is required")

    assignments: list[str] = []
    params: list[Any] = []
    for column, value in updates.items():
        assignments.append(f"{column} = %s")
        params.append(value)

    clauses = ["id = %s", f"status IN ({', '.join(['%s'] * len(statuses))})"]
    params.append(ticket_id)
    params.extend(statuses)
    if expected_claimed_by is not _UNSET:
        if expected_claimed_by is None:
            clauses.append("claimed_by_id IS NULL")
        else:
            clauses.append("claimed_by_id = %s")
            params.append(expected_claimed_by)
    if close_request_pending is not None:
        clauses.append(
            "close_request_id IS NOT NULL" if close_request_pending else "close_request_id IS NULL"
        )

    sql = f"UPDATE tickets SET {', '.join(assignments)} WHERE {' AND '.join(clauses)}"
    return await tx.execute(sql, tuple(params))


async def add_participant(
    tx: Transaction,
    ticket_id: int,
    user_id: str,
    *,
    role: str,
    joined_at: datetime,
) -> None:
    verb = "INSERT OR IGNORE" if tx.is_sqlite() else "INSERT IGNORE"
    await tx.execute(
        f"""
        {verb} INTO ticket_participants (ticket_id, user_id, role, joined_at)
        VALUES (%s, %s, %s, %s)
        """,
        (ticket_id, user_id, role, joined_at),
    )


async def list_participants(ticket_id: int) -> list[dict[str, Any]]:
    rows = await db.fetch_all(
        "SELECT * FROM ticket_participants WHERE ticket_id = %s ORDER BY joined_at, id",
        (ticket_id,),
    )
    return [_normalise_participant(row) for row in rows]


async def list_due_auto_close(now: datetime, *, limit: int = 50) -> list[TicketRecord]:
    """Open tickets with a pending close request whose auto-close deadline has passed."""

    rows = await db.fetch_all(
        """
        SELECT * FROM tickets
        WHERE status = %s
          AND close_request_id IS NOT NULL
          AND exclude_from_autoclose = 0
          AND auto_close_at IS NOT NULL
          AND auto_close_at <= %s
        ORDER BY auto_close_at, id
        LIMIT %s
        """,
        (STATUS_OPEN, now, limit),
    )
    return [_normalise_ticket(row) for row in rows]
