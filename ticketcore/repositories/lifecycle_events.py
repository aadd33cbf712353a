"""Append-only ticket lifecycle event log.

Events are only ever inserted, and only through the transaction that performs
the matching ticket mutation; there is deliberately no update or delete here.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from ticketcore.core.database import Transaction, db
from ticketcore.services.time_utils import make_aware

EventRecord = dict[str, Any]

ACTION_CREATED = "created"
ACTION_CLAIMED = "claimed"
ACTION_UNCLAIMED = "unclaimed"
ACTION_CLOSED = "closed"
ACTION_REOPENED = "reopened"
ACTION_CLOSE_REQUESTED = "close_requested"
ACTION_CLOSE_REQUEST_CANCELLED = "close_request_cancelled"
ACTION_AUTO_CLOSED = "auto_closed"
ACTION_AUTO_CLOSE_EXCLUDED = "auto_close_excluded"
ACTION_AUTO_CLOSE_INCLUDED = "auto_close_included"


def _serialise(details: dict[str, Any] | None) -> str | None:
    if not details:
        return None
    return json.dumps(details, default=str)


def _deserialise(value: Any) -> dict[str, Any]:
    if value is None or value == "":
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    try:
        parsed = json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _normalise(row: dict[str, Any]) -> EventRecord:
    record = dict(row)
    for key in ("id", "ticket_id"):
        if key in record and record[key] is not None:
            record[key] = int(record[key])
    record["details"] = _deserialise(record.get("details"))
    record["timestamp"] = make_aware(record.get("timestamp"))
    return record


async def append_event(
    tx: Transaction,
    *,
    ticket_id: int,
    action: str,
    performed_by_id: str,
    timestamp: datetime,
    claimed_by_id: str | None = None,
    closed_by_id: str | None = None,
    close_reason: str | None = None,
    details: dict[str, Any] | None = None,
) -> int:
    return await tx.execute_returning_lastrowid(
        """
        INSERT INTO ticket_lifecycle_events
            (ticket_id, action, performed_by_id, claimed_by_id, closed_by_id, close_reason, details, timestamp)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            ticket_id,
            action,
            performed_by_id,
            claimed_by_id,
            closed_by_id,
            close_reason,
            _serialise(details),
            timestamp,
        ),
    )


async def list_events(ticket_id: int, *, limit: int | None = None) -> list[EventRecord]:
    """Events for a ticket, newest first."""

    sql = """
        SELECT * FROM ticket_lifecycle_events
        WHERE ticket_id = %s
        ORDER BY timestamp DESC, id DESC
    """
    params: tuple[Any, ...] = (ticket_id,)
    if limit is not None:
        sql += " LIMIT %s"
        params = (ticket_id, int(limit))
    rows = await db.fetch_all(sql, params)
    return [_normalise(row) for row in rows]


async def count_events(ticket_id: int, *, action: str | None = None) -> int:
    if action is None:
        row = await db.fetch_one(
            "SELECT COUNT(*) AS count FROM ticket_lifecycle_events WHERE ticket_id = %s",
            (ticket_id,),
        )
    else:
        row = await db.fetch_one(
            """
            SELECT COUNT(*) AS count FROM ticket_lifecycle_events
            WHERE ticket_id = %s AND action = %s
            """,
            (ticket_id, action),
        )
    if not row:
        return 0
    return int(row.get("count") or 0)
