from __future__ import annotations

from typing import Any, Optional

from ticketcore.core.database import Transaction, db
from ticketcore.repositories.roles import ROLE_STATUS_ACTIVE
from ticketcore.services.time_utils import make_aware, utcnow

MembershipRecord = dict[str, Any]


def _normalise(row: dict[str, Any]) -> MembershipRecord:
    record = dict(row)
    for key in ("id", "guild_role_id"):
        if key in record and record[key] is not None:
            record[key] = int(record[key])
    record["discord_id"] = str(record.get("discord_id"))
    record["assigned_at"] = make_aware(record.get("assigned_at"))
    return record


async def get_membership(
    role_id: int, user_id: str, *, tx: Transaction | None = None
) -> Optional[MembershipRecord]:
    runner = tx or db
    row = await runner.fetch_one(
        "SELECT * FROM guild_role_members WHERE guild_role_id = %s AND discord_id = %s",
        (role_id, user_id),
    )
    if not row:
        return None
    return _normalise(row)


async def assign_role(
    role_id: int,
    user_id: str,
    assigned_by_id: str | None,
    *,
    tx: Transaction | None = None,
) -> MembershipRecord:
    """Upsert a membership row; re-assigning refreshes ``assigned_at``/``assigned_by_id``."""

    runner = tx or db
    if runner.is_sqlite():
        sql = """
            INSERT INTO guild_role_members (discord_id, guild_role_id, assigned_at, assigned_by_id)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (discord_id, guild_role_id) DO UPDATE SET
                assigned_at = excluded.assigned_at,
                assigned_by_id = excluded.assigned_by_id
        """
    else:
        sql = """
            INSERT INTO guild_role_members (discord_id, guild_role_id, assigned_at, assigned_by_id)
            VALUES (%s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
                assigned_at = VALUES(assigned_at),
                assigned_by_id = VALUES(assigned_by_id)
        """
    await runner.execute(sql, (user_id, role_id, utcnow(), assigned_by_id))
    membership = await get_membership(role_id, user_id, tx=tx)
    if not membership:
        raise RuntimeError("Failed to assign role")
    return membership


async def remove_role(role_id: int, user_id: str, *, tx: Transaction | None = None) -> bool:
    runner = tx or db
    affected = await runner.execute(
        "DELETE FROM guild_role_members WHERE guild_role_id = %s AND discord_id = %s",
        (role_id, user_id),
    )
    return affected > 0


async def list_role_members(role_id: int) -> list[MembershipRecord]:
    rows = await db.fetch_all(
        "SELECT * FROM guild_role_members WHERE guild_role_id = %s ORDER BY assigned_at",
        (role_id,),
    )
    return [_normalise(row) for row in rows]


async def get_active_members(guild_id: str) -> list[str]:
    """Distinct user ids holding any active role in the guild (roster display)."""

    rows = await db.fetch_all(
        """
        SELECT DISTINCT m.discord_id
        FROM guild_role_members AS m
        INNER JOIN guild_roles AS r ON r.id = m.guild_role_id
        WHERE r.guild_id = %s AND r.status = %s
        ORDER BY m.discord_id
        """,
        (guild_id, ROLE_STATUS_ACTIVE),
    )
    return [str(row["discord_id"]) for row in rows]
