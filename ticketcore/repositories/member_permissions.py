from __future__ import annotations

from ticketcore.core.database import Transaction, db
from ticketcore.security.permissions import normalise
from ticketcore.services.time_utils import utcnow


async def get_additional_permissions(guild_id: str, user_id: str) -> int | None:
    row = await db.fetch_one(
        """
        SELECT additional_permissions
        FROM guild_member_permissions
        WHERE guild_id = %s AND discord_id = %s
        """,
        (guild_id, user_id),
    )
    if not row:
        return None
    return int(row["additional_permissions"] or 0)


async def set_additional_permissions(
    guild_id: str,
    user_id: str,
    permissions: int,
    *,
    tx: Transaction | None = None,
) -> int:
    runner = tx or db
    value = normalise(permissions)
    if runner.is_sqlite():
        sql = """
            INSERT INTO guild_member_permissions (discord_id, guild_id, additional_permissions, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (discord_id, guild_id) DO UPDATE SET
                additional_permissions = excluded.additional_permissions,
                updated_at = excluded.updated_at
        """
    else:
        sql = """
            INSERT INTO guild_member_permissions (discord_id, guild_id, additional_permissions, updated_at)
            VALUES (%s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
                additional_permissions = VALUES(additional_permissions),
                updated_at = VALUES(updated_at)
        """
    await runner.execute(sql, (user_id, guild_id, value, utcnow()))
    return value


async def clear_additional_permissions(
    guild_id: str, user_id: str, *, tx: Transaction | None = None
) -> bool:
    runner = tx or db
    affected = await runner.execute(
        "DELETE FROM guild_member_permissions WHERE guild_id = %s AND discord_id = %s",
        (guild_id, user_id),
    )
    return affected > 0
