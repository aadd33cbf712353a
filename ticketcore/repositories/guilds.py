from __future__ import annotations

from typing import Any, Optional

from ticketcore.core.database import Transaction, db
from ticketcore.services.time_utils import make_aware, utcnow

GuildRecord = dict[str, Any]


def _normalise(row: dict[str, Any]) -> GuildRecord:
    record = dict(row)
    for key in ("max_tickets_per_user", "total_tickets"):
        record[key] = int(record.get(key) or 0)
    for key in ("created_at", "updated_at"):
        record[key] = make_aware(record.get(key))
    return record


async def get_guild(guild_id: str, *, tx: Transaction | None = None) -> Optional[GuildRecord]:
    runner = tx or db
    row = await runner.fetch_one("SELECT * FROM guilds WHERE id = %s", (guild_id,))
    if not row:
        return None
    return _normalise(row)


async def upsert_guild(
    guild_id: str,
    *,
    owner_discord_id: str | None,
    name: str | None = None,
    max_tickets_per_user: int | None = None,
) -> GuildRecord:
    """Create the guild row or refresh its owner and name (guild join / owner transfer)."""

    now = utcnow()
    if db.is_sqlite():
        sql = """
            INSERT INTO guilds (id, name, owner_discord_id, max_tickets_per_user, total_tickets, created_at, updated_at)
            VALUES (%s, %s, %s, %s, 0, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                name = COALESCE(excluded.name, guilds.name),
                owner_discord_id = excluded.owner_discord_id,
                updated_at = excluded.updated_at
        """
    else:
        sql = """
            INSERT INTO guilds (id, name, owner_discord_id, max_tickets_per_user, total_tickets, created_at, updated_at)
            VALUES (%s, %s, %s, %s, 0, %s, %s)
            ON DUPLICATE KEY UPDATE
                name = COALESCE(VALUES(name), name),
                owner_discord_id = VALUES(owner_discord_id),
                updated_at = VALUES(updated_at)
        """
    await db.execute(
        sql,
        (guild_id, name, owner_discord_id, int(max_tickets_per_user or 0), now, now),
    )
    if max_tickets_per_user is not None:
        await update_max_tickets_per_user(guild_id, max_tickets_per_user)
    guild = await get_guild(guild_id)
    if not guild:
        raise RuntimeError("Failed to upsert guild")
    return guild


async def update_max_tickets_per_user(guild_id: str, limit: int) -> None:
    await db.execute(
        "UPDATE guilds SET max_tickets_per_user = %s, updated_at = %s WHERE id = %s",
        (max(int(limit), 0), utcnow(), guild_id),
    )


async def allocate_ticket_number(tx: Transaction, guild_id: str) -> int | None:
    """Increment the guild's ticket counter and return the new value.

    The increment takes the guild row lock, so concurrent creates in the same
    guild serialise here until the surrounding transaction ends. Returns
    ``None`` when the guild does not exist.
    """

    affected = await tx.execute(
        "UPDATE guilds SET total_tickets = total_tickets + 1, updated_at = %s WHERE id = %s",
        (utcnow(), guild_id),
    )
    if not affected:
        return None
    row = await tx.fetch_one("SELECT total_tickets FROM guilds WHERE id = %s", (guild_id,))
    if not row:
        return None
    return int(row["total_tickets"])
