from __future__ import annotations

from typing import Any, Optional

from ticketcore.core.database import INTEGRITY_ERRORS, Transaction, db
from ticketcore.core.errors import ConflictError, NotFoundError
from ticketcore.core.logging import log_info
from ticketcore.security.permissions import DEFAULT_ROLE_PERMISSIONS, normalise
from ticketcore.services.time_utils import make_aware, utcnow

RoleRecord = dict[str, Any]

ROLE_STATUS_ACTIVE = "active"
ROLE_STATUS_INACTIVE = "inactive"
_VALID_STATUSES = {ROLE_STATUS_ACTIVE, ROLE_STATUS_INACTIVE}

# name -> (color, position); permissions come from DEFAULT_ROLE_PERMISSIONS
DEFAULT_ROLES: dict[str, tuple[str, int]] = {
    "admin": ("#5865F2", 100),
    "support": ("#57F287", 50),
    "viewer": ("#99AAB5", 10),
}


def _normalise(row: dict[str, Any]) -> RoleRecord:
    record = dict(row)
    record["id"] = int(record["id"])
    record["position"] = int(record.get("position") or 0)
    record["permissions"] = int(record.get("permissions") or 0)
    record["is_default"] = bool(record.get("is_default", 0))
    record["status"] = str(record.get("status") or ROLE_STATUS_ACTIVE)
    for key in ("created_at", "updated_at"):
        record[key] = make_aware(record.get(key))
    return record


async def list_roles(guild_id: str) -> list[RoleRecord]:
    rows = await db.fetch_all(
        "SELECT * FROM guild_roles WHERE guild_id = %s ORDER BY position DESC, id",
        (guild_id,),
    )
    return [_normalise(row) for row in rows]


async def list_active_roles(guild_id: str) -> list[RoleRecord]:
    rows = await db.fetch_all(
        """
        SELECT * FROM guild_roles
        WHERE guild_id = %s AND status = %s
        ORDER BY position DESC, id
        """,
        (guild_id, ROLE_STATUS_ACTIVE),
    )
    return [_normalise(row) for row in rows]


async def get_role(role_id: int, *, tx: Transaction | None = None) -> Optional[RoleRecord]:
    runner = tx or db
    row = await runner.fetch_one("SELECT * FROM guild_roles WHERE id = %s", (role_id,))
    if not row:
        return None
    return _normalise(row)


async def create_role(
    *,
    guild_id: str,
    name: str,
    permissions: int,
    color: str = "#5865F2",
    position: int = 0,
    is_default: bool = False,
) -> RoleRecord:
    now = utcnow()
    try:
        role_id = await db.execute_returning_lastrowid(
            """
            INSERT INTO guild_roles (guild_id, name, color, position, permissions, is_default, status, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                guild_id,
                name,
                color,
                position,
                normalise(permissions),
                1 if is_default else 0,
                ROLE_STATUS_ACTIVE,
                now,
                now,
            ),
        )
    except INTEGRITY_ERRORS as exc:
        raise ConflictError(f"A role named {name!r} already exists in this guild") from exc
    created = await get_role(role_id)
    if not created:
        raise RuntimeError("Failed to create role")
    return created


async def _insert_role_if_missing(
    tx: Transaction,
    *,
    guild_id: str,
    name: str,
    color: str,
    position: int,
    permissions: int,
) -> None:
    now = utcnow()
    verb = "INSERT OR IGNORE" if tx.is_sqlite() else "INSERT IGNORE"
    await tx.execute(
        f"""
        {verb} INTO guild_roles (guild_id, name, color, position, permissions, is_default, status, created_at, updated_at)
        VALUES (%s, %s, %s, %s, %s, 1, %s, %s, %s)
        """,
        (guild_id, name, color, position, permissions, ROLE_STATUS_ACTIVE, now, now),
    )


async def ensure_default_roles(guild_id: str) -> dict[str, int]:
    """Create the admin, support and viewer roles unless they already exist.

    Keyed on the unique (guild_id, name) pair, so concurrent calls converge on
    the same three rows instead of failing. Returns ``{name: role_id}``.
    """

    async def _ensure(tx: Transaction) -> dict[str, int]:
        guild = await tx.fetch_one("SELECT id FROM guilds WHERE id = %s", (guild_id,))
        if not guild:
            raise NotFoundError("Guild", guild_id)
        for name, (color, position) in DEFAULT_ROLES.items():
            await _insert_role_if_missing(
                tx,
                guild_id=guild_id,
                name=name,
                color=color,
                position=position,
                permissions=DEFAULT_ROLE_PERMISSIONS[name],
            )
        rows = await tx.fetch_all(
            "SELECT id, name FROM guild_roles WHERE guild_id = %s AND name IN (%s, %s, %s)",
            (guild_id, *DEFAULT_ROLES.keys()),
        )
        return {str(row["name"]): int(row["id"]) for row in rows}

    role_ids = await db.run_in_transaction(_ensure)
    log_info("Default roles ensured", guild_id=guild_id, roles=len(role_ids))
    return role_ids


async def update_role_permissions(
    role_id: int, permissions: int, *, tx: Transaction | None = None
) -> RoleRecord:
    runner = tx or db
    await runner.execute(
        "UPDATE guild_roles SET permissions = %s, updated_at = %s WHERE id = %s",
        (normalise(permissions), utcnow(), role_id),
    )
    role = await get_role(role_id, tx=tx)
    if not role:
        raise NotFoundError("Role", role_id)
    return role


async def set_role_status(
    role_id: int, status: str, *, tx: Transaction | None = None
) -> RoleRecord:
    if status not in _VALID_STATUSES:
        raise ValueError(f"Unsupported role status {status!r}")
    runner = tx or db
    await runner.execute(
        "UPDATE guild_roles SET status = %s, updated_at = %s WHERE id = %s",
        (status, utcnow(), role_id),
    )
    role = await get_role(role_id, tx=tx)
    if not role:
        raise NotFoundError("Role", role_id)
    return role


async def list_active_role_permissions(guild_id: str, user_id: str) -> list[int]:
    """Bitfields of every active role ``user_id`` holds in ``guild_id``."""

    rows = await db.fetch_all(
        """
        SELECT r.permissions
        FROM guild_role_members AS m
        INNER JOIN guild_roles AS r ON r.id = m.guild_role_id
        WHERE m.discord_id = %s AND r.guild_id = %s AND r.status = %s
        """,
        (user_id, guild_id, ROLE_STATUS_ACTIVE),
    )
    return [int(row["permissions"] or 0) for row in rows]


async def list_user_roles(guild_id: str, user_id: str) -> list[RoleRecord]:
    rows = await db.fetch_all(
        """
        SELECT r.*
        FROM guild_role_members AS m
        INNER JOIN guild_roles AS r ON r.id = m.guild_role_id
        WHERE m.discord_id = %s AND r.guild_id = %s AND r.status = %s
        ORDER BY r.position DESC, r.id
        """,
        (user_id, guild_id, ROLE_STATUS_ACTIVE),
    )
    return [_normalise(row) for row in rows]
