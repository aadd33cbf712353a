from __future__ import annotations

from typing import Any

from ticketcore.core.actor import actor_context
from ticketcore.core.errors import NotFoundError
from ticketcore.core.logging import log_audit_event
from ticketcore.repositories import guilds as guild_repo
from ticketcore.repositories import member_permissions as grant_repo
from ticketcore.repositories import role_members as membership_repo
from ticketcore.repositories import roles as role_repo
from ticketcore.schemas.common import parse_payload
from ticketcore.schemas.roles import (
    PermissionGrantUpdate,
    RoleCreate,
    RoleMembershipChange,
    RolePermissionsUpdate,
)
from ticketcore.security.permissions import PermissionFlag, permission_names
from ticketcore.services import permissions as permission_service


def _audit(action: str, guild_id: str, entity_type: str, entity_id: Any, **meta: Any) -> None:
    actor = actor_context.current()
    log_audit_event(
        "ROLE ACTION",
        action,
        actor_type=actor.type,
        user_id=actor_context.performer_id(),
        guild_id=guild_id,
        entity_type=entity_type,
        entity_id=entity_id,
        **meta,
    )


async def _require(flag: PermissionFlag) -> None:
    if actor_context.is_system():
        return
    permissions = await permission_service.current_permissions()
    await actor_context.require_permission(flag, resolved=permissions)


async def _role_in_scope(role_id: int, guild_id: str) -> dict[str, Any]:
    role = await role_repo.get_role(role_id)
    if not role or str(role["guild_id"]) != str(guild_id):
        raise NotFoundError("Role", role_id)
    return role


async def bootstrap_guild(
    guild_id: str,
    *,
    owner_discord_id: str | None,
    name: str | None = None,
    max_tickets_per_user: int | None = None,
) -> dict[str, int]:
    """Register a guild (bot join or owner transfer) and make sure its default roles exist."""

    await _require(PermissionFlag.GUILD_SETTINGS_EDIT)
    guild_id = actor_context.guild_scope(guild_id)
    before = await guild_repo.get_guild(guild_id)
    await guild_repo.upsert_guild(
        guild_id,
        owner_discord_id=owner_discord_id,
        name=name,
        max_tickets_per_user=max_tickets_per_user,
    )
    role_ids = await role_repo.ensure_default_roles(guild_id)
    if before and before.get("owner_discord_id") != owner_discord_id:
        # the old and new owner both change resolution
        await permission_service.invalidate_guild(guild_id)
    _audit("guild_bootstrapped", guild_id, "guild", guild_id, roles=len(role_ids))
    return role_ids


async def ensure_default_roles(guild_id: str | None = None) -> dict[str, int]:
    await _require(PermissionFlag.ROLE_CREATE)
    guild_id = actor_context.guild_scope(guild_id)
    return await role_repo.ensure_default_roles(guild_id)


async def list_roles(guild_id: str | None = None) -> list[dict[str, Any]]:
    await _require(PermissionFlag.MEMBER_VIEW)
    return await role_repo.list_roles(actor_context.guild_scope(guild_id))


async def get_active_members(guild_id: str | None = None) -> list[str]:
    await _require(PermissionFlag.MEMBER_VIEW)
    return await membership_repo.get_active_members(actor_context.guild_scope(guild_id))


async def get_active_roles(guild_id: str | None = None) -> list[dict[str, Any]]:
    """Active roles, highest position first. Open to any member; channel setup reads them."""

    return await role_repo.list_active_roles(actor_context.guild_scope(guild_id))


async def get_my_roles() -> list[dict[str, Any]]:
    return await role_repo.list_user_roles(actor_context.guild_id(), actor_context.user_id())


async def get_user_roles(user_id: str, *, guild_id: str | None = None) -> list[dict[str, Any]]:
    """Active roles ``user_id`` holds; looking at someone else needs MEMBER_VIEW."""

    guild_id = actor_context.guild_scope(guild_id)
    if actor_context.is_system() or actor_context.user_id() != user_id:
        await _require(PermissionFlag.MEMBER_VIEW)
    return await role_repo.list_user_roles(guild_id, user_id)


async def create_role(payload: Any, *, guild_id: str | None = None) -> dict[str, Any]:
    data = parse_payload(RoleCreate, payload)
    await _require(PermissionFlag.ROLE_CREATE)
    guild_id = actor_context.guild_scope(guild_id)
    if not await guild_repo.get_guild(guild_id):
        raise NotFoundError("Guild", guild_id)
    role = await role_repo.create_role(
        guild_id=guild_id,
        name=data.name,
        permissions=data.permissions,
        color=data.color,
        position=data.position,
    )
    _audit(
        "role_created",
        guild_id,
        "role",
        role["id"],
        name=role["name"],
        permissions=",".join(permission_names(role["permissions"])) or "NONE",
    )
    return role


async def update_role_permissions(payload: Any, *, guild_id: str | None = None) -> dict[str, Any]:
    data = parse_payload(RolePermissionsUpdate, payload)
    await _require(PermissionFlag.ROLE_EDIT)
    guild_id = actor_context.guild_scope(guild_id)
    await _role_in_scope(data.role_id, guild_id)
    role = await role_repo.update_role_permissions(data.role_id, data.permissions)
    # members of a role are not enumerated; drop the whole guild
    await permission_service.invalidate_guild(guild_id)
    _audit(
        "permissions_updated",
        guild_id,
        "role",
        role["id"],
        permissions=",".join(permission_names(role["permissions"])) or "NONE",
    )
    return role


async def set_role_status(role_id: int, status: str, *, guild_id: str | None = None) -> dict[str, Any]:
    await _require(PermissionFlag.ROLE_EDIT)
    guild_id = actor_context.guild_scope(guild_id)
    await _role_in_scope(role_id, guild_id)
    role = await role_repo.set_role_status(role_id, status)
    await permission_service.invalidate_guild(guild_id)
    _audit("status_changed", guild_id, "role", role_id, status=role["status"])
    return role


async def assign_role(payload: Any, *, guild_id: str | None = None) -> dict[str, Any]:
    data = parse_payload(RoleMembershipChange, payload)
    await _require(PermissionFlag.ROLE_ASSIGN)
    guild_id = actor_context.guild_scope(guild_id)
    await _role_in_scope(data.role_id, guild_id)
    membership = await membership_repo.assign_role(
        data.role_id, data.user_id, actor_context.performer_id()
    )
    await permission_service.invalidate_user(guild_id, data.user_id)
    _audit("role_assigned", guild_id, "role", data.role_id, member_id=data.user_id)
    return membership


async def remove_role(payload: Any, *, guild_id: str | None = None) -> bool:
    data = parse_payload(RoleMembershipChange, payload)
    await _require(PermissionFlag.ROLE_ASSIGN)
    guild_id = actor_context.guild_scope(guild_id)
    await _role_in_scope(data.role_id, guild_id)
    removed = await membership_repo.remove_role(data.role_id, data.user_id)
    if removed:
        await permission_service.invalidate_user(guild_id, data.user_id)
        _audit("role_removed", guild_id, "role", data.role_id, member_id=data.user_id)
    return removed


async def set_additional_permissions(payload: Any, *, guild_id: str | None = None) -> int:
    data = parse_payload(PermissionGrantUpdate, payload)
    await _require(PermissionFlag.ROLE_ASSIGN)
    guild_id = actor_context.guild_scope(guild_id)
    if not await guild_repo.get_guild(guild_id):
        raise NotFoundError("Guild", guild_id)
    value = await grant_repo.set_additional_permissions(guild_id, data.user_id, data.permissions)
    await permission_service.invalidate_user(guild_id, data.user_id)
    _audit(
        "grant_updated",
        guild_id,
        "member",
        data.user_id,
        permissions=",".join(permission_names(value)) or "NONE",
    )
    return value


async def clear_additional_permissions(user_id: str, *, guild_id: str | None = None) -> bool:
    await _require(PermissionFlag.ROLE_ASSIGN)
    guild_id = actor_context.guild_scope(guild_id)
    cleared = await grant_repo.clear_additional_permissions(guild_id, user_id)
    if cleared:
        await permission_service.invalidate_user(guild_id, user_id)
        _audit("grant_cleared", guild_id, "member", user_id)
    return cleared
