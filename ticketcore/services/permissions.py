"""Cumulative permission resolution for (guild, user) pairs.

The resolved bitfield is the guild owner's full set, or otherwise the union of
every active role the user holds plus their additional grant. Results are
cached per user; role and membership mutations invalidate through
``invalidate_guild`` / ``invalidate_user`` once their own commit has landed.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ticketcore.core.actor import actor_context
from ticketcore.core.config import Settings, get_settings
from ticketcore.core.errors import NotFoundError
from ticketcore.core.logging import log_debug, log_warning
from ticketcore.repositories import guilds as guild_repo
from ticketcore.repositories import member_permissions as grant_repo
from ticketcore.repositories import roles as role_repo
from ticketcore.security.permissions import (
    ALL_PERMISSIONS,
    combine_permissions,
    from_hex,
    normalise,
    permission_level,
    permission_names,
)
from ticketcore.services.permission_cache import PermissionCache


@dataclass(frozen=True)
class DevPermissionOverride:
    """Fixed bitfield returned for every lookup in development environments."""

    permissions: int

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["DevPermissionOverride"]:
        if settings.is_production or not settings.dev_permissions_hex:
            return None
        try:
            value = normalise(from_hex(settings.dev_permissions_hex))
        except ValueError:
            log_warning(
                "Ignoring malformed DEV_PERMISSIONS_HEX",
                value=settings.dev_permissions_hex,
            )
            return None
        log_warning(
            "Development permission override active",
            environment=settings.environment,
            permissions=",".join(permission_names(value)) or "NONE",
        )
        return cls(permissions=value)


class PermissionResolver:
    def __init__(
        self,
        *,
        cache: PermissionCache | None = None,
        override: DevPermissionOverride | None = None,
    ) -> None:
        self.cache = cache
        self.override = override

    async def resolve(self, guild_id: str, user_id: str) -> int:
        if self.override is not None:
            return self.override.permissions

        if self.cache is None:
            return await self._compute(guild_id, user_id)

        cached = await self.cache.get(guild_id, user_id)
        if cached is not None:
            return cached

        # read before computing so an invalidation landing in between wins
        generation = await self.cache.generation(guild_id, user_id)
        permissions = await self._compute(guild_id, user_id)
        await self.cache.set(guild_id, user_id, permissions, generation=generation)
        return permissions

    async def _compute(self, guild_id: str, user_id: str) -> int:
        guild = await guild_repo.get_guild(guild_id)
        if not guild:
            raise NotFoundError("Guild", guild_id)

        owner_id = guild.get("owner_discord_id")
        if owner_id is not None and str(owner_id) == str(user_id):
            log_debug("Resolved guild owner permissions", guild_id=guild_id, user_id=user_id)
            return ALL_PERMISSIONS

        role_bits = await role_repo.list_active_role_permissions(guild_id, user_id)
        grant = await grant_repo.get_additional_permissions(guild_id, user_id)
        permissions = normalise(combine_permissions([*role_bits, grant]))
        log_debug(
            "Resolved member permissions",
            guild_id=guild_id,
            user_id=user_id,
            roles=len(role_bits),
            level=permission_level(permissions),
        )
        return permissions

    async def invalidate_user(self, guild_id: str, user_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_user(guild_id, user_id)

    async def invalidate_guild(self, guild_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_guild(guild_id)


def build_resolver(settings: Settings | None = None) -> PermissionResolver:
    settings = settings or get_settings()
    return PermissionResolver(
        cache=PermissionCache(ttl_seconds=settings.permission_cache_ttl),
        override=DevPermissionOverride.from_settings(settings),
    )


_resolver: PermissionResolver | None = None


def get_resolver() -> PermissionResolver:
    if _resolver is not None:
        return _resolver
    resolver = build_resolver()
    configure_resolver(resolver)
    return resolver


def configure_resolver(resolver: PermissionResolver | None) -> None:
    """Install ``resolver`` as the process resolver and as the actor context lookup."""

    global _resolver
    _resolver = resolver
    actor_context.install_resolver(resolver.resolve if resolver is not None else None)


async def resolve(guild_id: str, user_id: str) -> int:
    return await get_resolver().resolve(guild_id, user_id)


async def invalidate_user(guild_id: str, user_id: str) -> None:
    await get_resolver().invalidate_user(guild_id, user_id)


async def invalidate_guild(guild_id: str) -> None:
    await get_resolver().invalidate_guild(guild_id)


async def current_permissions() -> int:
    """Effective bitfield of the bound actor, installing the default resolver on first use."""

    get_resolver()
    return await actor_context.effective_permissions()


async def get_my_permissions() -> dict[str, object]:
    """Permissions of the bound actor, in the shape the dashboard renders."""

    permissions = await current_permissions()
    return {
        "permissions": permissions,
        "names": permission_names(permissions),
        "level": permission_level(permissions),
    }
