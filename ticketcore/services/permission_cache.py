from __future__ import annotations

from typing import Any, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ticketcore.core.logging import log_debug, log_error, log_warning
from ticketcore.services.redis import get_redis_client

_KEY_PREFIX = "perms"
_GENERATION_PREFIX = "permgen"
_SCAN_BATCH = 200


def permission_key(guild_id: str, user_id: str) -> str:
    return f"{_KEY_PREFIX}:{guild_id}:{user_id}"


def guild_pattern(guild_id: str) -> str:
    return f"{_KEY_PREFIX}:{guild_id}:*"


def guild_generation_key(guild_id: str) -> str:
    return f"{_GENERATION_PREFIX}:{guild_id}"


def user_generation_key(guild_id: str, user_id: str) -> str:
    return f"{_GENERATION_PREFIX}:{guild_id}:{user_id}"


def _generation_token(guild_generation: Any, user_generation: Any) -> str:
    return f"{int(guild_generation or 0)}-{int(user_generation or 0)}"


class PermissionCache:
    """TTL cache of resolved permission bitfields, keyed by guild and user.

    Backed by Redis when ``REDIS_URL`` is configured. Without a client every
    lookup is a miss, and Redis failures are logged and treated as misses, so
    the resolver always has storage to fall back on.

    Entries are stamped with the guild and user invalidation generations read
    before the bitfield was computed. Invalidation bumps the generation, so a
    resolve that raced a mutation writes an entry no later reader accepts.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int,
        client_factory: Callable[[], Redis | None] = get_redis_client,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._client_factory = client_factory
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.deletes = 0

    def _client(self) -> Redis | None:
        return self._client_factory()

    @property
    def generation_ttl(self) -> int:
        # outlives every entry stamped with an older generation
        return max(self.ttl_seconds * 2, 60)

    async def generation(self, guild_id: str, user_id: str) -> str | None:
        """Current invalidation stamp for the pair; ``None`` when it cannot be read."""

        client = self._client()
        if client is None:
            return None
        try:
            guild_gen, user_gen = await client.mget(
                guild_generation_key(guild_id), user_generation_key(guild_id, user_id)
            )
            return _generation_token(guild_gen, user_gen)
        except (RedisError, TypeError, ValueError) as exc:
            log_warning(
                "Permission cache generation read failed",
                guild_id=guild_id,
                user_id=user_id,
                error=str(exc),
            )
            return None

    async def get(self, guild_id: str, user_id: str) -> int | None:
        client = self._client()
        if client is None:
            self.misses += 1
            return None
        key = permission_key(guild_id, user_id)
        try:
            raw, guild_gen, user_gen = await client.mget(
                key,
                guild_generation_key(guild_id),
                user_generation_key(guild_id, user_id),
            )
        except RedisError as exc:
            log_warning("Permission cache read failed", key=key, error=str(exc))
            self.misses += 1
            return None
        if raw is None:
            self.misses += 1
            return None
        try:
            stamp, _, bits = str(raw).partition(":")
            value = int(bits)
            current = _generation_token(guild_gen, user_gen)
        except (TypeError, ValueError):
            log_warning("Discarding malformed permission cache entry", key=key)
            self.misses += 1
            return None
        if stamp != current:
            log_debug("Ignoring superseded permission cache entry", key=key, stamp=stamp)
            self.misses += 1
            return None
        self.hits += 1
        return value

    async def set(
        self, guild_id: str, user_id: str, permissions: int, *, generation: str | None
    ) -> None:
        """Store ``permissions`` stamped with the generation read before computing it."""

        client = self._client()
        if client is None or generation is None:
            return
        key = permission_key(guild_id, user_id)
        try:
            await client.set(key, f"{generation}:{int(permissions)}", ex=self.ttl_seconds)
        except RedisError as exc:
            log_warning("Permission cache write failed", key=key, error=str(exc))
            return
        self.sets += 1

    async def _bump(self, client: Redis, key: str) -> None:
        await client.incr(key)
        await client.expire(key, self.generation_ttl)

    async def invalidate_user(self, guild_id: str, user_id: str) -> None:
        client = self._client()
        if client is None:
            return
        key = permission_key(guild_id, user_id)
        try:
            await self._bump(client, user_generation_key(guild_id, user_id))
            removed = await client.delete(key)
        except RedisError as exc:
            log_error("Permission cache invalidation failed", key=key, error=str(exc))
            return
        self.deletes += int(removed or 0)
        log_debug("Invalidated cached permissions", guild_id=guild_id, user_id=user_id)

    async def invalidate_guild(self, guild_id: str) -> int:
        """Drop every cached entry for ``guild_id``; returns the number removed."""

        client = self._client()
        if client is None:
            return 0
        pattern = guild_pattern(guild_id)
        removed = 0
        batch: list[str] = []
        try:
            await self._bump(client, guild_generation_key(guild_id))
            async for key in client.scan_iter(match=pattern, count=_SCAN_BATCH):
                batch.append(key)
                if len(batch) >= _SCAN_BATCH:
                    removed += int(await client.delete(*batch) or 0)
                    batch = []
            if batch:
                removed += int(await client.delete(*batch) or 0)
        except RedisError as exc:
            log_error(
                "Guild permission cache invalidation failed",
                guild_id=guild_id,
                error=str(exc),
            )
        self.deletes += removed
        log_debug("Invalidated guild permission cache", guild_id=guild_id, removed=removed)
        return removed

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        hit_rate = (self.hits / total) * 100 if total else 0.0
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "hit_rate": f"{hit_rate:.2f}%",
        }

    def reset_stats(self) -> None:
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.deletes = 0
