import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ticketcore.services.permission_cache import (
    PermissionCache,
    guild_generation_key,
    guild_pattern,
    permission_key,
    user_generation_key,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class BrokenRedis:
    async def get(self, key):
        raise RedisConnectionError("down")

    async def mget(self, *keys):
        raise RedisConnectionError("down")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("down")

    async def incr(self, key):
        raise RedisConnectionError("down")

    async def expire(self, key, seconds):
        raise RedisConnectionError("down")

    async def delete(self, *keys):
        raise RedisConnectionError("down")

    async def scan_iter(self, match=None, count=None):
        raise RedisConnectionError("down")
        yield  # pragma: no cover


async def _store(cache, guild_id, user_id, permissions):
    generation = await cache.generation(guild_id, user_id)
    await cache.set(guild_id, user_id, permissions, generation=generation)


def test_key_layout():
    assert permission_key("g1", "200") == "perms:g1:200"
    assert guild_pattern("g1") == "perms:g1:*"
    assert guild_generation_key("g1") == "permgen:g1"
    assert user_generation_key("g1", "200") == "permgen:g1:200"


@pytest.mark.anyio
async def test_set_then_get_uses_ttl(fake_redis):
    cache = PermissionCache(ttl_seconds=300, client_factory=lambda: fake_redis)

    assert await cache.get("g1", "200") is None
    await _store(cache, "g1", "200", 96)

    assert await cache.get("g1", "200") == 96
    assert fake_redis.store["perms:g1:200"] == "0-0:96"
    assert fake_redis.expiry["perms:g1:200"] == 300
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1
    assert cache.stats()["hit_rate"] == "50.00%"


@pytest.mark.anyio
async def test_set_without_generation_is_skipped(fake_redis):
    cache = PermissionCache(ttl_seconds=300, client_factory=lambda: fake_redis)

    await cache.set("g1", "200", 96, generation=None)

    assert fake_redis.store == {}
    assert cache.sets == 0


@pytest.mark.anyio
async def test_invalidate_guild_only_touches_that_guild(fake_redis):
    cache = PermissionCache(ttl_seconds=60, client_factory=lambda: fake_redis)
    await _store(cache, "g1", "200", 1)
    await _store(cache, "g1", "300", 2)
    await _store(cache, "g2", "200", 4)

    removed = await cache.invalidate_guild("g1")

    assert removed == 2
    assert {key for key in fake_redis.store if key.startswith("perms:")} == {"perms:g2:200"}
    assert fake_redis.store["permgen:g1"] == "1"
    assert fake_redis.expiry["permgen:g1"] == 120
    assert await cache.get("g2", "200") == 4


@pytest.mark.anyio
async def test_invalidate_user(fake_redis):
    cache = PermissionCache(ttl_seconds=60, client_factory=lambda: fake_redis)
    await _store(cache, "g1", "200", 1)
    await _store(cache, "g1", "300", 2)

    await cache.invalidate_user("g1", "200")

    assert "perms:g1:200" not in fake_redis.store
    assert await cache.get("g1", "300") == 2
    assert cache.deletes == 1


@pytest.mark.anyio
async def test_entry_computed_before_invalidation_is_rejected(fake_redis):
    cache = PermissionCache(ttl_seconds=60, client_factory=lambda: fake_redis)

    generation = await cache.generation("g1", "200")
    await cache.invalidate_guild("g1")
    await cache.set("g1", "200", 7, generation=generation)

    assert fake_redis.store["perms:g1:200"] == "0-0:7"
    assert await cache.get("g1", "200") is None


@pytest.mark.anyio
async def test_user_invalidation_supersedes_in_flight_entry(fake_redis):
    cache = PermissionCache(ttl_seconds=60, client_factory=lambda: fake_redis)

    generation = await cache.generation("g1", "200")
    await cache.invalidate_user("g1", "200")
    await cache.set("g1", "200", 7, generation=generation)

    assert await cache.get("g1", "200") is None
    await _store(cache, "g1", "200", 3)
    assert await cache.get("g1", "200") == 3


@pytest.mark.anyio
async def test_malformed_entries_are_misses(fake_redis):
    cache = PermissionCache(ttl_seconds=60, client_factory=lambda: fake_redis)
    fake_redis.store["perms:g1:200"] = "not-a-number"

    assert await cache.get("g1", "200") is None
    assert cache.misses == 1


@pytest.mark.anyio
async def test_redis_failures_degrade_to_misses():
    cache = PermissionCache(ttl_seconds=60, client_factory=BrokenRedis)

    assert await cache.get("g1", "200") is None
    assert await cache.generation("g1", "200") is None
    await cache.set("g1", "200", 1, generation="0-0")
    await cache.invalidate_user("g1", "200")
    assert await cache.invalidate_guild("g1") == 0
    assert cache.sets == 0


@pytest.mark.anyio
async def test_without_client_everything_is_a_miss():
    cache = PermissionCache(ttl_seconds=60, client_factory=lambda: None)

    assert await cache.generation("g1", "200") is None
    await cache.set("g1", "200", 1, generation="0-0")
    assert await cache.get("g1", "200") is None
    assert await cache.invalidate_guild("g1") == 0
    cache.reset_stats()
    assert cache.stats()["misses"] == 0
