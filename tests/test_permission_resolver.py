import pytest

from ticketcore.core.actor import DiscordActor, actor_context
from ticketcore.core.config import Settings
from ticketcore.core.errors import NotFoundError
from ticketcore.security.permissions import ALL_PERMISSIONS, PermissionFlag
from ticketcore.services import permissions as permission_service
from ticketcore.services.permission_cache import PermissionCache


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_store(monkeypatch):
    state = {
        "guilds": {"g1": {"id": "g1", "owner_discord_id": "100"}},
        "roles": {("g1", "300"): [int(PermissionFlag.TICKET_CLAIM), int(PermissionFlag.TAG_USE)]},
        "grants": {("g1", "300"): int(PermissionFlag.TICKET_CLOSE_ANY)},
        "calls": 0,
    }

    async def fake_get_guild(guild_id, *, tx=None):
        return state["guilds"].get(guild_id)

    async def fake_role_permissions(guild_id, user_id):
        state["calls"] += 1
        return list(state["roles"].get((guild_id, user_id), []))

    async def fake_grant(guild_id, user_id):
        return state["grants"].get((guild_id, user_id))

    monkeypatch.setattr(permission_service.guild_repo, "get_guild", fake_get_guild)
    monkeypatch.setattr(
        permission_service.role_repo, "list_active_role_permissions", fake_role_permissions
    )
    monkeypatch.setattr(
        permission_service.grant_repo, "get_additional_permissions", fake_grant
    )
    return state


@pytest.mark.anyio
async def test_owner_gets_everything(fake_store):
    resolver = permission_service.PermissionResolver()
    assert await resolver.resolve("g1", "100") == ALL_PERMISSIONS
    assert fake_store["calls"] == 0


@pytest.mark.anyio
async def test_roles_and_grant_are_unioned(fake_store):
    resolver = permission_service.PermissionResolver()
    expected = PermissionFlag.TICKET_CLAIM | PermissionFlag.TAG_USE | PermissionFlag.TICKET_CLOSE_ANY
    assert await resolver.resolve("g1", "300") == expected


@pytest.mark.anyio
async def test_member_without_roles_has_nothing(fake_store):
    resolver = permission_service.PermissionResolver()
    assert await resolver.resolve("g1", "200") == 0


@pytest.mark.anyio
async def test_missing_guild_is_not_found(fake_store):
    resolver = permission_service.PermissionResolver()
    with pytest.raises(NotFoundError):
        await resolver.resolve("missing", "200")


@pytest.mark.anyio
async def test_results_are_cached_until_invalidated(fake_store, fake_redis):
    cache = PermissionCache(ttl_seconds=300, client_factory=lambda: fake_redis)
    resolver = permission_service.PermissionResolver(cache=cache)

    first = await resolver.resolve("g1", "300")
    fake_store["roles"][("g1", "300")] = []
    assert await resolver.resolve("g1", "300") == first
    assert fake_store["calls"] == 1

    await resolver.invalidate_user("g1", "300")
    assert await resolver.resolve("g1", "300") == PermissionFlag.TICKET_CLOSE_ANY
    assert fake_store["calls"] == 2


@pytest.mark.anyio
async def test_owner_result_is_cached_too(fake_store, fake_redis):
    cache = PermissionCache(ttl_seconds=300, client_factory=lambda: fake_redis)
    resolver = permission_service.PermissionResolver(cache=cache)

    await resolver.resolve("g1", "100")

    assert fake_redis.store["perms:g1:100"] == f"0-0:{int(ALL_PERMISSIONS)}"


@pytest.mark.anyio
async def test_resolve_racing_a_role_change_does_not_pin_stale_bits(
    fake_store, fake_redis, monkeypatch
):
    cache = PermissionCache(ttl_seconds=300, client_factory=lambda: fake_redis)
    resolver = permission_service.PermissionResolver(cache=cache)
    real_roles = permission_service.role_repo.list_active_role_permissions

    async def roles_then_role_change(guild_id, user_id):
        stale = await real_roles(guild_id, user_id)
        # the role change commits and invalidates while this resolve is in flight
        fake_store["roles"][(guild_id, user_id)] = []
        await resolver.invalidate_guild(guild_id)
        return stale

    monkeypatch.setattr(
        permission_service.role_repo, "list_active_role_permissions", roles_then_role_change
    )
    stale = await resolver.resolve("g1", "300")
    monkeypatch.setattr(permission_service.role_repo, "list_active_role_permissions", real_roles)

    assert stale & PermissionFlag.TICKET_CLAIM
    assert await resolver.resolve("g1", "300") == PermissionFlag.TICKET_CLOSE_ANY
    assert fake_store["calls"] == 2


@pytest.mark.anyio
async def test_dev_override_bypasses_storage_and_cache(fake_store, fake_redis):
    cache = PermissionCache(ttl_seconds=300, client_factory=lambda: fake_redis)
    override = permission_service.DevPermissionOverride(permissions=int(PermissionFlag.TAG_USE))
    resolver = permission_service.PermissionResolver(cache=cache, override=override)

    assert await resolver.resolve("missing", "200") == PermissionFlag.TAG_USE
    assert fake_redis.store == {}
    assert fake_store["calls"] == 0


def test_dev_override_is_never_built_in_production():
    production = Settings(ENVIRONMENT="production", DEV_PERMISSIONS_HEX="ff")
    development = Settings(ENVIRONMENT="development", DEV_PERMISSIONS_HEX="0xff")
    malformed = Settings(ENVIRONMENT="development", DEV_PERMISSIONS_HEX="zz")

    assert permission_service.DevPermissionOverride.from_settings(production) is None
    assert permission_service.DevPermissionOverride.from_settings(malformed) is None
    override = permission_service.DevPermissionOverride.from_settings(development)
    assert override is not None
    assert override.permissions == 0xFF


def test_build_resolver_respects_environment():
    resolver = permission_service.build_resolver(Settings(ENVIRONMENT="prod", DEV_PERMISSIONS_HEX="ff"))
    assert resolver.override is None
    assert resolver.cache is not None
    assert resolver.cache.ttl_seconds == 300


@pytest.mark.anyio
async def test_get_my_permissions_for_bound_actor(fake_store):
    permission_service.configure_resolver(permission_service.PermissionResolver())
    try:
        with actor_context.bind(DiscordActor(user_id="300", guild_id="g1")):
            summary = await permission_service.get_my_permissions()
    finally:
        permission_service.configure_resolver(None)

    assert summary["names"] == ["TICKET_CLAIM", "TICKET_CLOSE_ANY", "TAG_USE"]
    assert summary["level"] == "Support"
