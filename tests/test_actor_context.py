import asyncio

import pytest

from ticketcore.core.actor import ActorContext, DiscordActor, SystemActor, WebActor
from ticketcore.core.errors import (
    ActorContextMissingError,
    ActorValidationError,
    PermissionDeniedError,
)
from ticketcore.security.permissions import ALL_PERMISSIONS, PermissionFlag


@pytest.fixture
def anyio_backend():
    return "asyncio"


def test_current_without_binding_raises():
    context = ActorContext()
    assert context.try_current() is None
    with pytest.raises(ActorContextMissingError):
        context.current()


def test_run_binds_only_for_the_call():
    context = ActorContext()
    actor = DiscordActor(user_id="200", guild_id="g1")

    assert context.run(actor, context.user_id) == "200"
    assert context.run(actor, context.guild_id) == "g1"
    assert context.try_current() is None


def test_invalid_actors_are_rejected():
    context = ActorContext()
    with pytest.raises(ActorValidationError):
        context.run(DiscordActor(user_id="200", guild_id=""), lambda: None)
    with pytest.raises(ActorValidationError):
        context.run(SystemActor(identifier=""), lambda: None)
    with pytest.raises(ActorValidationError):
        context.run({"user_id": "200"}, lambda: None)


def test_overlong_identifiers_are_rejected():
    context = ActorContext()
    too_long = "9" * 33
    for actor in (
        DiscordActor(user_id=too_long, guild_id="g1"),
        DiscordActor(user_id="200", guild_id=too_long),
        WebActor(user_id="u-1", discord_id=too_long),
        WebActor(user_id="u-1", selected_guild_id=too_long),
        SystemActor(identifier="x" * 40),
    ):
        with pytest.raises(ActorValidationError):
            context.run(actor, lambda: None)

    dashboard_user = WebActor(user_id="u" * 40, discord_id="200")
    assert context.run(dashboard_user, context.performer_id) == "200"


def test_web_actor_guild_and_user_resolution():
    context = ActorContext()
    no_guild = WebActor(user_id="u-1", discord_id="200")
    with context.bind(no_guild):
        assert context.user_id() == "200"
        with pytest.raises(ActorValidationError):
            context.guild_id()

    with context.bind(WebActor(user_id="u-1", selected_guild_id="g1")):
        assert context.user_id() == "u-1"
        assert context.guild_id() == "g1"


def test_system_actor_has_no_user_but_passes_checks():
    context = ActorContext()
    with context.bind(SystemActor(identifier="maintenance")):
        assert context.is_system()
        assert context.performer_id() == "maintenance"
        assert context.has_all(PermissionFlag.TICKET_CLAIM, PermissionFlag.ROLE_EDIT)
        with pytest.raises(ActorValidationError):
            context.user_id()
        with pytest.raises(ActorValidationError):
            context.guild_id()


def test_pure_checks_use_the_actor_bitfield():
    context = ActorContext()
    actor = DiscordActor(user_id="300", guild_id="g1", permissions=int(PermissionFlag.TICKET_CLAIM))
    with context.bind(actor):
        assert context.has_permission(PermissionFlag.TICKET_CLAIM)
        assert not context.has_permission(PermissionFlag.TICKET_CLOSE_ANY)
        assert context.has_any(PermissionFlag.TICKET_CLOSE_ANY, PermissionFlag.TICKET_CLAIM)
        assert not context.has_all(PermissionFlag.TICKET_CLOSE_ANY, PermissionFlag.TICKET_CLAIM)


def test_guild_scope_pins_members_to_their_guild():
    context = ActorContext()
    with context.bind(DiscordActor(user_id="200", guild_id="g1")):
        assert context.guild_scope() == "g1"
        assert context.guild_scope("g1") == "g1"
        with pytest.raises(ActorValidationError):
            context.guild_scope("g2")
    with context.bind(SystemActor(identifier="bot")):
        assert context.guild_scope("g2") == "g2"
        with pytest.raises(ActorValidationError):
            context.guild_scope()


@pytest.mark.anyio
async def test_require_permission_reports_names():
    context = ActorContext()
    actor = DiscordActor(user_id="400", guild_id="g1", permissions=int(PermissionFlag.TAG_USE))
    with context.bind(actor):
        with pytest.raises(PermissionDeniedError) as excinfo:
            await context.require_permission(PermissionFlag.TICKET_CLOSE_ANY)
    assert excinfo.value.permission_names == ["TICKET_CLOSE_ANY"]
    assert excinfo.value.actor_type == "discord_user"
    assert str(int(PermissionFlag.TAG_USE)) not in excinfo.value.message


@pytest.mark.anyio
async def test_effective_permissions_uses_installed_lookup():
    context = ActorContext()
    calls = []

    async def lookup(guild_id, user_id):
        calls.append((guild_id, user_id))
        return int(PermissionFlag.TICKET_CLAIM)

    context.install_resolver(lookup)
    with context.bind(DiscordActor(user_id="300", guild_id="g1")):
        assert await context.effective_permissions() == PermissionFlag.TICKET_CLAIM
        await context.require_permission(PermissionFlag.TICKET_CLAIM)
        await context.require_permission(PermissionFlag.TICKET_CLOSE_ANY, resolved=ALL_PERMISSIONS)
    with context.bind(SystemActor(identifier="bot")):
        assert await context.effective_permissions() == ALL_PERMISSIONS
    assert calls == [("g1", "300"), ("g1", "300")]


@pytest.mark.anyio
async def test_bindings_do_not_leak_between_concurrent_tasks():
    context = ActorContext()
    seen = {}

    async def operation(label):
        await asyncio.sleep(0)
        first = context.user_id()
        await asyncio.sleep(0.01)
        seen[label] = (first, context.user_id())

    await asyncio.gather(
        context.run_async(DiscordActor(user_id="200", guild_id="g1"), operation, "a"),
        context.run_async(DiscordActor(user_id="300", guild_id="g1"), operation, "b"),
    )

    assert seen == {"a": ("200", "200"), "b": ("300", "300")}
    assert context.try_current() is None


@pytest.mark.anyio
async def test_spawned_tasks_inherit_the_binding():
    context = ActorContext()

    async def child():
        return context.user_id()

    async def parent():
        return await asyncio.create_task(child())

    result = await context.run_async(DiscordActor(user_id="500", guild_id="g1"), parent)
    assert result == "500"


@pytest.mark.anyio
async def test_run_keeps_the_binding_for_coroutine_functions():
    context = ActorContext()

    async def operation():
        await asyncio.sleep(0)
        return context.user_id(), context.guild_id()

    pending = context.run(DiscordActor(user_id="200", guild_id="g1"), operation)
    assert context.try_current() is None

    assert await pending == ("200", "g1")
    assert context.try_current() is None
