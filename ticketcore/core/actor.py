"""Ambient actor binding.

The identity making a call is bound once by the entry point (bot command,
HTTP request, scheduler job) and read by the domain operations it invokes,
instead of being threaded through every signature. The binding lives in a
``ContextVar``: asyncio gives each task its own copy of the context, so a
binding never leaks into a concurrently running, unrelated task.
"""
from __future__ import annotations

import contextvars
import inspect
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ClassVar, Iterator, TypeVar, Union

from ticketcore.core.errors import (
    ActorContextMissingError,
    ActorValidationError,
    PermissionDeniedError,
)
from ticketcore.security import permissions as perms

T = TypeVar("T")

PermissionLookup = Callable[[str, str], Awaitable[int]]

# Discord snowflakes, guild ids and system identifiers share VARCHAR(32) columns.
MAX_ID_LENGTH = 32


@dataclass(frozen=True)
class DiscordActor:
    """A Discord member acting inside a guild (slash commands, buttons).

    ``permissions`` may carry a bitfield already resolved by the caller; when
    it is ``None`` checks consult the permission resolver.
    """

    user_id: str
    guild_id: str
    permissions: int | None = None
    username: str | None = None
    channel_id: str | None = None

    type: ClassVar[str] = "discord_user"


@dataclass(frozen=True)
class WebActor:
    """A dashboard session. Guild scoped operations need ``selected_guild_id``."""

    user_id: str
    selected_guild_id: str | None = None
    permissions: int | None = None
    email: str | None = None
    discord_id: str | None = None

    type: ClassVar[str] = "web_user"


@dataclass(frozen=True)
class SystemActor:
    """Internal callers (scheduler, migrations, maintenance). Bypasses every check."""

    identifier: str

    type: ClassVar[str] = "system"


Actor = Union[DiscordActor, WebActor, SystemActor]

_ACTOR_TYPES = (DiscordActor, WebActor, SystemActor)


def _check_length(field: str, value: str | None) -> None:
    if value is not None and len(str(value)) > MAX_ID_LENGTH:
        raise ActorValidationError(f"Actor {field} exceeds {MAX_ID_LENGTH} characters")


def _validate(actor: Any) -> Actor:
    if not isinstance(actor, _ACTOR_TYPES):
        raise ActorValidationError(f"Unsupported actor type {type(actor).__name__}")
    if isinstance(actor, SystemActor):
        if not actor.identifier:
            raise ActorValidationError("System actors need an identifier")
        _check_length("identifier", actor.identifier)
        return actor
    if not actor.user_id:
        raise ActorValidationError("Actor is missing a user id")
    if isinstance(actor, DiscordActor) and not actor.guild_id:
        raise ActorValidationError("Discord actors must carry a guild id")
    if isinstance(actor, DiscordActor):
        _check_length("user_id", actor.user_id)
        _check_length("guild_id", actor.guild_id)
    else:
        # the id recorded for a web actor is its linked Discord id when present
        _check_length("user_id", actor.discord_id or actor.user_id)
        _check_length("selected_guild_id", actor.selected_guild_id)
    return actor


class ActorContext:
    def __init__(self) -> None:
        self._current: contextvars.ContextVar[Actor | None] = contextvars.ContextVar(
            "ticketcore_actor", default=None
        )
        self._lookup: PermissionLookup | None = None

    def install_resolver(self, lookup: PermissionLookup | None) -> None:
        """Register the coroutine used to resolve permissions for unresolved actors."""

        self._lookup = lookup

    def run(self, actor: Actor, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call ``fn`` with ``actor`` bound, in a copied context.

        When ``fn`` returns an awaitable (a coroutine function, say) the result
        is wrapped so the binding also holds while it is awaited.
        """

        actor = _validate(actor)
        context = contextvars.copy_context()

        def _bound() -> Any:
            self._current.set(actor)
            return fn(*args, **kwargs)

        result = context.run(_bound)
        if inspect.isawaitable(result):
            return self._await_bound(actor, result)
        return result

    async def _await_bound(self, actor: Actor, awaitable: Awaitable[T]) -> T:
        with self.bind(actor):
            return await awaitable

    async def run_async(
        self, actor: Actor, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await ``fn`` with ``actor`` bound for it and everything it awaits or spawns."""

        with self.bind(actor):
            return await fn(*args, **kwargs)

    @contextmanager
    def bind(self, actor: Actor) -> Iterator[Actor]:
        actor = _validate(actor)
        token = self._current.set(actor)
        try:
            yield actor
        finally:
            self._current.reset(token)

    def current(self) -> Actor:
        actor = self._current.get()
        if actor is None:
            raise ActorContextMissingError()
        return actor

    def try_current(self) -> Actor | None:
        return self._current.get()

    def user_id(self) -> str:
        """Discord id the current actor acts as."""

        actor = self.current()
        if isinstance(actor, DiscordActor):
            return actor.user_id
        if isinstance(actor, WebActor):
            return actor.discord_id or actor.user_id
        if isinstance(actor, SystemActor):
            raise ActorValidationError("System actor has no user ID")
        raise ActorValidationError(f"Unsupported actor type {type(actor).__name__}")

    def performer_id(self) -> str:
        """Identifier recorded in audit trails; system actors use their identifier."""

        actor = self.current()
        if isinstance(actor, SystemActor):
            return actor.identifier
        return self.user_id()

    def guild_scope(self, guild_id: str | None = None) -> str:
        """Guild an operation applies to.

        System actors must name the guild explicitly. Everyone else is pinned
        to their own guild and may not address another one.
        """

        actor = self.current()
        if isinstance(actor, SystemActor):
            if not guild_id:
                raise ActorValidationError("System actors must name a guild explicitly")
            return guild_id
        own = self.guild_id()
        if guild_id and guild_id != own:
            raise ActorValidationError("Actor cannot act outside its own guild")
        return own

    def guild_id(self) -> str:
        actor = self.current()
        if isinstance(actor, DiscordActor):
            return actor.guild_id
        if isinstance(actor, WebActor):
            if actor.selected_guild_id:
                return actor.selected_guild_id
            raise ActorValidationError("No guild context available")
        if isinstance(actor, SystemActor):
            raise ActorValidationError("No guild context available")
        raise ActorValidationError(f"Unsupported actor type {type(actor).__name__}")

    def is_system(self) -> bool:
        return isinstance(self.try_current(), SystemActor)

    def has_permission(self, flag: int) -> bool:
        actor = self.current()
        if isinstance(actor, SystemActor):
            return True
        return perms.has_permission(actor.permissions or 0, flag)

    def has_any(self, *flags: int) -> bool:
        return any(self.has_permission(flag) for flag in flags)

    def has_all(self, *flags: int) -> bool:
        return all(self.has_permission(flag) for flag in flags)

    async def effective_permissions(self) -> int:
        """Bitfield the current actor holds in its guild, resolving it if needed."""

        actor = self.current()
        if isinstance(actor, SystemActor):
            return perms.ALL_PERMISSIONS
        if actor.permissions is not None:
            return perms.normalise(actor.permissions)
        if self._lookup is None:
            raise RuntimeError("No permission resolver installed")
        return await self._lookup(self.guild_id(), self.user_id())

    async def require_permission(self, flag: int, *, resolved: int | None = None) -> None:
        """Raise ``PermissionDeniedError`` unless the actor holds every bit of ``flag``.

        ``resolved`` lets a caller that already looked the bitfield up check it
        again without another resolver round-trip.
        """

        actor = self.current()
        if isinstance(actor, SystemActor):
            return
        granted = resolved if resolved is not None else await self.effective_permissions()
        if not perms.has_permission(granted, flag):
            raise PermissionDeniedError(perms.permission_names(flag), actor.type)


actor_context = ActorContext()
