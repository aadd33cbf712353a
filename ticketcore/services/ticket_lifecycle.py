"""Ticket state machine: OPEN <-> CLAIMED, OPEN/CLAIMED -> CLOSED, CLOSED -> OPEN.

Each transition is a single ``db.run_in_transaction`` call which re-reads the
ticket under a row lock, checks the state precondition and then the actor's
permission, applies a conditional UPDATE guarded by the state it checked, and
appends exactly one lifecycle event. A failure anywhere rolls back both the
ticket change and the event.

Permissions are resolved before the transaction opens and checked inside it,
so the transaction itself only touches the database.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from ticketcore.core.actor import actor_context
from ticketcore.core.config import get_settings
from ticketcore.core.database import DRIVER_ERRORS, Transaction, db
from ticketcore.core.errors import (
    ActorValidationError,
    AlreadyClaimedError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from ticketcore.core.logging import log_audit_event, log_error
from ticketcore.repositories import guilds as guild_repo
from ticketcore.repositories import lifecycle_events as event_repo
from ticketcore.repositories import tickets as ticket_repo
from ticketcore.repositories.tickets import STATUS_CLAIMED, STATUS_CLOSED, STATUS_OPEN
from ticketcore.schemas.common import parse_payload
from ticketcore.schemas.tickets import (
    AutoCloseExclusion,
    CloseRequestCancel,
    CloseRequestCreate,
    TicketAutoClose,
    TicketClaim,
    TicketClose,
    TicketCreate,
    TicketReopen,
    TicketUnclaim,
)
from ticketcore.security.permissions import PermissionFlag
from ticketcore.services import permissions as permission_service
from ticketcore.services.time_utils import hours_from_now, utcnow

T = TypeVar("T")

AUTO_CLOSE_REASON = "Automatically closed due to no response on close request"

PARTICIPANT_OPENER = "opener"
PARTICIPANT_STAFF = "staff"

# Marker permission name reported when only the ticket opener may act.
OPENER_ONLY = "TICKET_OPENER"
# Marker permission name reported when only a system actor may act.
SYSTEM_ONLY = "SYSTEM_ACTOR"


@asynccontextmanager
async def _storage_errors() -> AsyncIterator[None]:
    try:
        yield
    except DRIVER_ERRORS as exc:
        log_error("Ticket storage operation failed", error=str(exc))
        if actor_context.is_system():
            raise StorageError(f"Storage failure: {exc}") from exc
        raise StorageError("The ticket store is unavailable, please try again") from exc


async def _run(callback: Callable[[Transaction], Awaitable[T]]) -> T:
    async with _storage_errors():
        return await db.run_in_transaction(
            callback, timeout=get_settings().transaction_timeout
        )


async def _resolved_permissions() -> int | None:
    if actor_context.is_system():
        return None
    async with _storage_errors():
        return await permission_service.current_permissions()


def _scope_guild() -> str | None:
    """Guild the bound actor is confined to; ``None`` for system actors."""

    if actor_context.is_system():
        return None
    return actor_context.guild_id()


async def _load_locked(tx: Transaction, ticket_id: int, guild_id: str | None) -> dict[str, Any]:
    ticket = await ticket_repo.get_ticket(ticket_id, tx=tx, for_update=True)
    if not ticket or (guild_id is not None and ticket["guild_id"] != guild_id):
        raise NotFoundError("Ticket", ticket_id)
    return ticket


def _ensure_applied(affected: int, ticket: dict[str, Any], action: str) -> None:
    if not affected:
        raise InvalidTransitionError(
            f"Ticket changed concurrently; {action} was not applied",
            current_status=ticket["status"],
        )


def _audit(action: str, ticket: dict[str, Any], **meta: Any) -> None:
    actor = actor_context.current()
    log_audit_event(
        "TICKET LIFECYCLE",
        action,
        actor_type=actor.type,
        user_id=actor_context.performer_id(),
        guild_id=ticket["guild_id"],
        entity_type="ticket",
        entity_id=ticket["id"],
        number=ticket.get("number"),
        status=ticket.get("status"),
        **meta,
    )


async def create(payload: Any = None, **fields: Any) -> dict[str, Any]:
    """Open a ticket for the bound actor (or, for system actors, the named opener)."""

    data = parse_payload(TicketCreate, payload, **fields)
    guild_id = actor_context.guild_scope(data.guild_id)
    if actor_context.is_system():
        if not data.opener_id:
            raise ValidationError("System actors must supply opener_id")
        opener_id = data.opener_id
    else:
        opener_id = actor_context.user_id()
        if data.opener_id and data.opener_id != opener_id:
            raise ActorValidationError("Tickets can only be opened for yourself")

    async def _create(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        guild = await guild_repo.get_guild(guild_id, tx=tx)
        if not guild:
            raise NotFoundError("Guild", guild_id)

        # The counter increment locks the guild row, which also serialises the
        # limit check below against other creates in the same guild.
        number = await guild_repo.allocate_ticket_number(tx, guild_id)
        if number is None:
            raise NotFoundError("Guild", guild_id)

        limit = guild["max_tickets_per_user"]
        if limit > 0:
            active = await ticket_repo.count_active_tickets_for_opener(tx, guild_id, opener_id)
            if active >= limit:
                raise ConflictError(f"You can only have {limit} open ticket(s) at a time")

        ticket_id = await ticket_repo.insert_ticket(
            tx,
            guild_id=guild_id,
            number=number,
            opener_id=opener_id,
            subject=data.subject,
            channel_id=data.channel_id,
            panel_id=data.panel_id,
            created_at=now,
        )
        await ticket_repo.add_participant(
            tx, ticket_id, opener_id, role=PARTICIPANT_OPENER, joined_at=now
        )
        await event_repo.append_event(
            tx,
            ticket_id=ticket_id,
            action=event_repo.ACTION_CREATED,
            performed_by_id=actor_context.performer_id(),
            timestamp=now,
            details={"subject": data.subject, "panel_id": data.panel_id, "number": number},
        )
        return await _reload(tx, ticket_id)

    ticket = await _run(_create)
    _audit(event_repo.ACTION_CREATED, ticket, opener_id=opener_id)
    return ticket


async def _reload(tx: Transaction, ticket_id: int) -> dict[str, Any]:
    ticket = await ticket_repo.get_ticket(ticket_id, tx=tx)
    if not ticket:
        raise NotFoundError("Ticket", ticket_id)
    return ticket


async def claim(ticket_id: int, *, force: bool = False) -> dict[str, Any]:
    data = parse_payload(TicketClaim, ticket_id=ticket_id, force=force)
    guild_id = _scope_guild()
    claimer_id = actor_context.user_id()
    permissions = await _resolved_permissions()

    async def _claim(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        ticket = await _load_locked(tx, data.ticket_id, guild_id)
        status = ticket["status"]
        if status == STATUS_CLOSED:
            raise InvalidTransitionError("Cannot claim a closed ticket", current_status=status)
        if status == STATUS_CLAIMED and not data.force:
            raise AlreadyClaimedError(data.ticket_id, ticket["claimed_by_id"])
        if status == STATUS_CLAIMED and ticket["claimed_by_id"] == claimer_id:
            raise InvalidTransitionError(
                "Ticket is already claimed by you", current_status=status
            )
        await actor_context.require_permission(PermissionFlag.TICKET_CLAIM, resolved=permissions)

        previous = ticket["claimed_by_id"]
        affected = await ticket_repo.update_ticket_if(
            tx,
            data.ticket_id,
            expected_status=status,
            expected_claimed_by=previous,
            status=STATUS_CLAIMED,
            claimed_by_id=claimer_id,
            updated_at=now,
        )
        if not affected:
            current = await _reload(tx, data.ticket_id)
            raise AlreadyClaimedError(data.ticket_id, current["claimed_by_id"])

        await ticket_repo.add_participant(
            tx, data.ticket_id, claimer_id, role=PARTICIPANT_STAFF, joined_at=now
        )
        details: dict[str, Any] = {}
        if previous:
            details = {"force": True, "previous_claimed_by_id": previous}
        await event_repo.append_event(
            tx,
            ticket_id=data.ticket_id,
            action=event_repo.ACTION_CLAIMED,
            performed_by_id=actor_context.performer_id(),
            claimed_by_id=claimer_id,
            timestamp=now,
            details=details,
        )
        return await _reload(tx, data.ticket_id)

    ticket = await _run(_claim)
    _audit(event_repo.ACTION_CLAIMED, ticket, claimed_by_id=claimer_id, force=data.force or None)
    return ticket


async def unclaim(ticket_id: int) -> dict[str, Any]:
    data = parse_payload(TicketUnclaim, ticket_id=ticket_id)
    guild_id = _scope_guild()
    permissions = await _resolved_permissions()

    async def _unclaim(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        ticket = await _load_locked(tx, data.ticket_id, guild_id)
        if ticket["status"] != STATUS_CLAIMED:
            raise InvalidTransitionError(
                "Ticket is not claimed", current_status=ticket["status"]
            )
        previous = ticket["claimed_by_id"]
        if actor_context.performer_id() != previous:
            await actor_context.require_permission(
                PermissionFlag.TICKET_CLAIM, resolved=permissions
            )

        affected = await ticket_repo.update_ticket_if(
            tx,
            data.ticket_id,
            expected_status=STATUS_CLAIMED,
            expected_claimed_by=previous,
            status=STATUS_OPEN,
            claimed_by_id=None,
            updated_at=now,
        )
        _ensure_applied(affected, ticket, "unclaim")
        await event_repo.append_event(
            tx,
            ticket_id=data.ticket_id,
            action=event_repo.ACTION_UNCLAIMED,
            performed_by_id=actor_context.performer_id(),
            timestamp=now,
            details={"previous_claimed_by_id": previous},
        )
        return await _reload(tx, data.ticket_id)

    ticket = await _run(_unclaim)
    _audit(event_repo.ACTION_UNCLAIMED, ticket)
    return ticket


async def close(ticket_id: int, *, reason: str | None = None) -> dict[str, Any]:
    data = parse_payload(TicketClose, ticket_id=ticket_id, reason=reason)
    guild_id = _scope_guild()
    permissions = await _resolved_permissions()

    async def _close(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        ticket = await _load_locked(tx, data.ticket_id, guild_id)
        status = ticket["status"]
        if status == STATUS_CLOSED:
            raise InvalidTransitionError("Ticket is already closed", current_status=status)
        requester = actor_context.performer_id()
        if requester not in (ticket["opener_id"], ticket["claimed_by_id"]):
            await actor_context.require_permission(
                PermissionFlag.TICKET_CLOSE_ANY, resolved=permissions
            )

        affected = await ticket_repo.update_ticket_if(
            tx,
            data.ticket_id,
            expected_status=status,
            status=STATUS_CLOSED,
            claimed_by_id=None,
            closed_at=now,
            close_request_id=None,
            close_request_by=None,
            close_request_reason=None,
            close_request_created_at=None,
            auto_close_at=None,
            updated_at=now,
        )
        _ensure_applied(affected, ticket, "close")
        await event_repo.append_event(
            tx,
            ticket_id=data.ticket_id,
            action=event_repo.ACTION_CLOSED,
            performed_by_id=requester,
            claimed_by_id=ticket["claimed_by_id"],
            closed_by_id=requester,
            close_reason=data.reason,
            timestamp=now,
        )
        return await _reload(tx, data.ticket_id)

    ticket = await _run(_close)
    _audit(event_repo.ACTION_CLOSED, ticket, reason=data.reason)
    return ticket


async def reopen(ticket_id: int) -> dict[str, Any]:
    data = parse_payload(TicketReopen, ticket_id=ticket_id)
    guild_id = _scope_guild()
    permissions = await _resolved_permissions()

    async def _reopen(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        ticket = await _load_locked(tx, data.ticket_id, guild_id)
        if ticket["status"] != STATUS_CLOSED:
            raise InvalidTransitionError(
                "Only closed tickets can be reopened", current_status=ticket["status"]
            )
        if actor_context.performer_id() != ticket["opener_id"]:
            await actor_context.require_permission(
                PermissionFlag.TICKET_CLOSE_ANY, resolved=permissions
            )

        affected = await ticket_repo.update_ticket_if(
            tx,
            data.ticket_id,
            expected_status=STATUS_CLOSED,
            status=STATUS_OPEN,
            closed_at=None,
            updated_at=now,
        )
        _ensure_applied(affected, ticket, "reopen")
        await event_repo.append_event(
            tx,
            ticket_id=data.ticket_id,
            action=event_repo.ACTION_REOPENED,
            performed_by_id=actor_context.performer_id(),
            timestamp=now,
        )
        return await _reload(tx, data.ticket_id)

    ticket = await _run(_reopen)
    _audit(event_repo.ACTION_REOPENED, ticket)
    return ticket


async def request_close(
    ticket_id: int,
    *,
    reason: str | None = None,
    auto_close_hours: int | None = None,
) -> dict[str, Any]:
    """Record a pending close request; who may ask is the caller's policy."""

    data = parse_payload(
        CloseRequestCreate,
        ticket_id=ticket_id,
        reason=reason,
        auto_close_hours=auto_close_hours,
    )
    guild_id = _scope_guild()

    async def _request(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        ticket = await _load_locked(tx, data.ticket_id, guild_id)
        if ticket["status"] != STATUS_OPEN:
            raise InvalidTransitionError(
                "Close requests can only be made on open tickets",
                current_status=ticket["status"],
            )
        if ticket["close_request_id"]:
            raise InvalidTransitionError(
                "A close request is already pending", current_status=ticket["status"]
            )

        close_request_id = f"cr_{data.ticket_id}_{int(now.timestamp() * 1000)}"
        auto_close_at = None
        if data.auto_close_hours and not ticket["exclude_from_autoclose"]:
            auto_close_at = hours_from_now(data.auto_close_hours, now=now)
        requester = actor_context.performer_id()

        affected = await ticket_repo.update_ticket_if(
            tx,
            data.ticket_id,
            expected_status=STATUS_OPEN,
            close_request_pending=False,
            close_request_id=close_request_id,
            close_request_by=requester,
            close_request_reason=data.reason,
            close_request_created_at=now,
            auto_close_at=auto_close_at,
            updated_at=now,
        )
        _ensure_applied(affected, ticket, "close request")
        await event_repo.append_event(
            tx,
            ticket_id=data.ticket_id,
            action=event_repo.ACTION_CLOSE_REQUESTED,
            performed_by_id=requester,
            close_reason=data.reason,
            timestamp=now,
            details={
                "close_request_id": close_request_id,
                "auto_close_hours": data.auto_close_hours,
                "auto_close_at": auto_close_at.isoformat() if auto_close_at else None,
            },
        )
        return await _reload(tx, data.ticket_id)

    ticket = await _run(_request)
    _audit(
        event_repo.ACTION_CLOSE_REQUESTED,
        ticket,
        close_request_id=ticket["close_request_id"],
        auto_close_at=ticket["auto_close_at"],
    )
    return ticket


async def cancel_close_request(ticket_id: int) -> dict[str, Any]:
    data = parse_payload(CloseRequestCancel, ticket_id=ticket_id)
    guild_id = _scope_guild()

    async def _cancel(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        ticket = await _load_locked(tx, data.ticket_id, guild_id)
        if not ticket["close_request_id"]:
            raise InvalidTransitionError(
                "No close request is pending", current_status=ticket["status"]
            )
        if not actor_context.is_system() and actor_context.performer_id() != ticket["opener_id"]:
            raise PermissionDeniedError(OPENER_ONLY, actor_context.current().type)

        affected = await ticket_repo.update_ticket_if(
            tx,
            data.ticket_id,
            expected_status=ticket["status"],
            close_request_pending=True,
            close_request_id=None,
            close_request_by=None,
            close_request_reason=None,
            close_request_created_at=None,
            auto_close_at=None,
            updated_at=now,
        )
        _ensure_applied(affected, ticket, "cancel close request")
        await event_repo.append_event(
            tx,
            ticket_id=data.ticket_id,
            action=event_repo.ACTION_CLOSE_REQUEST_CANCELLED,
            performed_by_id=actor_context.performer_id(),
            timestamp=now,
            details={"close_request_id": ticket["close_request_id"]},
        )
        return await _reload(tx, data.ticket_id)

    ticket = await _run(_cancel)
    _audit(event_repo.ACTION_CLOSE_REQUEST_CANCELLED, ticket)
    return ticket


async def auto_close(ticket_id: int, closed_by_id: str) -> dict[str, Any]:
    """Close a ticket whose close request went unanswered.

    Invoked by the scheduler with at-least-once delivery. Preconditions are
    re-checked inside the transaction, so a redelivery after the ticket closed
    raises ``InvalidTransitionError`` and appends nothing.
    """

    data = parse_payload(TicketAutoClose, ticket_id=ticket_id, closed_by_id=closed_by_id)
    if not actor_context.is_system():
        raise PermissionDeniedError(SYSTEM_ONLY, actor_context.current().type)

    async def _auto_close(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        ticket = await _load_locked(tx, data.ticket_id, None)
        if ticket["status"] != STATUS_OPEN:
            raise InvalidTransitionError(
                "Only open tickets can be auto-closed", current_status=ticket["status"]
            )
        if not ticket["close_request_id"]:
            raise InvalidTransitionError(
                "Ticket has no pending close request", current_status=ticket["status"]
            )
        if ticket["exclude_from_autoclose"]:
            raise InvalidTransitionError(
                "Ticket is excluded from auto-close", current_status=ticket["status"]
            )

        affected = await ticket_repo.update_ticket_if(
            tx,
            data.ticket_id,
            expected_status=STATUS_OPEN,
            close_request_pending=True,
            status=STATUS_CLOSED,
            closed_at=now,
            close_request_id=None,
            close_request_by=None,
            close_request_reason=None,
            close_request_created_at=None,
            auto_close_at=None,
            updated_at=now,
        )
        _ensure_applied(affected, ticket, "auto-close")
        await event_repo.append_event(
            tx,
            ticket_id=data.ticket_id,
            action=event_repo.ACTION_AUTO_CLOSED,
            performed_by_id=data.closed_by_id,
            closed_by_id=data.closed_by_id,
            close_reason=AUTO_CLOSE_REASON,
            timestamp=now,
            details={
                "close_request_id": ticket["close_request_id"],
                "auto_close_at": ticket["auto_close_at"].isoformat()
                if ticket["auto_close_at"]
                else None,
            },
        )
        return await _reload(tx, data.ticket_id)

    ticket = await _run(_auto_close)
    _audit(event_repo.ACTION_AUTO_CLOSED, ticket, closed_by_id=data.closed_by_id)
    return ticket


async def set_auto_close_exclusion(ticket_id: int, exclude: bool) -> dict[str, Any]:
    """Exclude a ticket from (or return it to) auto-close; excluding drops a pending deadline."""

    data = parse_payload(AutoCloseExclusion, ticket_id=ticket_id, exclude=exclude)
    guild_id = _scope_guild()
    permissions = await _resolved_permissions()

    async def _set(tx: Transaction) -> dict[str, Any]:
        now = utcnow()
        ticket = await _load_locked(tx, data.ticket_id, guild_id)
        status = ticket["status"]
        if status == STATUS_CLOSED:
            raise InvalidTransitionError(
                "Closed tickets have no auto-close to change", current_status=status
            )
        if ticket["exclude_from_autoclose"] == data.exclude:
            state = "already excluded from" if data.exclude else "already subject to"
            raise InvalidTransitionError(f"Ticket is {state} auto-close", current_status=status)
        await actor_context.require_permission(
            PermissionFlag.TICKET_CLOSE_ANY, resolved=permissions
        )

        updates: dict[str, Any] = {"exclude_from_autoclose": data.exclude, "updated_at": now}
        if data.exclude:
            updates["auto_close_at"] = None
        affected = await ticket_repo.update_ticket_if(
            tx, data.ticket_id, expected_status=status, **updates
        )
        _ensure_applied(affected, ticket, "auto-close exclusion")
        action = (
            event_repo.ACTION_AUTO_CLOSE_EXCLUDED
            if data.exclude
            else event_repo.ACTION_AUTO_CLOSE_INCLUDED
        )
        await event_repo.append_event(
            tx,
            ticket_id=data.ticket_id,
            action=action,
            performed_by_id=actor_context.performer_id(),
            timestamp=now,
            details={
                "cleared_auto_close_at": ticket["auto_close_at"].isoformat()
                if data.exclude and ticket["auto_close_at"]
                else None,
            },
        )
        return await _reload(tx, data.ticket_id)

    ticket = await _run(_set)
    _audit(
        event_repo.ACTION_AUTO_CLOSE_EXCLUDED
        if data.exclude
        else event_repo.ACTION_AUTO_CLOSE_INCLUDED,
        ticket,
    )
    return ticket


async def _visible_ticket(ticket_id: int) -> dict[str, Any]:
    """Ticket as seen by the bound actor: its own guild, and its own ticket unless TICKET_VIEW_ALL."""

    guild_id = _scope_guild()
    async with _storage_errors():
        ticket = await ticket_repo.get_ticket(ticket_id)
    if not ticket or (guild_id is not None and ticket["guild_id"] != guild_id):
        raise NotFoundError("Ticket", ticket_id)
    return await _check_visible(ticket)


async def _check_visible(ticket: dict[str, Any]) -> dict[str, Any]:
    if actor_context.is_system():
        return ticket
    if actor_context.performer_id() in (ticket["opener_id"], ticket["claimed_by_id"]):
        return ticket
    permissions = await _resolved_permissions()
    await actor_context.require_permission(PermissionFlag.TICKET_VIEW_ALL, resolved=permissions)
    return ticket


async def get(ticket_id: int) -> dict[str, Any]:
    return await _visible_ticket(ticket_id)


async def get_by_number(number: int, *, guild_id: str | None = None) -> dict[str, Any]:
    """Ticket by its per-guild number, the one members see in channel names."""

    guild_id = actor_context.guild_scope(guild_id)
    async with _storage_errors():
        ticket = await ticket_repo.get_ticket_by_number(guild_id, number)
    if not ticket:
        raise NotFoundError("Ticket", f"{guild_id}#{number}")
    return await _check_visible(ticket)


async def get_history(ticket_id: int) -> list[dict[str, Any]]:
    """Lifecycle events for the ticket, newest first."""

    await _visible_ticket(ticket_id)
    async with _storage_errors():
        return await event_repo.list_events(ticket_id)


async def get_current_claim(ticket_id: int) -> Optional[str]:
    """Current claimer, read from the ticket row rather than the event log."""

    ticket = await _visible_ticket(ticket_id)
    if ticket["status"] == STATUS_CLAIMED:
        return ticket["claimed_by_id"]
    return None
