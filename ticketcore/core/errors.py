"""Typed failures raised by the ticket core.

Callers above the core (the bot command layer, the HTTP adapter, the
scheduler worker) branch on these types; none of them carry transport status
codes.
"""
from __future__ import annotations

from typing import Iterable


class TicketCoreError(Exception):
    """Base class for every error the core raises on purpose."""

    code = "ticketcore_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(TicketCoreError):
    code = "not_found"

    def __init__(self, entity: str, identifier: object) -> None:
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.identifier = identifier


class InvalidTransitionError(TicketCoreError):
    code = "invalid_transition"

    def __init__(self, message: str, *, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class ConflictError(TicketCoreError):
    code = "conflict"


class AlreadyClaimedError(ConflictError):
    code = "already_claimed"

    def __init__(self, ticket_id: int, claimed_by_id: str | None) -> None:
        if claimed_by_id:
            message = f"Ticket is already claimed by {claimed_by_id}"
        else:
            message = "Ticket is already claimed"
        super().__init__(message)
        self.ticket_id = ticket_id
        self.claimed_by_id = claimed_by_id


class PermissionDeniedError(TicketCoreError):
    """The bound actor lacks a permission; carries names, never the raw bitfield."""

    code = "permission_denied"

    def __init__(self, permission_names: Iterable[str] | str, actor_type: str) -> None:
        if isinstance(permission_names, str):
            names = [permission_names]
        else:
            names = list(permission_names)
        joined = ", ".join(names) or "UNKNOWN"
        super().__init__(f"Missing permission {joined} for {actor_type} actor")
        self.permission_names = names
        self.actor_type = actor_type


class ActorContextMissingError(TicketCoreError):
    code = "actor_context_missing"

    def __init__(self) -> None:
        super().__init__("No actor is bound to the current context")


class ActorValidationError(TicketCoreError):
    code = "actor_invalid"


class ValidationError(TicketCoreError):
    """Malformed input, raised before any transaction is opened."""

    code = "validation_error"

    def __init__(self, message: str, *, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class TransactionTimeoutError(TicketCoreError):
    code = "transaction_timeout"

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Transaction exceeded {timeout:g}s and was rolled back")
        self.timeout = timeout


class StorageError(TicketCoreError):
    code = "storage_error"
