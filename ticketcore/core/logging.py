from __future__ import annotations

from typing import Any

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    log_format = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {message}\n{exception}"
    logger.add(sink=lambda msg: print(msg, end=""), format=log_format, level=level)


def _format_meta(meta: dict[str, Any]) -> str:
    return " ".join(f"{key}={meta[key]}" for key in sorted(meta))


def log_error(message: str, **meta) -> None:
    if meta:
        logger.bind(**meta).error(f"{message} | {_format_meta(meta)}")
    else:
        logger.error(message)


def log_info(message: str, **meta) -> None:
    if meta:
        logger.bind(**meta).info(f"{message} | {_format_meta(meta)}")
    else:
        logger.info(message)


def log_warning(message: str, **meta) -> None:
    if meta:
        logger.bind(**meta).warning(f"{message} | {_format_meta(meta)}")
    else:
        logger.warning(message)


def log_debug(message: str, **meta) -> None:
    if meta:
        logger.bind(**meta).debug(f"{message} | {_format_meta(meta)}")
    else:
        logger.debug(message)


def log_audit_event(
    event_type: str,
    action: str,
    *,
    actor_type: str | None = None,
    user_id: str | None = None,
    guild_id: str | None = None,
    entity_type: str | None = None,
    entity_id: int | str | None = None,
    **extra_meta,
) -> None:
    """
    Log an audit event in a consistent single-line format for external tools.

    Format: ``{event_type} {action} | actor_type=... entity_id=... [extra_meta]``

    Args:
        event_type: Category of the event (e.g. "TICKET LIFECYCLE", "ROLE ACTION")
        action: Specific action performed (e.g. "claimed", "permissions_updated")
        actor_type: Actor variant that performed the action
        user_id: Discord or web user id of the performer, when there is one
        guild_id: Guild the action was scoped to
        entity_type: Type of entity acted upon (e.g. "ticket", "role")
        entity_id: Identifier of the entity acted upon
        **extra_meta: Additional metadata to include in the entry
    """
    meta: dict[str, Any] = {}

    if actor_type:
        meta["actor_type"] = actor_type
    if user_id is not None:
        meta["user_id"] = user_id
    if guild_id is not None:
        meta["guild_id"] = guild_id
    if entity_type:
        meta["entity_type"] = entity_type
    if entity_id is not None:
        meta["entity_id"] = entity_id

    meta.update({key: value for key, value in extra_meta.items() if value is not None})

    message = f"{event_type} {action}"
    if meta:
        message = f"{message} | {_format_meta(meta)}"
        logger.bind(**meta).info(message)
    else:
        logger.info(message)
