"""Bitfield permission flags and the helpers used to combine and inspect them.

A permission set is a plain non-negative ``int``; each flag occupies one bit.
Bit positions are persisted in ``guild_roles.permissions`` and
``guild_member_permissions.additional_permissions`` so they must never be
renumbered.
"""
from __future__ import annotations

import enum
from typing import Iterable


class PermissionFlag(enum.IntFlag):
    PANEL_CREATE = 1 << 0
    PANEL_EDIT = 1 << 1
    PANEL_DELETE = 1 << 2
    PANEL_DEPLOY = 1 << 3

    TICKET_VIEW_ALL = 1 << 4
    TICKET_CLAIM = 1 << 5
    TICKET_CLOSE_ANY = 1 << 6
    TICKET_ASSIGN = 1 << 7
    TICKET_DELETE = 1 << 8
    TICKET_EXPORT = 1 << 9

    ROLE_CREATE = 1 << 10
    ROLE_EDIT = 1 << 11
    ROLE_DELETE = 1 << 12
    ROLE_ASSIGN = 1 << 13

    MEMBER_VIEW = 1 << 14
    MEMBER_BLACKLIST = 1 << 15
    MEMBER_UNBLACKLIST = 1 << 28

    FORM_CREATE = 1 << 16
    FORM_EDIT = 1 << 17
    FORM_DELETE = 1 << 18

    TAG_CREATE = 1 << 19
    TAG_EDIT = 1 << 20
    TAG_DELETE = 1 << 21
    TAG_USE = 1 << 22

    GUILD_SETTINGS_VIEW = 1 << 23
    GUILD_SETTINGS_EDIT = 1 << 24

    ANALYTICS_VIEW = 1 << 25

    FEEDBACK_VIEW = 1 << 26
    FEEDBACK_MANAGE = 1 << 27


# Declaration order, independent of how the running interpreter iterates IntFlag.
_FLAGS: tuple[tuple[str, int], ...] = tuple(
    (name, int(member)) for name, member in PermissionFlag.__members__.items()
)

ALL_PERMISSIONS: int = 0
for _name, _value in _FLAGS:
    ALL_PERMISSIONS |= _value
del _name, _value

NO_PERMISSIONS: int = 0

DEFAULT_ROLE_PERMISSIONS: dict[str, int] = {
    "admin": ALL_PERMISSIONS,
    "support": int(
        PermissionFlag.TICKET_VIEW_ALL
        | PermissionFlag.TICKET_CLAIM
        | PermissionFlag.TICKET_ASSIGN
        | PermissionFlag.TAG_USE
        | PermissionFlag.MEMBER_VIEW
    ),
    "viewer": int(
        PermissionFlag.ANALYTICS_VIEW
        | PermissionFlag.TICKET_VIEW_ALL
        | PermissionFlag.MEMBER_VIEW
        | PermissionFlag.GUILD_SETTINGS_VIEW
    ),
}


def normalise(permissions: int | None) -> int:
    """Clamp a stored or supplied value to the known flag bits."""

    if permissions is None:
        return NO_PERMISSIONS
    value = int(permissions)
    if value < 0:
        raise ValueError("Permission bitfields cannot be negative")
    return value & ALL_PERMISSIONS


def has_permission(permissions: int, flag: int) -> bool:
    flag = int(flag)
    return (int(permissions) & flag) == flag


def has_any_permission(permissions: int, *flags: int) -> bool:
    return any(has_permission(permissions, flag) for flag in flags)


def has_all_permissions(permissions: int, *flags: int) -> bool:
    return all(has_permission(permissions, flag) for flag in flags)


def add_permissions(permissions: int, *flags: int) -> int:
    result = int(permissions)
    for flag in flags:
        result |= int(flag)
    return result


def remove_permissions(permissions: int, *flags: int) -> int:
    result = int(permissions)
    for flag in flags:
        result &= ~int(flag)
    return result


def combine_permissions(values: Iterable[int | None]) -> int:
    """Union of every bitfield supplied (the cumulative permission)."""

    result = NO_PERMISSIONS
    for value in values:
        if value:
            result |= int(value)
    return result


def permission_names(permissions: int) -> list[str]:
    value = int(permissions)
    return [name for name, flag in _FLAGS if value & flag == flag]


def from_names(names: Iterable[str]) -> int:
    result = NO_PERMISSIONS
    for name in names:
        key = str(name).strip().upper()
        try:
            result |= int(PermissionFlag[key])
        except KeyError as exc:
            raise ValueError(f"Unknown permission {name!r}") from exc
    return result


def to_hex(permissions: int) -> str:
    return format(int(permissions), "x")


def from_hex(value: str) -> int:
    text = str(value).strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    return int(text, 16)


def describe(flag: int) -> str | None:
    """Human label for a single flag, e.g. ``TICKET_CLOSE_ANY`` -> ``Ticket Close Any``."""

    for name, value in _FLAGS:
        if value == int(flag):
            return " ".join(part.capitalize() for part in name.split("_"))
    return None


def permission_level(permissions: int) -> str:
    value = int(permissions)
    if value == ALL_PERMISSIONS:
        return "Admin"
    if has_any_permission(
        value,
        PermissionFlag.GUILD_SETTINGS_EDIT,
        PermissionFlag.ROLE_CREATE,
        PermissionFlag.ROLE_DELETE,
    ):
        return "Manager"
    if has_any_permission(value, PermissionFlag.TICKET_CLOSE_ANY, PermissionFlag.TICKET_ASSIGN):
        return "Support"
    if has_permission(value, PermissionFlag.TICKET_VIEW_ALL):
        return "Viewer"
    return "User"
