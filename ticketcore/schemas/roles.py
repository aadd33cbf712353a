from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ticketcore.core.actor import MAX_ID_LENGTH
from ticketcore.security.permissions import ALL_PERMISSIONS


def _check_bitfield(value: int) -> int:
    if value < 0:
        raise ValueError("Permission bitfields cannot be negative")
    if value & ~int(ALL_PERMISSIONS):
        raise ValueError("Permission bitfield contains unknown bits")
    return value


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: int = 0
    color: str = Field(default="#5865F2", pattern=r"^#[0-9A-Fa-f]{6}$")
    position: int = Field(default=0, ge=0, le=1000)

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("permissions")
    @classmethod
    def _valid_permissions(cls, value: int) -> int:
        return _check_bitfield(value)


class RolePermissionsUpdate(BaseModel):
    role_id: int = Field(..., ge=1, validation_alias=AliasChoices("role_id", "roleId"))
    permissions: int

    @field_validator("permissions")
    @classmethod
    def _valid_permissions(cls, value: int) -> int:
        return _check_bitfield(value)


class RoleMembershipChange(BaseModel):
    role_id: int = Field(..., ge=1, validation_alias=AliasChoices("role_id", "roleId"))
    user_id: str = Field(
        ...,
        min_length=1,
        max_length=MAX_ID_LENGTH,
        validation_alias=AliasChoices("user_id", "userId"),
    )


class PermissionGrantUpdate(BaseModel):
    user_id: str = Field(
        ...,
        min_length=1,
        max_length=MAX_ID_LENGTH,
        validation_alias=AliasChoices("user_id", "userId"),
    )
    permissions: int

    @field_validator("permissions")
    @classmethod
    def _valid_permissions(cls, value: int) -> int:
        return _check_bitfield(value)
