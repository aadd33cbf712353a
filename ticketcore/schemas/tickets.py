from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ticketcore.core.actor import MAX_ID_LENGTH
from ticketcore.schemas.common import DISCORD_ID_PATTERN

MAX_AUTO_CLOSE_HOURS = 720


class TicketCreate(BaseModel):
    guild_id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=MAX_ID_LENGTH,
        validation_alias=AliasChoices("guild_id", "guildId"),
    )
    opener_id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=MAX_ID_LENGTH,
        validation_alias=AliasChoices("opener_id", "openerId"),
    )
    subject: Optional[str] = Field(default=None, min_length=1, max_length=100)
    channel_id: Optional[str] = Field(
        default=None,
        pattern=DISCORD_ID_PATTERN,
        validation_alias=AliasChoices("channel_id", "channelId"),
    )
    panel_id: Optional[int] = Field(
        default=None, ge=1, validation_alias=AliasChoices("panel_id", "panelId")
    )

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class TicketClaim(BaseModel):
    ticket_id: int = Field(..., ge=1, validation_alias=AliasChoices("ticket_id", "ticketId"))
    force: bool = False


class TicketUnclaim(BaseModel):
    ticket_id: int = Field(..., ge=1, validation_alias=AliasChoices("ticket_id", "ticketId"))


class TicketClose(BaseModel):
    ticket_id: int = Field(..., ge=1, validation_alias=AliasChoices("ticket_id", "ticketId"))
    reason: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(str_strip_whitespace=True)


class TicketReopen(BaseModel):
    ticket_id: int = Field(..., ge=1, validation_alias=AliasChoices("ticket_id", "ticketId"))


class CloseRequestCreate(BaseModel):
    ticket_id: int = Field(..., ge=1, validation_alias=AliasChoices("ticket_id", "ticketId"))
    reason: Optional[str] = Field(default=None, max_length=500)
    auto_close_hours: Optional[int] = Field(
        default=None,
        ge=1,
        le=MAX_AUTO_CLOSE_HOURS,
        validation_alias=AliasChoices("auto_close_hours", "autoCloseHours"),
    )

    model_config = ConfigDict(str_strip_whitespace=True)


class CloseRequestCancel(BaseModel):
    ticket_id: int = Field(..., ge=1, validation_alias=AliasChoices("ticket_id", "ticketId"))


class TicketAutoClose(BaseModel):
    ticket_id: int = Field(..., ge=1, validation_alias=AliasChoices("ticket_id", "ticketId"))
    closed_by_id: str = Field(
        ...,
        min_length=1,
        max_length=MAX_ID_LENGTH,
        validation_alias=AliasChoices("closed_by_id", "closedById"),
    )


class AutoCloseExclusion(BaseModel):
    ticket_id: int = Field(..., ge=1, validation_alias=AliasChoices("ticket_id", "ticketId"))
    exclude: bool
