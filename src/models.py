"""Shared Pydantic data models for the WhatsApp chat relay."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RelayStage(str, Enum):
    """Steps of one webhook invocation, in order."""

    RECEIVED = "received"
    DEDUPLICATED = "deduplicated"
    CONFIG_RESOLVED = "config_resolved"
    SESSION_ACQUIRED = "session_acquired"
    CONVERSED = "conversed"
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"


# --- Inbound ---


class InboundMessage(BaseModel):
    """A single inbound WhatsApp text message."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    sender: str
    body: str
    timestamp: int = 0
    business_phone_number: str | None = None
    phone_number_id: str | None = None


class BotConfiguration(BaseModel):
    """Bot routing for one business phone number, owned by the chat backend."""

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, coerce_numbers_to_str=True,
    )

    bot_id: str = Field(alias="bot", min_length=1)
    graph_api_token: str = Field(alias="graphApiToken", min_length=1)
    phone_number_id: str | None = Field(default=None, alias="phoneNumberId")


# --- Reply segments ---


class TextSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str


class ImageSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["image"] = "image"
    url: str
    caption: str | None = None


class ErrorNotice(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["error"] = "error"
    message: str


ResponseSegment = Annotated[
    TextSegment | ImageSegment | ErrorNotice,
    Field(discriminator="kind"),
]


# --- Delivery ---


class DeliveryReport(BaseModel):
    """What happened to each outbound send for one reply."""

    text_sent: bool = False
    images_sent: list[str] = Field(default_factory=list)
    images_failed: list[str] = Field(default_factory=list)
    read_marked: bool = False
    errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
