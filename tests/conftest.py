"""Shared test fixtures for the WhatsApp chat relay."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from src.models import BotConfiguration, InboundMessage

# --- Fakes ---


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChannel:
    """In-memory ChatChannel that replays canned SSE chunks."""

    def __init__(
        self,
        chunks: list[str] | None = None,
        open_error: Exception | None = None,
        open_delay: float = 0.0,
        turn_delay: float = 0.0,
        close_delay: float = 0.0,
    ) -> None:
        self.chunks = chunks if chunks is not None else [sse_event(finished_event("ok"))]
        self.open_error = open_error
        self.open_delay = open_delay
        self.turn_delay = turn_delay
        self.close_delay = close_delay
        self.opened = 0
        self.closed = 0
        self.turns: list[str] = []

    async def open(self) -> None:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1

    async def stream_turn(self, text: str) -> AsyncIterator[str]:
        self.turns.append(text)
        if self.turn_delay:
            await asyncio.sleep(self.turn_delay)
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed += 1


class FakeChannelFactory:
    """Channel factory that records every channel it creates."""

    def __init__(self, **channel_kwargs: Any) -> None:
        self.channel_kwargs = channel_kwargs
        self.channels: list[FakeChannel] = []
        self.bot_ids: list[str] = []

    def __call__(self, bot_id: str) -> FakeChannel:
        channel = FakeChannel(**self.channel_kwargs)
        self.channels.append(channel)
        self.bot_ids.append(bot_id)
        return channel

    @property
    def connects(self) -> int:
        return sum(ch.opened for ch in self.channels)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# --- SSE helpers ---


def sse_event(data: dict[str, Any] | str) -> str:
    payload = data if isinstance(data, str) else json.dumps(data)
    return f"data: {payload}\n\n"


def progress_event(text: str) -> dict[str, Any]:
    return {"type": "chat-response-progress", "data": text}


def finished_event(message: str | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {"type": "chat-response-finished"}
    if message is not None:
        event["message"] = message
    return event


def error_event(message: str | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {"type": "error"}
    if message is not None:
        event["message"] = message
    return event


# --- Factory functions for test data ---


def make_inbound_message(**kwargs: Any) -> InboundMessage:
    """Factory for InboundMessage with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "wamid.TEST1",
        "sender": "15551234567",
        "body": "hello",
        "timestamp": 1700000000,
        "business_phone_number": "15550001111",
        "phone_number_id": "PNID1",
    }
    defaults.update(kwargs)
    return InboundMessage(**defaults)


def make_bot_config(**kwargs: Any) -> BotConfiguration:
    defaults: dict[str, Any] = {
        "bot": "bot-1",
        "graphApiToken": "graph-token",
    }
    defaults.update(kwargs)
    return BotConfiguration.model_validate(defaults)


def make_whatsapp_payload(
    text: str | None = "hello",
    message_id: str = "wamid.TEST1",
    sender: str = "15551234567",
    msg_type: str = "text",
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Factory for a WhatsApp Cloud API webhook payload with one message."""
    message: dict[str, Any] = {
        "from": sender,
        "id": message_id,
        "timestamp": "1700000000",
        "type": msg_type,
    }
    if msg_type == "text":
        message["text"] = {"body": text}
    if metadata is None:
        metadata = {"display_phone_number": "15550001111", "phone_number_id": "PNID1"}
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_ID",
                "changes": [
                    {
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": metadata,
                            "messages": [message],
                        },
                        "field": "messages",
                    }
                ],
            }
        ],
    }
