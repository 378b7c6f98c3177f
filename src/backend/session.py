"""Backend chat session management.

This module provides the BackendSessionManager class for:
- Holding one persistent chat channel per bot identity
- Reusing connected sessions and reconnecting dropped or idle ones
- Running one chat turn per session at a time, with a timeout
- Sweeping sessions that have been idle beyond a threshold
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from src.backend.stream import SSEDecoder, is_terminal
from src.models import SessionState

logger = logging.getLogger(__name__)


class BackendConnectionError(ConnectionError):
    """The chat backend could not be reached for a bot."""


class ConversationError(Exception):
    """The chat backend rejected a turn."""


class ConversationTimeoutError(TimeoutError):
    """The chat backend did not finish a reply in time."""


def build_turn_request(bot_id: str, text: str, referrer: str = "") -> dict[str, Any]:
    """Build the chat backend request body for one user turn."""
    return {
        "messages": [{"type": 0, "message": text}],
        "botId": bot_id,
        "chatContext": [],
        "referrer": referrer,
    }


class ChatChannel(Protocol):
    """A persistent connection to the chat backend for one bot."""

    async def open(self) -> None: ...

    def stream_turn(self, text: str) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


class HttpChatChannel:
    """Chat channel over a keep-alive httpx client and an SSE reply stream."""

    def __init__(
        self,
        base_url: str,
        bot_id: str,
        referrer: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._bot_id = bot_id
        self._referrer = referrer
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        headers = {"referer": self._referrer} if self._referrer else {}
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def stream_turn(self, text: str) -> AsyncIterator[str]:
        if self._client is None:
            raise BackendConnectionError(f"Channel for bot {self._bot_id} is not open")
        payload = build_turn_request(self._bot_id, text, self._referrer)
        async with self._client.stream(
            "POST",
            f"/chat-stream/{self._bot_id}",
            json=payload,
            headers={"Accept": "text/event-stream"},
        ) as resp:
            if resp.status_code >= 400:
                body = await resp.aread()
                logger.error(
                    "Chat stream HTTP error: status=%s body=%s",
                    resp.status_code, body[:500],
                )
                raise ConversationError(
                    f"Failed to connect to chat stream: {resp.reason_phrase}"
                )
            async for chunk in resp.aiter_text():
                yield chunk

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


ChannelFactory = Callable[[str], ChatChannel]


@dataclass(eq=False)
class BackendSession:
    """One bot's channel plus its connection state."""

    bot_id: str
    channel: ChatChannel
    state: SessionState = SessionState.DISCONNECTED
    last_activity: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class BackendSessionManager:
    """Owns the process-wide map of bot identity to BackendSession.

    Only this class changes session state. Entries are written as CONNECTING
    before the connect suspends, so a concurrent acquire for the same bot
    waits on the same connect instead of opening a second channel.
    """

    DEFAULT_IDLE_SECONDS = 300
    DEFAULT_SWEEP_SECONDS = 300

    def __init__(
        self,
        channel_factory: ChannelFactory,
        connect_timeout: float = 10.0,
        turn_timeout: float = 30.0,
        idle_seconds: float | None = None,
        sweep_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._channel_factory = channel_factory
        self._connect_timeout = connect_timeout
        self._turn_timeout = turn_timeout
        self._idle_seconds = (
            self.DEFAULT_IDLE_SECONDS if idle_seconds is None else idle_seconds
        )
        self._sweep_seconds = (
            self.DEFAULT_SWEEP_SECONDS if sweep_seconds is None else sweep_seconds
        )
        self._clock = clock
        self._sessions: dict[str, BackendSession] = {}
        self._connecting: dict[str, asyncio.Future[BackendSession]] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def sessions(self) -> dict[str, BackendSession]:
        return dict(self._sessions)

    async def acquire(self, bot_id: str) -> BackendSession:
        """Return a connected session for bot_id, connecting if needed.

        Raises:
            BackendConnectionError: If the channel cannot be opened within
                the connect timeout.
        """
        session = self._sessions.get(bot_id)
        if session is None:
            return await self._connect(bot_id)
        if session.state is SessionState.CONNECTING:
            return await self._wait_for_connect(bot_id)
        if session.state is SessionState.CONNECTED and not self._is_idle(session):
            return session
        logger.info(
            "Replacing %s session for bot %s", session.state.value, bot_id,
        )
        self._detach(session)
        return await self._connect(bot_id, stale=session)

    async def converse(self, session: BackendSession, text: str) -> list[str]:
        """Send one user turn and return the raw reply event payloads.

        Turns on the same session are serialized.

        Raises:
            ConversationTimeoutError: If the reply is not finished in time.
            ConversationError: If the backend rejects the turn or sends a
                body that cannot be decoded.
            BackendConnectionError: If the channel drops mid-turn; the
                session is left DISCONNECTED for the next acquire.
        """
        async with session.lock:
            session.last_activity = self._clock()
            try:
                return await asyncio.wait_for(
                    self._collect(session, text), timeout=self._turn_timeout,
                )
            except (TimeoutError, httpx.TimeoutException) as exc:
                raise ConversationTimeoutError(
                    f"Chat backend did not reply within {self._turn_timeout}s "
                    f"for bot {session.bot_id}"
                ) from exc
            except httpx.TransportError as exc:
                session.state = SessionState.DISCONNECTED
                raise BackendConnectionError(
                    f"Chat channel for bot {session.bot_id} dropped: {exc}"
                ) from exc
            except httpx.HTTPError as exc:
                raise ConversationError(
                    f"Chat stream for bot {session.bot_id} failed: {exc}"
                ) from exc
            finally:
                session.last_activity = self._clock()

    async def sweep(self) -> int:
        """Close and evict sessions idle beyond the threshold.

        Returns:
            Number of sessions evicted.
        """
        expired = [
            session for session in self._sessions.values()
            if session.state is not SessionState.CONNECTING and self._is_idle(session)
        ]
        for session in expired:
            self._detach(session)
        for session in expired:
            await self._close_channel(session)
        if expired:
            logger.info("Idle sweep evicted %d session(s)", len(expired))
        return len(expired)

    def start(self) -> None:
        """Start the periodic idle sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        """Stop the idle sweep and close every session."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        sessions = list(self._sessions.values())
        for session in sessions:
            self._detach(session)
        for session in sessions:
            await self._close_channel(session)

    def _is_idle(self, session: BackendSession) -> bool:
        return self._clock() - session.last_activity > self._idle_seconds

    async def _wait_for_connect(self, bot_id: str) -> BackendSession:
        future = self._connecting[bot_id]
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.cancelled():
                raise
            raise BackendConnectionError(
                f"Connect for bot {bot_id} was cancelled"
            ) from None

    async def _connect(
        self, bot_id: str, stale: BackendSession | None = None,
    ) -> BackendSession:
        channel = self._channel_factory(bot_id)
        session = BackendSession(
            bot_id=bot_id, channel=channel, state=SessionState.CONNECTING,
        )
        future: asyncio.Future[BackendSession] = asyncio.get_running_loop().create_future()
        self._sessions[bot_id] = session
        self._connecting[bot_id] = future

        try:
            if stale is not None:
                await self._close_channel(stale)
            await asyncio.wait_for(channel.open(), timeout=self._connect_timeout)
        except (TimeoutError, OSError, httpx.HTTPError) as exc:
            self._detach(session)
            error = BackendConnectionError(
                f"Could not open chat channel for bot {bot_id}: {exc!r}"
            )
            future.set_exception(error)
            future.exception()  # waiters, if any, re-raise it
            await self._close_channel(session)
            raise error from exc
        except asyncio.CancelledError:
            self._detach(session)
            future.cancel()
            raise
        else:
            if self._sessions.get(bot_id) is not session:
                # evicted by shutdown while opening
                await self._close_channel(session)
                error = BackendConnectionError(
                    f"Chat channel for bot {bot_id} was closed while opening"
                )
                future.set_exception(error)
                future.exception()
                raise error
            session.state = SessionState.CONNECTED
            session.last_activity = self._clock()
            self._connecting.pop(bot_id, None)
            future.set_result(session)
            logger.info("Chat channel connected for bot %s", bot_id)
            return session

    async def _collect(self, session: BackendSession, text: str) -> list[str]:
        decoder = SSEDecoder()
        events: list[str] = []
        async with contextlib.aclosing(session.channel.stream_turn(text)) as chunks:
            async for chunk in chunks:
                for payload in decoder.feed(chunk):
                    events.append(payload)
                    if is_terminal(payload):
                        return events
        events.extend(decoder.flush())
        return events

    def _detach(self, session: BackendSession) -> None:
        """Drop session from the registry if it is still the live entry."""
        session.state = SessionState.DISCONNECTED
        if self._sessions.get(session.bot_id) is session:
            del self._sessions[session.bot_id]
            self._connecting.pop(session.bot_id, None)

    async def _close_channel(self, session: BackendSession) -> None:
        try:
            await session.channel.aclose()
        except (OSError, httpx.HTTPError) as exc:
            logger.warning("Error closing chat channel for bot %s: %s", session.bot_id, exc)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_seconds)
            try:
                await self.sweep()
            except Exception:  # keep sweeping on unexpected errors
                logger.exception("Idle session sweep failed")
