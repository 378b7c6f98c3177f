"""Chat backend reply stream parsing.

The chat backend answers a turn with a server-sent event stream. Each event is
a ``data: <json>`` block terminated by a blank line:

- ``chat-response-progress``: incremental reply text in ``data``
- ``chat-response-finished``: end of the reply, optional full text in ``message``
- ``error``: backend-side failure, text in ``message``
- ``ready`` / ``contact-options``: control events, ignored here

Reply text is Markdown. Inline images (``![caption](url)``) are split out into
their own segments so they can be delivered as WhatsApp image messages.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from src.models import ErrorNotice, ImageSegment, ResponseSegment, TextSegment

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
EVENT_PROGRESS = "chat-response-progress"
EVENT_FINISHED = "chat-response-finished"
EVENT_ERROR = "error"

FALLBACK_TEXT = "Sorry, I couldn't generate a response."
PARSE_ERROR_TEXT = "Error parsing bot response."
STREAM_ERROR_TEXT = "Chat stream returned an error."
TIMEOUT_TEXT = "Sorry, the request timed out."

_IMAGE_MARKER = re.compile(r"!\[(.*?)\]\((.*?)\)")


class StreamParseError(ValueError):
    """A single SSE event payload could not be decoded."""


class SSEDecoder:
    """Incremental decoder from raw SSE text to event data payloads."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        """Add a chunk and return the data payload of every completed event."""
        self._buffer += chunk.replace("\r\n", "\n")
        payloads: list[str] = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            payload = self._data_of(block)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        """Return a trailing event left unterminated when the stream closed."""
        block, self._buffer = self._buffer, ""
        payload = self._data_of(block)
        return [payload] if payload is not None else []

    @staticmethod
    def _data_of(block: str) -> str | None:
        lines = [
            line[5:].removeprefix(" ")
            for line in block.split("\n")
            if line.startswith("data:")
        ]
        if not lines:
            return None
        payload = "\n".join(lines).strip()
        return payload or None


def decode_event(payload: str) -> dict[str, Any]:
    """Decode one event payload into a JSON object.

    Raises:
        StreamParseError: If the payload is not a JSON object.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamParseError(f"Invalid JSON in event: {exc}") from exc
    if not isinstance(data, dict):
        raise StreamParseError(f"Event is not a JSON object: {payload[:80]!r}")
    return data


def is_terminal(payload: str) -> bool:
    """Return True if the payload ends the reply stream."""
    if payload.strip() == DONE_SENTINEL:
        return True
    try:
        return decode_event(payload).get("type") == EVENT_FINISHED
    except StreamParseError:
        return False


def _to_whatsapp_markup(text: str) -> str:
    # WhatsApp renders *bold*, not **bold**
    return text.replace("**", "*")


def _scan_markers(text: str) -> tuple[list[ResponseSegment], str]:
    """Split text at image markers.

    Returns the segments found before the last marker and the trailing text
    after it, which may still be continued by a later event.
    """
    segments: list[ResponseSegment] = []
    last = 0
    for match in _IMAGE_MARKER.finditer(text):
        before = _to_whatsapp_markup(text[last:match.start()]).strip()
        if before:
            segments.append(TextSegment(text=before))
        url = match.group(2).strip()
        if url:
            caption = match.group(1).strip() or None
            segments.append(ImageSegment(url=url, caption=caption))
            logger.debug("Parsed image: url=%s caption=%s", url, caption)
        last = match.end()
    return segments, text[last:]


class ReplyParser:
    """Rebuilds an ordered list of segments from reply events."""

    def __init__(self) -> None:
        self._segments: list[ResponseSegment] = []
        self._pending = ""
        self.finished = False

    def feed_event(self, payload: str) -> None:
        if self.finished:
            return
        if payload.strip() == DONE_SENTINEL:
            logger.debug("Received [DONE] marker")
            self.finished = True
            return

        try:
            event = decode_event(payload)
        except StreamParseError as exc:
            logger.error("Error parsing SSE event: %s (raw: %r)", exc, payload[:200])
            self._segments.append(ErrorNotice(message=PARSE_ERROR_TEXT))
            return

        event_type = event.get("type")
        if event_type == EVENT_PROGRESS and isinstance(event.get("data"), str):
            found, self._pending = _scan_markers(self._pending + event["data"])
            self._segments.extend(found)
        elif event_type == EVENT_FINISHED:
            message = event.get("message")
            if (
                isinstance(message, str)
                and message
                and not self._segments
                and not self._pending.strip()
            ):
                found, trailing = _scan_markers(message)
                self._segments.extend(found)
                self._pending = trailing
            self.finished = True
        elif event_type == EVENT_ERROR:
            message = event.get("message") or STREAM_ERROR_TEXT
            logger.error("Received error event from chat stream: %s", message)
            self._segments.append(ErrorNotice(message=str(message)))
        else:
            logger.debug("Ignoring %s event", event_type)

    def result(self) -> list[ResponseSegment]:
        """Return the final segments, with fallback and error collapsing applied."""
        segments = list(self._segments)
        trailing = _to_whatsapp_markup(self._pending).strip()
        if trailing:
            segments.append(TextSegment(text=trailing))

        errors = [s for s in segments if isinstance(s, ErrorNotice)]
        has_content = len(errors) < len(segments)
        if not has_content and not errors:
            logger.warning("No content generated by the chat backend")
            return [TextSegment(text=FALLBACK_TEXT)]
        if not has_content:
            return [TextSegment(text=errors[0].message)]
        return segments


def parse_reply(events: Iterable[str]) -> list[ResponseSegment]:
    """Parse raw event payloads from one reply into segments."""
    parser = ReplyParser()
    for payload in events:
        parser.feed_event(payload)
        if parser.finished:
            break
    return parser.result()


def reply_for_failure(exc: BaseException) -> list[ResponseSegment]:
    """Segments to send the user when the turn itself failed."""
    if isinstance(exc, TimeoutError):
        return [TextSegment(text=TIMEOUT_TEXT)]
    return [ErrorNotice(message=f"Sorry, an error occurred: {exc}")]
