"""In-memory deduplication of retried WhatsApp webhook deliveries.

WhatsApp retries a webhook when it does not get a timely 200, so the same
message id can arrive several times. Ids are remembered for a fixed retention
window (default: 300s) and forgotten afterwards. Nothing is persisted; a
restart starts with an empty set.
"""

from __future__ import annotations

import time
from collections.abc import Callable


class MessageDeduplicator:
    """Remembers recently seen message ids until their window expires."""

    def __init__(
        self,
        window_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_seconds = window_seconds
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def has_seen(self, message_id: str) -> bool:
        """Return True if message_id was marked within the retention window."""
        self._prune()
        return message_id in self._expiry

    def mark_seen(self, message_id: str) -> None:
        self._prune()
        self._expiry[message_id] = self._clock() + self._window_seconds

    def __len__(self) -> int:
        self._prune()
        return len(self._expiry)

    def _prune(self) -> None:
        now = self._clock()
        expired = [mid for mid, deadline in self._expiry.items() if deadline <= now]
        for mid in expired:
            del self._expiry[mid]
