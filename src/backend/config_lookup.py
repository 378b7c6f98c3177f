"""Bot configuration lookup against the chat backend.

The chat backend owns the mapping from a WhatsApp business phone number to
the bot that answers it and the Graph API token used to reply. Results are
cached in memory for a short TTL (default: 300s).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from src.models import BotConfiguration

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Bot configuration is missing, unreachable, or invalid."""


class BotConfigLookup:
    """Fetches and caches BotConfiguration per business phone number."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        cache_seconds: float = 300,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._cache_seconds = cache_seconds
        self._transport = transport
        self._clock = clock
        self._cache: dict[str, tuple[float, BotConfiguration]] = {}

    async def get(self, phone_number: str) -> BotConfiguration:
        """Return the configuration for phone_number.

        Raises:
            ConfigurationError: If the backend cannot be reached, returns no
                data, or returns data without a bot id or Graph API token.
        """
        cached = self._cache.get(phone_number)
        if cached is not None:
            expires_at, config = cached
            if expires_at > self._clock():
                return config
            del self._cache[phone_number]

        config = await self._fetch(phone_number)
        if self._cache_seconds > 0:
            self._cache[phone_number] = (self._clock() + self._cache_seconds, config)
        return config

    def invalidate(self, phone_number: str | None = None) -> None:
        if phone_number is None:
            self._cache.clear()
        else:
            self._cache.pop(phone_number, None)

    async def _fetch(self, phone_number: str) -> BotConfiguration:
        url = (
            f"{self._base_url}/integrations/whatsapp/phone-number/"
            f"{quote(phone_number, safe='')}"
        )
        logger.info("Fetching chatbot config from %s", url)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport,
            ) as client:
                resp = await client.get(
                    url, headers={"Content-Type": "application/json"},
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ConfigurationError(
                f"Failed to fetch chatbot configuration for {phone_number}: {exc}"
            ) from exc

        if not data or not isinstance(data, dict):
            raise ConfigurationError(
                f"Chatbot configuration not found for {phone_number}"
            )
        if not data.get("bot"):
            raise ConfigurationError(f"Bot ID missing in configuration for {phone_number}")

        token = data.get("graphApiToken")
        if not isinstance(token, str) or not token.strip():
            raise ConfigurationError(
                f"Invalid or missing Graph API token for bot {data['bot']}"
            )

        try:
            return BotConfiguration.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid chatbot configuration: {exc}") from exc
