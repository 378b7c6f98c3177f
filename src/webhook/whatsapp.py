"""WhatsApp Business (Cloud API) webhook intake and Graph API client.

Handles Meta verification challenge, optional HMAC signature verification,
extraction of the inbound text message, and outbound message/status calls
with retry on 429/5xx.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from src.models import InboundMessage

logger = logging.getLogger(__name__)

_MAX_RETRIES = 2
_BACKOFF_CAP_SECONDS = 4
GRAPH_API_BASE = "https://graph.facebook.com/v18.0"


class DeliveryError(Exception):
    """The Graph API rejected or never answered a send."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WhatsAppRelay:
    """Handles WhatsApp Business API webhook requests."""

    def __init__(self, verify_token: str, app_secret: str | None = None) -> None:
        self._verify_token = verify_token
        self._app_secret = app_secret

    @property
    def verifies_signatures(self) -> bool:
        return bool(self._app_secret)

    def verify_signature(self, headers: dict[str, str], body: bytes) -> bool:
        """Verify the X-Hub-Signature-256 HMAC of the raw body.

        Always True when no app secret is configured.
        """
        if not self._app_secret:
            return True
        signature = headers.get("x-hub-signature-256", "")
        if not signature.startswith("sha256="):
            return False

        expected = hmac.new(
            self._app_secret.encode(), body, hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(signature[7:], expected)

    def handle_verification(self, params: dict[str, str]) -> dict[str, Any]:
        """Handle Meta webhook verification challenge (GET).

        Returns the challenge on a subscribe with the right token, 403 otherwise.
        """
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token", "")
        if (
            mode == "subscribe"
            and self._verify_token
            and hmac.compare_digest(token.encode(), self._verify_token.encode())
        ):
            logger.info("Webhook verified successfully")
            return {
                "status_code": 200,
                "content": params.get("hub.challenge", ""),
            }
        logger.warning("Webhook verification failed (mode=%s)", mode)
        return {"status_code": 403, "error": "Forbidden"}

    def extract_message(self, payload: Any) -> InboundMessage | None:
        """Extract the first text message from a webhook payload.

        Returns None for status updates, non-text messages, empty bodies and
        payloads that do not have the Cloud API shape.
        """
        value = _first_change_value(payload)
        messages = value.get("messages")
        if not isinstance(messages, list) or not messages:
            return None
        msg = messages[0]
        if not isinstance(msg, dict) or msg.get("type") != "text":
            logger.info(
                "Received non-text message: %s",
                msg.get("type") if isinstance(msg, dict) else type(msg).__name__,
            )
            return None

        text = msg.get("text")
        body = text.get("body") if isinstance(text, dict) else None
        if not isinstance(body, str) or not body:
            return None

        metadata = value.get("metadata")
        metadata = metadata if isinstance(metadata, dict) else {}
        try:
            return InboundMessage(
                id=str(msg.get("id", "")),
                sender=str(msg.get("from", "")),
                body=body,
                timestamp=int(msg.get("timestamp") or 0),
                business_phone_number=metadata.get("display_phone_number") or None,
                phone_number_id=metadata.get("phone_number_id") or None,
            )
        except (ValidationError, ValueError, TypeError) as exc:
            logger.warning("Dropping malformed message object: %s", exc)
            return None


def _first_change_value(payload: Any) -> dict[str, Any]:
    """Return entry[0].changes[0].value, or {} if the shape is wrong."""
    if not isinstance(payload, dict):
        return {}
    entries = payload.get("entry")
    if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
        return {}
    changes = entries[0].get("changes")
    if not isinstance(changes, list) or not changes or not isinstance(changes[0], dict):
        return {}
    value = changes[0].get("value")
    return value if isinstance(value, dict) else {}


class GraphApiClient:
    """Sends messages and status updates for one business phone number."""

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        api_base: str = GRAPH_API_BASE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._phone_number_id = phone_number_id
        self._access_token = access_token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def send_text(
        self, to: str, body: str, reply_to: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        if reply_to:
            payload["context"] = {"message_id": reply_to}
        await self._post(payload)

    async def send_image(
        self,
        to: str,
        url: str,
        caption: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        image: dict[str, str] = {"link": url}
        if caption:
            image["caption"] = caption
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "image",
            "image": image,
        }
        if reply_to:
            payload["context"] = {"message_id": reply_to}
        await self._post(payload)

    async def mark_read(self, message_id: str) -> None:
        await self._post({
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        })

    async def send_typing(self, to: str) -> None:
        await self._post({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "typing_on",
        })

    async def _post(self, payload: dict[str, Any]) -> None:
        """POST to the messages endpoint, retrying on 429/5xx.

        Raises:
            DeliveryError: On a non-retryable status, exhausted retries, or a
                transport failure.
        """
        url = f"{self._api_base}/{self._phone_number_id}/messages"
        headers = {"Authorization": f"Bearer {self._access_token}"}

        async with httpx.AsyncClient(
            verify=True, timeout=self._timeout, transport=self._transport,
        ) as client:
            for attempt in range(_MAX_RETRIES + 1):
                try:
                    resp = await client.post(url, json=payload, headers=headers)
                except httpx.HTTPError as exc:
                    raise DeliveryError(f"Graph API request failed: {exc!r}") from exc

                if resp.status_code < 400:
                    return
                if not self._should_retry(resp.status_code) or attempt == _MAX_RETRIES:
                    raise DeliveryError(
                        f"Graph API returned {resp.status_code}: {resp.text[:500]}",
                        status_code=resp.status_code,
                    )
                delay = min(2 ** attempt, _BACKOFF_CAP_SECONDS)
                await asyncio.sleep(delay)

    @staticmethod
    def _should_retry(status_code: int) -> bool:
        """Only retry on 429 (rate limit) or 5xx (server error)."""
        return status_code == 429 or status_code >= 500
