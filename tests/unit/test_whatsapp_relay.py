"""Tests for WhatsApp webhook intake and the Graph API client."""

from __future__ import annotations

import hashlib
import hmac as hmac_mod
import json
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.webhook.whatsapp import DeliveryError, GraphApiClient, WhatsAppRelay
from tests.conftest import make_whatsapp_payload


def _make_whatsapp_relay(**kwargs: Any) -> WhatsAppRelay:
    defaults: dict[str, Any] = {
        "verify_token": "test_verify",
        "app_secret": None,
    }
    defaults.update(kwargs)
    return WhatsAppRelay(**defaults)


def _sign_body(app_secret: str, body: bytes) -> str:
    sig = hmac_mod.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


class TestWhatsAppSignatureVerification:
    def test_valid_signature_accepted(self) -> None:
        relay = _make_whatsapp_relay(app_secret="my_secret")
        body = b'{"test": "data"}'
        headers = {"x-hub-signature-256": _sign_body("my_secret", body)}
        assert relay.verify_signature(headers, body) is True

    def test_invalid_signature_rejected(self) -> None:
        relay = _make_whatsapp_relay(app_secret="my_secret")
        headers = {"x-hub-signature-256": "sha256=wrong"}
        assert relay.verify_signature(headers, b'{"test": "data"}') is False

    def test_missing_signature_rejected(self) -> None:
        relay = _make_whatsapp_relay(app_secret="s")
        assert relay.verify_signature({}, b"body") is False

    def test_malformed_signature_prefix_rejected(self) -> None:
        relay = _make_whatsapp_relay(app_secret="s")
        headers = {"x-hub-signature-256": "abc123"}
        assert relay.verify_signature(headers, b"body") is False

    def test_no_app_secret_skips_verification(self) -> None:
        relay = _make_whatsapp_relay()
        assert relay.verifies_signatures is False
        assert relay.verify_signature({}, b"anything") is True

    def test_constant_time_comparison(self) -> None:
        relay = _make_whatsapp_relay(app_secret="s")
        body = b"data"
        headers = {"x-hub-signature-256": _sign_body("s", body)}
        with patch("src.webhook.whatsapp.hmac.compare_digest", return_value=True) as mock_cmp:
            relay.verify_signature(headers, body)
            mock_cmp.assert_called_once()


class TestWhatsAppVerificationChallenge:
    def test_valid_subscribe_returns_challenge(self) -> None:
        relay = _make_whatsapp_relay(verify_token="my_verify")
        params = {
            "hub.mode": "subscribe",
            "hub.verify_token": "my_verify",
            "hub.challenge": "challenge_string_123",
        }
        result = relay.handle_verification(params)
        assert result["status_code"] == 200
        assert result["content"] == "challenge_string_123"

    def test_invalid_verify_token_returns_403(self) -> None:
        relay = _make_whatsapp_relay(verify_token="correct")
        params = {
            "hub.mode": "subscribe",
            "hub.verify_token": "wrong",
            "hub.challenge": "ch",
        }
        assert relay.handle_verification(params)["status_code"] == 403

    def test_non_subscribe_mode_returns_403(self) -> None:
        relay = _make_whatsapp_relay(verify_token="t")
        params = {"hub.mode": "unsubscribe", "hub.verify_token": "t"}
        assert relay.handle_verification(params)["status_code"] == 403

    def test_missing_params_return_403(self) -> None:
        relay = _make_whatsapp_relay()
        assert relay.handle_verification({})["status_code"] == 403

    def test_unconfigured_token_never_matches(self) -> None:
        relay = _make_whatsapp_relay(verify_token="")
        params = {"hub.mode": "subscribe", "hub.verify_token": ""}
        assert relay.handle_verification(params)["status_code"] == 403


class TestWhatsAppMessageExtraction:
    def test_extracts_text_message(self) -> None:
        relay = _make_whatsapp_relay()
        message = relay.extract_message(
            make_whatsapp_payload(text="hello world", message_id="wamid.9"),
        )
        assert message is not None
        assert message.id == "wamid.9"
        assert message.body == "hello world"
        assert message.sender == "15551234567"
        assert message.timestamp == 1700000000

    def test_extracts_metadata(self) -> None:
        relay = _make_whatsapp_relay()
        message = relay.extract_message(make_whatsapp_payload())
        assert message is not None
        assert message.business_phone_number == "15550001111"
        assert message.phone_number_id == "PNID1"

    def test_missing_metadata_still_extracts(self) -> None:
        relay = _make_whatsapp_relay()
        message = relay.extract_message(make_whatsapp_payload(metadata={}))
        assert message is not None
        assert message.business_phone_number is None
        assert message.phone_number_id is None

    def test_non_text_message_ignored(self) -> None:
        relay = _make_whatsapp_relay()
        assert relay.extract_message(make_whatsapp_payload(msg_type="image")) is None

    def test_empty_body_ignored(self) -> None:
        relay = _make_whatsapp_relay()
        assert relay.extract_message(make_whatsapp_payload(text="")) is None

    def test_status_updates_ignored(self) -> None:
        relay = _make_whatsapp_relay()
        payload = {
            "object": "whatsapp_business_account",
            "entry": [{
                "id": "BID",
                "changes": [{
                    "value": {
                        "messaging_product": "whatsapp",
                        "metadata": {"phone_number_id": "PID"},
                        "statuses": [{"id": "msg1", "status": "delivered"}],
                    },
                    "field": "messages",
                }],
            }],
        }
        assert relay.extract_message(payload) is None

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            "text",
            {},
            {"entry": []},
            {"entry": ["x"]},
            {"entry": [{"changes": "x"}]},
            {"entry": [{"changes": [{"value": None}]}]},
        ],
    )
    def test_malformed_payload_ignored(self, payload: Any) -> None:
        relay = _make_whatsapp_relay()
        assert relay.extract_message(payload) is None

    def test_message_without_id_ignored(self) -> None:
        relay = _make_whatsapp_relay()
        payload = make_whatsapp_payload(message_id="")
        assert relay.extract_message(payload) is None


def _recording_transport(
    statuses: list[int],
) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    seen: list[httpx.Request] = []
    queue = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(status, json={})

    return httpx.MockTransport(handler), seen


def _client(transport: httpx.MockTransport) -> GraphApiClient:
    return GraphApiClient(
        "PNID1", "graph-token", api_base="https://graph.test/v18.0", transport=transport,
    )


class TestGraphApiClient:
    @pytest.mark.asyncio
    async def test_send_text_payload(self) -> None:
        transport, seen = _recording_transport([200])
        await _client(transport).send_text("15551234567", "reply", reply_to="wamid.1")

        request = seen[0]
        assert request.url == "https://graph.test/v18.0/PNID1/messages"
        assert request.headers["authorization"] == "Bearer graph-token"
        body = json.loads(request.content)
        assert body == {
            "messaging_product": "whatsapp",
            "to": "15551234567",
            "type": "text",
            "text": {"body": "reply"},
            "context": {"message_id": "wamid.1"},
        }

    @pytest.mark.asyncio
    async def test_send_image_with_and_without_caption(self) -> None:
        transport, seen = _recording_transport([200])
        client = _client(transport)
        await client.send_image("1", "http://x/a.png", caption="cap")
        await client.send_image("1", "http://x/b.png")

        first, second = (json.loads(r.content) for r in seen)
        assert first["type"] == "image"
        assert first["image"] == {"link": "http://x/a.png", "caption": "cap"}
        assert second["image"] == {"link": "http://x/b.png"}
        assert "context" not in second

    @pytest.mark.asyncio
    async def test_mark_read_payload(self) -> None:
        transport, seen = _recording_transport([200])
        await _client(transport).mark_read("wamid.1")
        assert json.loads(seen[0].content) == {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": "wamid.1",
        }

    @pytest.mark.asyncio
    async def test_typing_payload(self) -> None:
        transport, seen = _recording_transport([200])
        await _client(transport).send_typing("15551234567")
        body = json.loads(seen[0].content)
        assert body["type"] == "typing_on"
        assert body["to"] == "15551234567"

    @pytest.mark.asyncio
    async def test_uses_tls_verification(self) -> None:
        transport, _ = _recording_transport([200])
        with patch(
            "src.webhook.whatsapp.httpx.AsyncClient", wraps=httpx.AsyncClient,
        ) as mock_client_cls:
            await _client(transport).send_text("1", "hi")
        assert mock_client_cls.call_args.kwargs["verify"] is True

    @pytest.mark.asyncio
    async def test_retries_on_429_and_5xx(self) -> None:
        transport, seen = _recording_transport([429, 503, 200])
        with patch("src.webhook.whatsapp.asyncio.sleep", new_callable=AsyncMock):
            await _client(transport).send_text("1", "hi")
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_no_retry_on_4xx(self) -> None:
        transport, seen = _recording_transport([400])
        with pytest.raises(DeliveryError) as exc_info:
            await _client(transport).send_text("1", "hi")
        assert exc_info.value.status_code == 400
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        transport, seen = _recording_transport([500])
        with patch("src.webhook.whatsapp.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DeliveryError):
                await _client(transport).send_text("1", "hi")
        assert len(seen) == 3  # 1 + 2 retries

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self) -> None:
        transport, _ = _recording_transport([500])
        sleep_times: list[float] = []

        async def capture_sleep(t: float) -> None:
            sleep_times.append(t)

        with patch("src.webhook.whatsapp.asyncio.sleep", side_effect=capture_sleep):
            with pytest.raises(DeliveryError):
                await _client(transport).send_text("1", "hi")
        assert sleep_times == [1, 2]

    @pytest.mark.asyncio
    async def test_transport_error_raises_delivery_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(DeliveryError):
            await _client(httpx.MockTransport(handler)).send_text("1", "hi")
