"""WhatsApp to chat backend relay pipeline.

Pipeline stages for one inbound webhook:
1. Extract the text message (non-text and malformed payloads stop here)
2. Deduplicate retried deliveries by message id
3. Resolve the bot configuration for the business phone number
4. Acquire the bot's backend session and run one chat turn
5. Parse the reply stream into segments
6. Deliver text, then images, then mark the message read

Every outcome is acknowledged with 200 so WhatsApp does not retry; failures
are logged and recorded on the RelayOutcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from src.backend.config_lookup import BotConfigLookup, ConfigurationError
from src.backend.session import (
    BackendConnectionError,
    BackendSessionManager,
    ConversationError,
    ConversationTimeoutError,
)
from src.backend.stream import parse_reply, reply_for_failure
from src.models import InboundMessage, RelayStage
from src.webhook.dedup import MessageDeduplicator
from src.webhook.delivery import DeliveryCoordinator
from src.webhook.models import (
    STATUS_DUPLICATE,
    STATUS_FAILED,
    STATUS_MISSING_METADATA,
    STATUS_NON_TEXT,
    STATUS_SUCCESS,
    RelayOutcome,
)
from src.webhook.whatsapp import WhatsAppRelay

logger = logging.getLogger(__name__)

_TURN_ERRORS = (BackendConnectionError, ConversationError, ConversationTimeoutError)


class WhatsAppWebhookHandler:
    """Runs the relay pipeline for WhatsApp webhook payloads."""

    def __init__(
        self,
        relay: WhatsAppRelay,
        deduplicator: MessageDeduplicator,
        config_lookup: BotConfigLookup,
        sessions: BackendSessionManager,
        delivery: DeliveryCoordinator,
        typing_indicator: bool = True,
    ) -> None:
        self._relay = relay
        self._dedup = deduplicator
        self._config_lookup = config_lookup
        self._sessions = sessions
        self._delivery = delivery
        self._typing_indicator = typing_indicator

    async def handle(self, payload: Any) -> RelayOutcome:
        """Relay one webhook payload. Never raises."""
        started = time.perf_counter()
        outcome = await self._run(payload)
        outcome.duration_ms = int((time.perf_counter() - started) * 1000)
        if outcome.message_id is not None:
            logger.info(
                "Message %s processed in %dms (status=%s, stage=%s)",
                outcome.message_id, outcome.duration_ms, outcome.status,
                outcome.stage.value,
            )
        return outcome

    async def _run(self, payload: Any) -> RelayOutcome:
        stage = RelayStage.RECEIVED
        message: InboundMessage | None = None
        try:
            message = self._relay.extract_message(payload)
            if message is None:
                return RelayOutcome(status=STATUS_NON_TEXT)

            if self._dedup.has_seen(message.id):
                logger.info("Duplicate message id %s, skipping", message.id)
                return RelayOutcome(status=STATUS_DUPLICATE, message_id=message.id)
            self._dedup.mark_seen(message.id)
            stage = RelayStage.DEDUPLICATED

            if not message.business_phone_number or not message.phone_number_id:
                logger.error(
                    "Missing metadata for message %s: display_phone_number=%s "
                    "phone_number_id=%s",
                    message.id, message.business_phone_number, message.phone_number_id,
                )
                return RelayOutcome(
                    status=STATUS_MISSING_METADATA,
                    stage=stage,
                    message_id=message.id,
                    error="Missing required metadata",
                )

            config = await self._config_lookup.get(message.business_phone_number)
            stage = RelayStage.CONFIG_RESOLVED
            phone_number_id = config.phone_number_id or message.phone_number_id
            logger.info(
                "Relaying message %s for business phone %s to bot %s",
                message.id, message.business_phone_number, config.bot_id,
            )

            typing: asyncio.Task[None] | None = None
            if self._typing_indicator:
                typing = asyncio.create_task(
                    self._delivery.signal_typing(
                        message, config.graph_api_token, phone_number_id,
                    )
                )

            try:
                turn_error: str | None = None
                try:
                    session = await self._sessions.acquire(config.bot_id)
                    stage = RelayStage.SESSION_ACQUIRED
                    events = await self._sessions.converse(session, message.body)
                except _TURN_ERRORS as exc:
                    logger.error("Chat turn for bot %s failed: %s", config.bot_id, exc)
                    segments = reply_for_failure(exc)
                    turn_error = str(exc)
                else:
                    stage = RelayStage.CONVERSED
                    segments = parse_reply(events)
                    logger.info(
                        "Parsed %d reply segment(s) for bot %s",
                        len(segments), config.bot_id,
                    )

                report = await self._delivery.deliver(
                    segments, message, config.graph_api_token, phone_number_id,
                )
                stage = RelayStage.DELIVERED
            finally:
                if typing is not None:
                    await _settle_typing(typing, message.id)

            error = turn_error
            if error is None and report.errors:
                error = "; ".join(report.errors)
            return RelayOutcome(
                status=STATUS_SUCCESS,
                stage=stage,
                message_id=message.id,
                error=error,
                report=report,
            )
        except ConfigurationError as exc:
            logger.error("Configuration error for message %s: %s", _id_of(message), exc)
            return self._failed(stage, message, exc)
        except Exception as exc:  # acknowledge whatever happens
            logger.exception(
                "Unhandled error relaying message %s at stage %s",
                _id_of(message), stage.value,
            )
            return self._failed(stage, message, exc)

    @staticmethod
    def _failed(
        stage: RelayStage, message: InboundMessage | None, exc: Exception,
    ) -> RelayOutcome:
        return RelayOutcome(
            status=STATUS_FAILED,
            stage=stage,
            message_id=_id_of(message),
            error=str(exc) or type(exc).__name__,
        )


async def _settle_typing(typing: asyncio.Task[None], message_id: str) -> None:
    """Wait for the typing indicator so its outcome is always retrieved."""
    (result,) = await asyncio.gather(typing, return_exceptions=True)
    if isinstance(result, Exception):
        logger.warning("Typing indicator for message %s failed: %s", message_id, result)


def _id_of(message: InboundMessage | None) -> str | None:
    return message.id if message is not None else None
