"""Delivery of a parsed bot reply to the WhatsApp user.

Text segments are joined into one message, each image is its own message, and
the inbound message is marked read once every send has been attempted.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from src.models import (
    DeliveryReport,
    ErrorNotice,
    ImageSegment,
    InboundMessage,
    ResponseSegment,
    TextSegment,
)
from src.webhook.whatsapp import GRAPH_API_BASE, DeliveryError, GraphApiClient

logger = logging.getLogger(__name__)

TEXT_SEPARATOR = "\n\n"


def aggregate(
    segments: Sequence[ResponseSegment],
) -> tuple[str, list[ImageSegment]]:
    """Combine segments into one text body and the ordered image list."""
    texts: list[str] = []
    images: list[ImageSegment] = []
    first_error: str | None = None

    for segment in segments:
        if isinstance(segment, TextSegment) and segment.text:
            texts.append(segment.text)
        elif isinstance(segment, ImageSegment) and segment.url:
            images.append(segment)
        elif isinstance(segment, ErrorNotice) and segment.message:
            logger.error("Error segment in bot reply: %s", segment.message)
            if first_error is None:
                first_error = segment.message
        else:
            logger.debug("Skipping empty reply segment: %r", segment)

    combined = TEXT_SEPARATOR.join(texts).strip()
    if not combined and not images and first_error:
        combined = first_error
    return combined, images


class DeliveryCoordinator:
    """Sends reply segments through the Graph API. Holds no state of its own."""

    def __init__(
        self,
        api_base: str = GRAPH_API_BASE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_base = api_base
        self._timeout = timeout
        self._transport = transport

    def client_for(self, phone_number_id: str, credential: str) -> GraphApiClient:
        return GraphApiClient(
            phone_number_id,
            credential,
            api_base=self._api_base,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def deliver(
        self,
        segments: Sequence[ResponseSegment],
        message: InboundMessage,
        credential: str,
        phone_number_id: str,
    ) -> DeliveryReport:
        """Send the reply to message.sender and mark message read.

        Send failures are logged and recorded in the report; they never stop
        the remaining sends or the read-status update.
        """
        client = self.client_for(phone_number_id, credential)
        report = DeliveryReport()
        combined, images = aggregate(segments)

        if combined:
            logger.info(
                "Sending combined text (%d chars) to %s", len(combined), message.sender,
            )
            try:
                await client.send_text(message.sender, combined, reply_to=message.id)
                report.text_sent = True
            except DeliveryError as exc:
                logger.error("Failed to send combined text to %s: %s", message.sender, exc)
                report.errors.append(f"text: {exc}")
        else:
            logger.info("No combined text content to send")

        for image in images:
            try:
                await client.send_image(
                    message.sender, image.url, caption=image.caption, reply_to=message.id,
                )
                report.images_sent.append(image.url)
            except DeliveryError as exc:
                logger.error("Failed to send image %s: %s", image.url, exc)
                report.images_failed.append(image.url)
                report.errors.append(f"image {image.url}: {exc}")

        try:
            await client.mark_read(message.id)
            report.read_marked = True
        except DeliveryError as exc:
            logger.error("Failed to mark message %s as read: %s", message.id, exc)
            report.errors.append(f"read: {exc}")

        return report

    async def signal_typing(
        self, message: InboundMessage, credential: str, phone_number_id: str,
    ) -> None:
        """Best-effort typing indicator while the reply is generated."""
        try:
            await self.client_for(phone_number_id, credential).send_typing(message.sender)
        except DeliveryError as exc:
            logger.warning("Typing indicator for %s failed: %s", message.id, exc)
