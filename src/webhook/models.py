"""Data models for the webhook relay pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.models import DeliveryReport, RelayStage

STATUS_SUCCESS = "Success"
STATUS_NON_TEXT = "Acknowledged non-text/empty message"
STATUS_DUPLICATE = "Duplicate message, already processed"
STATUS_MISSING_METADATA = "Acknowledged message with missing metadata"
STATUS_FAILED = "Acknowledged, processing failed"


@dataclass
class RelayOutcome:
    """Result of one webhook invocation, always acknowledged to WhatsApp."""

    status: str
    stage: RelayStage = RelayStage.ACKNOWLEDGED
    message_id: str | None = None
    error: str | None = None
    report: DeliveryReport | None = None
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_body(self) -> dict[str, Any]:
        """JSON body returned to the provider."""
        body: dict[str, Any] = {"status": self.status}
        if self.error is not None:
            body["error"] = self.error
        return body
