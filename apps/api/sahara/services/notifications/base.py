from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from sahara.models import NotificationConfig


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationPayload(BaseModel):
    """Normalised event handed to every channel sender."""

    user_id: str
    level: str
    type: str
    title: str
    message: str
    experiment_name: str | None = None
    variant_name: str | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)
    action_url: str | None = None
    dedup_key: str | None = None


class NotificationResult(BaseModel):
    """Outcome of one delivery attempt on one channel."""

    success: bool
    channel: str
    error: str | None = None
    message_id: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    response: dict[str, Any] = Field(default_factory=dict)


class NotificationChannel:
    """Base class for channel senders.

    ``send`` either returns a successful ``NotificationResult`` or raises
    ``ChannelDeliveryError``; the dispatcher turns raised errors into failed
    results so one channel never aborts the others.
    """

    channel: str = ""

    def send(
        self, payload: NotificationPayload, config: NotificationConfig | None
    ) -> NotificationResult:
        raise NotImplementedError
