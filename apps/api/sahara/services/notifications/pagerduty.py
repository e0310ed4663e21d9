"""PagerDuty Events API v2 client and channel sender."""

from __future__ import annotations

import hashlib
import logging
from typing import Any

import httpx

from sahara.errors import ChannelDeliveryError
from sahara.models import NotificationConfig
from sahara.services.notifications.base import (
    NotificationChannel,
    NotificationPayload,
    NotificationResult,
)
from sahara.settings import settings

logger = logging.getLogger(__name__)

SEVERITY_MAP = {"info": "info", "warning": "warning", "critical": "critical"}
SOURCE = "sahara-experiments"


def default_dedup_key(payload: NotificationPayload) -> str:
    """Stable incident key so repeated alerts collapse into one incident."""
    raw = "|".join(
        [payload.experiment_name or "", payload.variant_name or "", payload.type]
    )
    return f"sahara-{hashlib.sha256(raw.encode()).hexdigest()[:24]}"


class PagerDutyClient:
    """Thin sync wrapper over ``POST /v2/enqueue``."""

    def __init__(
        self,
        *,
        events_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.events_url = events_url or settings.PAGERDUTY_EVENTS_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.transport = transport

    def _enqueue(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.events_url, json=body)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            raise ChannelDeliveryError(
                f"PagerDuty API error: {exc.response.status_code}",
                {"body": exc.response.text[:500]},
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError(f"PagerDuty request failed: {exc}") from exc

    def trigger(
        self,
        routing_key: str,
        payload: NotificationPayload,
        *,
        dedup_key: str | None = None,
    ) -> dict[str, Any]:
        body = {
            "routing_key": routing_key,
            "event_action": "trigger",
            "dedup_key": dedup_key or payload.dedup_key or default_dedup_key(payload),
            "payload": {
                "summary": f"{payload.title}: {payload.message}"[:1024],
                "source": SOURCE,
                "severity": SEVERITY_MAP.get(payload.level, "info"),
                "component": payload.experiment_name or "experiments",
                "group": payload.variant_name,
                "class": payload.type,
                "custom_details": {
                    "experiment": payload.experiment_name,
                    "variant": payload.variant_name,
                    "metrics": payload.metrics,
                },
            },
        }
        if payload.action_url:
            body["links"] = [{"href": payload.action_url, "text": "View experiment"}]
        return self._enqueue(body)

    def resolve(self, routing_key: str, dedup_key: str) -> dict[str, Any]:
        return self._enqueue(
            {
                "routing_key": routing_key,
                "event_action": "resolve",
                "dedup_key": dedup_key,
            }
        )


class PagerDutyChannel(NotificationChannel):
    channel = "pagerduty"

    def __init__(self, client: PagerDutyClient | None = None) -> None:
        self.client = client or PagerDutyClient()

    def send(self, payload: NotificationPayload, config: NotificationConfig | None) -> NotificationResult:
        routing_key = config.routing_key if config else None
        if not routing_key:
            raise ChannelDeliveryError("PagerDuty routing key not configured")
        data = self.client.trigger(routing_key, payload)
        return NotificationResult(
            success=True,
            channel=self.channel,
            message_id=data.get("dedup_key"),
            response=data,
        )
