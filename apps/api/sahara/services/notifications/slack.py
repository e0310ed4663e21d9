from __future__ import annotations

from typing import Any

import httpx

from sahara.errors import ChannelDeliveryError
from sahara.models import NotificationConfig
from sahara.services.notifications.base import (
    NotificationChannel,
    NotificationPayload,
    NotificationResult,
)
from sahara.services.notifications.validators import validate_slack_webhook_url
from sahara.settings import settings

_LEVEL_BADGES = {"info": ":information_source:", "warning": ":warning:", "critical": ":rotating_light:"}


def format_slack_message(payload: NotificationPayload) -> dict[str, Any]:
    badge = _LEVEL_BADGES.get(payload.level, "")
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{payload.title}"[:150]},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{badge} *{payload.level.upper()}*  {payload.message}"},
        },
    ]
    fields = []
    if payload.experiment_name:
        fields.append({"type": "mrkdwn", "text": f"*Experiment:*\n{payload.experiment_name}"})
    if payload.variant_name:
        fields.append({"type": "mrkdwn", "text": f"*Variant:*\n{payload.variant_name}"})
    for key, value in list(payload.metrics.items())[:8]:
        fields.append({"type": "mrkdwn", "text": f"*{key}:*\n{value}"})
    if fields:
        blocks.append({"type": "section", "fields": fields[:10]})
    if payload.action_url:
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "View experiment"},
                        "url": payload.action_url,
                    }
                ],
            }
        )
    return {"text": f"{badge} {payload.title}", "blocks": blocks}


class SlackChannel(NotificationChannel):
    channel = "slack"

    def __init__(self, *, transport: httpx.BaseTransport | None = None) -> None:
        self.transport = transport

    def send(self, payload: NotificationPayload, config: NotificationConfig | None) -> NotificationResult:
        webhook_url = config.webhook_url if config else None
        errors = validate_slack_webhook_url(webhook_url)
        if errors:
            raise ChannelDeliveryError(errors[0])
        try:
            with httpx.Client(
                timeout=settings.HTTP_TIMEOUT_SECONDS, transport=self.transport
            ) as client:
                response = client.post(webhook_url, json=format_slack_message(payload))
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ChannelDeliveryError(
                f"Slack webhook error: {exc.response.status_code}",
                {"body": exc.response.text[:500]},
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError(f"Slack request failed: {exc}") from exc
        return NotificationResult(success=True, channel=self.channel)
