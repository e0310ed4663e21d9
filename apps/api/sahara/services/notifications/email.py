"""Email delivery through the Resend HTTP API."""

from __future__ import annotations

import html

import httpx

from sahara.errors import ChannelDeliveryError
from sahara.models import NotificationConfig
from sahara.services.notifications.base import (
    NotificationChannel,
    NotificationPayload,
    NotificationResult,
)
from sahara.services.notifications.validators import validate_email_address
from sahara.settings import settings

_LEVEL_COLORS = {"info": "#2563eb", "warning": "#d97706", "critical": "#dc2626"}

_SUBJECT_PREFIX = {
    "significance": "Significant result",
    "errors": "Error alert",
    "performance": "Performance alert",
    "traffic": "Traffic alert",
}


def render_email(payload: NotificationPayload) -> dict[str, str]:
    """Build subject, HTML and plain-text bodies for *payload*."""
    prefix = _SUBJECT_PREFIX.get(payload.type, "Alert")
    experiment = f" [{payload.experiment_name}]" if payload.experiment_name else ""
    subject = f"{prefix}{experiment}: {payload.title}"

    url = payload.action_url or settings.APP_BASE_URL
    rows = "".join(
        f"<tr><td>{html.escape(str(k))}</td><td>{html.escape(str(v))}</td></tr>"
        for k, v in payload.metrics.items()
    )
    color = _LEVEL_COLORS.get(payload.level, "#2563eb")
    body_html = (
        f'<div style="border-left:4px solid {color};padding:12px">'
        f"<h2>{html.escape(payload.title)}</h2>"
        f"<p>{html.escape(payload.message)}</p>"
        + (f"<table>{rows}</table>" if rows else "")
        + f'<p><a href="{html.escape(url)}">Open dashboard</a></p></div>'
    )
    text = f"{payload.title}\n\n{payload.message}\n\n{url}"
    return {"subject": subject, "html": body_html, "text": text}


class EmailChannel(NotificationChannel):
    channel = "email"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.transport = transport

    def send(self, payload: NotificationPayload, config: NotificationConfig | None) -> NotificationResult:
        if not self.api_key:
            raise ChannelDeliveryError("RESEND_API_KEY not configured")
        to_email = config.email_address if config else None
        errors = validate_email_address(to_email)
        if errors:
            raise ChannelDeliveryError(errors[0])

        template = render_email(payload)
        body = {
            "from": f"{settings.RESEND_FROM_NAME} <{settings.RESEND_FROM_EMAIL}>",
            "to": [to_email],
            "subject": template["subject"],
            "html": template["html"],
            "text": template["text"],
            "tags": [
                {"name": "alert_level", "value": payload.level},
                {"name": "alert_type", "value": payload.type},
            ],
        }
        try:
            with httpx.Client(
                timeout=settings.HTTP_TIMEOUT_SECONDS, transport=self.transport
            ) as client:
                response = client.post(
                    settings.RESEND_API_URL,
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ChannelDeliveryError(
                f"Resend API error: {exc.response.status_code}",
                {"body": exc.response.text[:500]},
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError(f"Resend request failed: {exc}") from exc

        return NotificationResult(
            success=True, channel=self.channel, message_id=data.get("id"), response=data
        )
