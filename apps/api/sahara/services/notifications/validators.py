"""Validation for notification payloads and channel configuration.

Each validator returns a list of error strings; an empty list means valid.
"""

from __future__ import annotations

import re
from typing import Any

ALERT_LEVELS = ("info", "warning", "critical")
ALERT_TYPES = ("performance", "errors", "traffic", "significance")
DELIVERY_CHANNELS = ("in_app", "slack", "pagerduty", "email")
CHANNELS = DELIVERY_CHANNELS + ("push",)

SLACK_WEBHOOK_PREFIX = "https://hooks.slack.com/services/"
MIN_ROUTING_KEY_LENGTH = 10

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _one_of(value: Any, allowed: tuple[str, ...], label: str) -> list[str]:
    if not value:
        return [f"{label} is required"]
    if not isinstance(value, str) or value not in allowed:
        return [f"Invalid {label.lower()}: {value}. Must be one of: {', '.join(allowed)}"]
    return []


def validate_alert_level(level: Any) -> list[str]:
    return _one_of(level, ALERT_LEVELS, "Alert level")


def validate_alert_type(alert_type: Any) -> list[str]:
    return _one_of(alert_type, ALERT_TYPES, "Alert type")


def validate_channel(channel: Any) -> list[str]:
    return _one_of(channel, CHANNELS, "Channel")


def validate_alert_levels(levels: Any) -> list[str]:
    if not isinstance(levels, list) or not levels:
        return ["Alert levels must be a non-empty list"]
    errors: list[str] = []
    for level in levels:
        errors.extend(validate_alert_level(level))
    return errors


def validate_slack_webhook_url(url: Any) -> list[str]:
    if not url:
        return ["Slack webhook URL is required"]
    if not isinstance(url, str):
        return ["Slack webhook URL must be a string"]
    if not url.startswith(SLACK_WEBHOOK_PREFIX):
        return [f"Slack webhook URL must start with {SLACK_WEBHOOK_PREFIX}"]
    return []


def validate_pagerduty_routing_key(key: Any) -> list[str]:
    if not key:
        return ["PagerDuty routing key is required"]
    if not isinstance(key, str):
        return ["PagerDuty routing key must be a string"]
    if len(key.strip()) < MIN_ROUTING_KEY_LENGTH:
        return [
            f"PagerDuty routing key must be at least {MIN_ROUTING_KEY_LENGTH} characters"
        ]
    return []


def validate_email_address(address: Any) -> list[str]:
    if not address:
        return ["Email address is required"]
    if not isinstance(address, str) or not _EMAIL_RE.match(address):
        return [f"Invalid email address: {address}"]
    return []


def validate_payload_fields(
    level: Any, alert_type: Any, title: Any, message: Any
) -> list[str]:
    errors = validate_alert_level(level) + validate_alert_type(alert_type)
    if not title or not isinstance(title, str) or not title.strip():
        errors.append("Title is required")
    if not message or not isinstance(message, str) or not message.strip():
        errors.append("Message is required")
    return errors


def validate_channel_config(
    channel: Any,
    *,
    webhook_url: Any = None,
    routing_key: Any = None,
    email_address: Any = None,
) -> list[str]:
    """Validate the field a channel needs to deliver."""
    errors = validate_channel(channel)
    if errors:
        return errors
    if channel == "slack":
        return validate_slack_webhook_url(webhook_url)
    if channel == "pagerduty":
        return validate_pagerduty_routing_key(routing_key)
    if channel == "email":
        return validate_email_address(email_address)
    return []


def redact(value: str | None, keep: int) -> str | None:
    if not value:
        return value
    if len(value) <= keep:
        return value
    return f"{value[:keep]}..."
