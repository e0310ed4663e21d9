from __future__ import annotations

from sqlalchemy.orm import Session

from sahara.services.notifications.base import NotificationChannel
from sahara.services.notifications.dry_run import DryRunChannel
from sahara.services.notifications.email import EmailChannel
from sahara.services.notifications.in_app import InAppChannel
from sahara.services.notifications.pagerduty import PagerDutyChannel
from sahara.services.notifications.slack import SlackChannel
from sahara.services.notifications.validators import DELIVERY_CHANNELS


def get_channel_sender(
    channel: str, db: Session, *, dry_run: bool = True
) -> NotificationChannel:
    """Return the sender for *channel*.

    In-app delivery always writes to the database. Outbound channels use
    ``DryRunChannel`` when dry_run=True.
    """
    if channel not in DELIVERY_CHANNELS:
        raise NotImplementedError(f"No sender for channel '{channel}'")
    if channel == "in_app":
        return InAppChannel(db)
    if dry_run:
        return DryRunChannel(channel)
    if channel == "pagerduty":
        return PagerDutyChannel()
    if channel == "email":
        return EmailChannel()
    return SlackChannel()
