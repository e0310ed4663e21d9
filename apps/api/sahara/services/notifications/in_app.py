from __future__ import annotations

from sqlalchemy.orm import Session

from sahara.models import InAppNotification, NotificationConfig
from sahara.services.notifications.base import (
    NotificationChannel,
    NotificationPayload,
    NotificationResult,
)


class InAppChannel(NotificationChannel):
    """Writes the notification to the user's in-app inbox.

    The row is flushed, not committed; the dispatcher commits once per send.
    """

    channel = "in_app"

    def __init__(self, db: Session) -> None:
        self.db = db

    def send(self, payload: NotificationPayload, config: NotificationConfig | None) -> NotificationResult:
        row = InAppNotification(
            user_id=payload.user_id,
            level=payload.level,
            type=payload.type,
            title=payload.title,
            message=payload.message,
            metadata_json={
                "experiment_name": payload.experiment_name,
                "variant_name": payload.variant_name,
                "metrics": payload.metrics,
                "action_url": payload.action_url,
            },
        )
        self.db.add(row)
        self.db.flush()
        return NotificationResult(success=True, channel=self.channel, message_id=str(row.id))
