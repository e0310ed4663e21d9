from __future__ import annotations

import logging
import uuid

from sahara.models import NotificationConfig
from sahara.services.notifications.base import (
    NotificationChannel,
    NotificationPayload,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class DryRunChannel(NotificationChannel):
    """Simulates an outbound channel without any network I/O.

    Used in development and tests so alert fan-out can be exercised before
    real credentials are configured.
    """

    def __init__(self, channel: str) -> None:
        self.channel = channel

    def send(self, payload: NotificationPayload, config: NotificationConfig | None) -> NotificationResult:
        message_id = f"dryrun_{self.channel}_{uuid.uuid4().hex[:12]}"
        logger.info(
            "Dry-run %s notification to %s: [%s] %s",
            self.channel, payload.user_id, payload.level, payload.title,
        )
        return NotificationResult(
            success=True,
            channel=self.channel,
            message_id=message_id,
            response={"dry_run": True},
        )
