"""Notification fan-out.

Routes an event to the channels its type allows, filters by each user's
enabled channel configuration, delivers to every channel independently and
logs each attempt. Callers get one ``NotificationResult`` per channel so
partial failures are visible.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from sahara.errors import SaharaError, ValidationError
from sahara.models import NotificationConfig, NotificationLog
from sahara.services.monitoring.alerts import Alert, meets_level
from sahara.services.notifications.base import (
    NotificationChannel,
    NotificationPayload,
    NotificationResult,
)
from sahara.services.notifications.factory import get_channel_sender
from sahara.services.notifications.validators import (
    DELIVERY_CHANNELS,
    validate_payload_fields,
)
from sahara.services.rate_limit import MemoryRateLimitStore, RateLimitStore
from sahara.settings import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Routing & rate-limit rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventRoute:
    channels: tuple[str, ...]
    min_level: str


EVENT_ROUTING: dict[str, EventRoute] = {
    "significance": EventRoute(channels=("in_app", "slack", "email"), min_level="info"),
    "errors": EventRoute(channels=("in_app", "slack", "pagerduty", "email"), min_level="warning"),
    "performance": EventRoute(channels=("in_app", "slack"), min_level="warning"),
    "traffic": EventRoute(channels=("in_app", "slack"), min_level="info"),
}


@dataclass(frozen=True)
class LevelRateLimit:
    window_seconds: int
    max_notifications: int
    min_interval_seconds: int


NOTIFICATION_RATE_LIMITS: dict[str, LevelRateLimit] = {
    "critical": LevelRateLimit(window_seconds=300, max_notifications=10, min_interval_seconds=30),
    "warning": LevelRateLimit(window_seconds=900, max_notifications=5, min_interval_seconds=120),
    "info": LevelRateLimit(window_seconds=3600, max_notifications=3, min_interval_seconds=900),
}


class NotificationRateLimiter:
    """Per (user, type, level) window cap plus a minimum spacing between sends."""

    SWEEP_INTERVAL_SECONDS = 60.0

    def __init__(self, store: RateLimitStore | None = None) -> None:
        self.store = store or MemoryRateLimitStore()
        self._last_sent: dict[str, tuple[float, int]] = {}
        self._last_sweep: float | None = None

    def _sweep(self, now: float) -> None:
        stale = [
            key
            for key, (sent_at, window_seconds) in self._last_sent.items()
            if now - sent_at >= window_seconds
        ]
        for key in stale:
            del self._last_sent[key]
        self._last_sweep = now

    def allow(self, user_id: str, alert_type: str, level: str, *, now: float | None = None) -> bool:
        rule = NOTIFICATION_RATE_LIMITS.get(level, NOTIFICATION_RATE_LIMITS["info"])
        now = time.time() if now is None else now
        key = f"{user_id}:{alert_type}:{level}"

        if self._last_sweep is None or now - self._last_sweep >= self.SWEEP_INTERVAL_SECONDS:
            self._sweep(now)

        last = self._last_sent.get(key)
        if last is not None and now - last[0] < rule.min_interval_seconds:
            return False

        allowed, _, _ = self.store.hit(
            f"notify:{key}",
            limit=rule.max_notifications,
            window_seconds=rule.window_seconds,
            now=now,
        )
        if allowed:
            self._last_sent[key] = (now, rule.window_seconds)
        return allowed


_default_rate_limiter = NotificationRateLimiter()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    def __init__(
        self,
        *,
        dry_run: bool | None = None,
        rate_limiter: NotificationRateLimiter | None = None,
        senders: dict[str, NotificationChannel] | None = None,
    ) -> None:
        self.dry_run = settings.NOTIFICATIONS_DRY_RUN if dry_run is None else dry_run
        self.rate_limiter = rate_limiter or _default_rate_limiter
        self.senders = dict(senders or {})

    def _sender(self, channel: str, db: Session) -> NotificationChannel:
        if channel in self.senders:
            return self.senders[channel]
        return get_channel_sender(channel, db, dry_run=self.dry_run)

    def _configs_for(self, db: Session, payload: NotificationPayload, route: EventRoute) -> list[NotificationConfig]:
        rows = db.execute(
            select(NotificationConfig).where(
                NotificationConfig.user_id == payload.user_id,
                NotificationConfig.channel.in_(route.channels),
            )
        ).scalars().all()
        return list(rows)

    def send(self, db: Session, payload: NotificationPayload) -> list[NotificationResult]:
        """Deliver *payload* to every eligible channel of its user.

        Returns an empty list when the event is below the route's minimum
        level or rate limited. Raises ``ValidationError`` for an invalid
        level/type/title/message.
        """
        errors = validate_payload_fields(payload.level, payload.type, payload.title, payload.message)
        if errors:
            raise ValidationError("; ".join(errors), {"errors": errors})

        route = EVENT_ROUTING[payload.type]
        if not meets_level(payload.level, route.min_level):
            return []

        if not self.rate_limiter.allow(payload.user_id, payload.type, payload.level):
            logger.info(
                "Notification rate limited for user=%s type=%s level=%s",
                payload.user_id, payload.type, payload.level,
            )
            return []

        configs = self._configs_for(db, payload, route)
        targets: list[tuple[str, NotificationConfig | None]] = [
            (c.channel, c)
            for c in configs
            if c.enabled and payload.level in (c.alert_levels or [])
        ]
        # The in-app inbox is on unless the user configured it explicitly
        if "in_app" in route.channels and not any(c.channel == "in_app" for c in configs):
            targets.insert(0, ("in_app", None))

        results = [
            self.send_to_channel(db, payload, channel, config)
            for channel, config in targets
            if channel in DELIVERY_CHANNELS
        ]
        db.commit()
        return results

    def send_to_channel(
        self,
        db: Session,
        payload: NotificationPayload,
        channel: str,
        config: NotificationConfig | None,
    ) -> NotificationResult:
        try:
            result = self._sender(channel, db).send(payload, config)
        except SaharaError as exc:
            logger.warning("Notification via %s failed: %s", channel, exc.message)
            result = NotificationResult(success=False, channel=channel, error=exc.message)
        except Exception as exc:
            logger.exception("Unexpected error delivering notification via %s", channel)
            result = NotificationResult(success=False, channel=channel, error=str(exc))

        db.add(
            NotificationLog(
                notification_config_id=config.id if config else None,
                user_id=payload.user_id,
                channel=channel,
                alert_level=payload.level,
                alert_type=payload.type,
                experiment_name=payload.experiment_name,
                title=payload.title,
                message=payload.message,
                status="sent" if result.success else "failed",
                error_message=result.error,
                response_json=result.response,
                sent_at=result.timestamp if result.success else None,
            )
        )
        return result


# ---------------------------------------------------------------------------
# Alert fan-out
# ---------------------------------------------------------------------------


@dataclass
class NotifyAlertsStats:
    total_alerts: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    errors: list[str] = field(default_factory=list)


def get_alert_subscribers(db: Session) -> list[str]:
    rows = db.execute(
        select(NotificationConfig.user_id, NotificationConfig.alert_levels).where(
            NotificationConfig.enabled.is_(True),
            NotificationConfig.channel.in_(DELIVERY_CHANNELS),
        )
    ).all()
    return sorted({r.user_id for r in rows if r.alert_levels})


def alert_title(alert: Alert, experiment_name: str | None) -> str:
    prefix = f"[{experiment_name}] " if experiment_name else ""
    return f"{prefix}{alert.type.upper()} - {alert.variant_name or 'all variants'}"


def notify_alerts(
    db: Session,
    alerts: list[Alert],
    *,
    minimum_level: str = "warning",
    experiment_name: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> NotifyAlertsStats:
    """Send every alert at or above *minimum_level* to all subscribed users."""
    dispatcher = dispatcher or NotificationDispatcher()
    selected = [a for a in alerts if meets_level(a.level, minimum_level)]
    stats = NotifyAlertsStats(total_alerts=len(selected))
    if not selected:
        return stats

    subscribers = get_alert_subscribers(db)
    action_url = (
        f"{settings.APP_BASE_URL}/admin/experiments/{experiment_name}"
        if experiment_name
        else None
    )
    for alert in selected:
        for user_id in subscribers:
            payload = NotificationPayload(
                user_id=user_id,
                level=alert.level,
                type=alert.type,
                title=alert_title(alert, experiment_name),
                message=alert.message,
                experiment_name=experiment_name,
                variant_name=alert.variant_name,
                metrics={
                    k: v
                    for k, v in {
                        "metric": alert.metric,
                        "value": alert.value,
                        "threshold": alert.threshold,
                    }.items()
                    if v is not None
                },
                action_url=action_url,
            )
            try:
                results = dispatcher.send(db, payload)
            except Exception as exc:
                logger.exception("Failed to dispatch alert to %s", user_id)
                stats.notifications_failed += 1
                stats.errors.append(f"{user_id}: {exc}")
                continue
            for result in results:
                if result.success:
                    stats.notifications_sent += 1
                else:
                    stats.notifications_failed += 1
                    stats.errors.append(f"{user_id}/{result.channel}: {result.error}")
    return stats