"""FastAPI router for notification sending, channels, PagerDuty and the in-app inbox.

Every route acts on the authenticated user's own rows.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sahara.auth import AuthContext, require_auth
from sahara.db import get_db
from sahara.models import InAppNotification, NotificationConfig
from sahara.schemas import (
    InAppNotificationOut,
    NotificationConfigCreate,
    NotificationConfigOut,
    NotificationConfigPatch,
    NotificationResultOut,
    NotificationSendRequest,
    PagerDutyRequest,
)
from sahara.services.notifications.base import NotificationPayload
from sahara.services.notifications.dispatcher import NotificationDispatcher
from sahara.services.notifications.pagerduty import PagerDutyClient, default_dedup_key
from sahara.services.notifications.validators import (
    validate_alert_levels,
    validate_channel_config,
    validate_payload_fields,
    redact,
)
from sahara.settings import settings

logger = logging.getLogger(__name__)

notifications_router = APIRouter(
    prefix="/api/notifications",
    tags=["notifications"],
)

PAGERDUTY_ACTIONS = ("trigger", "resolve")
WEBHOOK_REDACT_CHARS = 30
ROUTING_KEY_REDACT_CHARS = 8


def get_pagerduty_client() -> PagerDutyClient:
    return PagerDutyClient()


def _config_out(config: NotificationConfig) -> dict:
    data = NotificationConfigOut.model_validate(config).model_dump(by_alias=True, mode="json")
    data["webhookUrl"] = redact(config.webhook_url, WEBHOOK_REDACT_CHARS)
    data["routingKey"] = redact(config.routing_key, ROUTING_KEY_REDACT_CHARS)
    return data


def _user_config(db: Session, user_id: str, channel: str) -> NotificationConfig | None:
    return db.execute(
        select(NotificationConfig).where(
            NotificationConfig.user_id == user_id,
            NotificationConfig.channel == channel,
        )
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# PagerDuty
# ---------------------------------------------------------------------------


@notifications_router.get("/pagerduty")
def get_pagerduty_config(
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    config = _user_config(db, auth.user_id, "pagerduty")
    return {
        "success": True,
        "data": {
            "configured": config is not None,
            "config": _config_out(config) if config else None,
        },
    }


@notifications_router.post("/pagerduty")
def pagerduty_event(
    body: PagerDutyRequest,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    client: PagerDutyClient = Depends(get_pagerduty_client),
):
    """Trigger or resolve a PagerDuty incident for the current user."""
    if body.action not in PAGERDUTY_ACTIONS:
        raise HTTPException(status_code=400, detail="action must be 'trigger' or 'resolve'")
    if body.action == "resolve" and not body.dedup_key:
        raise HTTPException(status_code=400, detail="dedupKey is required to resolve an incident")

    payload: NotificationPayload | None = None
    if body.action == "trigger":
        errors = validate_payload_fields(body.level, body.type, body.title, body.message)
        if errors:
            raise HTTPException(status_code=400, detail={"error": "Invalid payload", "errors": errors})
        payload = NotificationPayload(
            user_id=auth.user_id,
            level=body.level,
            type=body.type,
            title=body.title,
            message=body.message,
            experiment_name=body.experiment_name,
            variant_name=body.variant_name,
            metrics=body.metrics,
            dedup_key=body.dedup_key,
        )

    routing_key = body.routing_key
    if not routing_key:
        config = _user_config(db, auth.user_id, "pagerduty")
        if config is None or not config.enabled:
            raise HTTPException(status_code=404, detail="PagerDuty is not configured")
        routing_key = config.routing_key
    if not routing_key:
        raise HTTPException(status_code=400, detail="PagerDuty routing key not configured")

    dedup_key = body.dedup_key or default_dedup_key(payload)
    if settings.NOTIFICATIONS_DRY_RUN:
        logger.info("[dry-run] PagerDuty %s dedup_key=%s", body.action, dedup_key)
    elif body.action == "trigger":
        response = client.trigger(routing_key, payload, dedup_key=dedup_key)
        dedup_key = response.get("dedup_key") or dedup_key
    else:
        client.resolve(routing_key, dedup_key)

    return {
        "success": True,
        "data": {
            "action": body.action,
            "channel": "pagerduty",
            "dedupKey": dedup_key,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


@notifications_router.post("/send")
def send_notification(
    body: NotificationSendRequest,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Deliver one event, or every event in ``batch``, to the user's channels.

    The whole request is rejected if any event is invalid; delivery failures
    on individual channels are reported in ``results``.
    """
    items = body.batch or [body]
    errors: list[str] = []
    for index, item in enumerate(items):
        item_errors = validate_payload_fields(item.level, item.type, item.title, item.message)
        if body.batch:
            item_errors = [f"batch[{index}]: {e}" for e in item_errors]
        errors += item_errors
    if errors:
        raise HTTPException(status_code=400, detail={"error": "Invalid payload", "errors": errors})

    results = []
    for item in items:
        payload = NotificationPayload(
            user_id=auth.user_id,
            level=item.level,
            type=item.type,
            title=item.title,
            message=item.message,
            experiment_name=item.experiment_name,
            variant_name=item.variant_name,
            metrics=item.metrics,
            action_url=item.action_url,
        )
        results += dispatcher.send(db, payload)

    sent = sum(1 for r in results if r.success)
    logger.info(
        "Sent %d/%d notifications for user %s (%d events)",
        sent, len(results), auth.user_id, len(items),
    )
    return {
        "success": True,
        "data": {
            "sent": sent,
            "failed": len(results) - sent,
            "results": [
                NotificationResultOut.model_validate(r.model_dump()).model_dump(
                    by_alias=True, mode="json"
                )
                for r in results
            ],
        },
    }


# ---------------------------------------------------------------------------
# Channel configuration
# ---------------------------------------------------------------------------


@notifications_router.get("/config")
def list_notification_configs(
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    configs = db.execute(
        select(NotificationConfig)
        .where(NotificationConfig.user_id == auth.user_id)
        .order_by(NotificationConfig.channel)
    ).scalars().all()
    return {"success": True, "data": [_config_out(c) for c in configs]}


@notifications_router.post("/config", status_code=201)
def create_notification_config(
    body: NotificationConfigCreate,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    errors = validate_channel_config(
        body.channel,
        webhook_url=body.webhook_url,
        routing_key=body.routing_key,
        email_address=body.email_address,
    ) + validate_alert_levels(body.alert_levels)
    if errors:
        raise HTTPException(status_code=400, detail={"error": "Invalid configuration", "errors": errors})

    if _user_config(db, auth.user_id, body.channel) is not None:
        raise HTTPException(status_code=409, detail=f"A {body.channel} configuration already exists")

    config = NotificationConfig(
        user_id=auth.user_id,
        channel=body.channel,
        enabled=body.enabled,
        webhook_url=body.webhook_url,
        routing_key=body.routing_key,
        email_address=body.email_address,
        alert_levels=body.alert_levels,
        metadata_json=body.metadata,
    )
    db.add(config)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail=f"A {body.channel} configuration already exists")
    db.refresh(config)
    logger.info("Created %s notification config for user %s", config.channel, auth.user_id)
    return {"success": True, "data": _config_out(config)}


@notifications_router.patch("/config")
def update_notification_config(
    body: NotificationConfigPatch,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    config = db.get(NotificationConfig, body.id)
    if config is None or config.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Configuration not found")

    updates = body.model_dump(exclude_unset=True, exclude={"id"})
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    errors = validate_channel_config(
        config.channel,
        webhook_url=updates.get("webhook_url", config.webhook_url),
        routing_key=updates.get("routing_key", config.routing_key),
        email_address=updates.get("email_address", config.email_address),
    )
    if "alert_levels" in updates:
        errors += validate_alert_levels(updates["alert_levels"])
    if errors:
        raise HTTPException(status_code=400, detail={"error": "Invalid configuration", "errors": errors})

    if "metadata" in updates:
        config.metadata_json = updates.pop("metadata") or {}
    for key, value in updates.items():
        setattr(config, key, value)
    db.commit()
    db.refresh(config)
    return {"success": True, "data": _config_out(config)}


@notifications_router.delete("/config/{config_id}")
def delete_notification_config(
    config_id: uuid.UUID,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    config = db.get(NotificationConfig, config_id)
    if config is None or config.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Configuration not found")
    db.delete(config)
    db.commit()
    return {"success": True}


# ---------------------------------------------------------------------------
# In-app inbox
# ---------------------------------------------------------------------------


@notifications_router.get("/inbox")
def list_inbox(
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    stmt = select(InAppNotification).where(InAppNotification.user_id == auth.user_id)
    if unread_only:
        stmt = stmt.where(InAppNotification.read_at.is_(None))
    stmt = stmt.order_by(InAppNotification.created_at.desc()).limit(100)
    rows = db.execute(stmt).scalars().all()
    return {
        "success": True,
        "data": [
            InAppNotificationOut.model_validate(r).model_dump(by_alias=True, mode="json")
            for r in rows
        ],
    }


@notifications_router.post("/inbox/{notification_id}/read")
def mark_read(
    notification_id: uuid.UUID,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    row = db.get(InAppNotification, notification_id)
    if row is None or row.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Notification not found")
    if row.read_at is None:
        row.read_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(row)
    return {
        "success": True,
        "data": InAppNotificationOut.model_validate(row).model_dump(by_alias=True, mode="json"),
    }
