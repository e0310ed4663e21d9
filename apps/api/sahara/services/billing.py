"""Stripe webhook intake and subscription mirroring.

The HTTP handler verifies the signature and claims the event id; the event
body is then processed after the response has been returned. Processing
failures are recorded on the ``stripe_events`` row and logged. Retries are
left to Stripe's own webhook redelivery.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

import stripe
from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sahara.db import session_scope
from sahara.errors import ValidationError
from sahara.models import StripeEvent, UserSubscription
from sahara.settings import settings

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

SubscriptionFetcher = Callable[[str], dict[str, Any]]


def is_configured() -> bool:
    return bool(settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET)


def verify_webhook(payload: bytes, signature: str | None) -> dict[str, Any]:
    """Check the ``stripe-signature`` header and return the decoded event."""
    if not signature:
        raise ValidationError("Missing stripe-signature header")
    try:
        stripe.Webhook.construct_event(
            payload,
            signature,
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=SIGNATURE_TOLERANCE_SECONDS,
        )
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise ValidationError("Invalid signature") from exc
    return json.loads(payload)


def claim_event(db: Session, event: dict[str, Any]) -> StripeEvent | None:
    """Record the event id; returns None when it was already claimed."""
    existing = db.execute(
        select(StripeEvent).where(StripeEvent.stripe_event_id == event["id"])
    ).scalar_one_or_none()
    if existing is not None:
        return None

    row = StripeEvent(
        stripe_event_id=event["id"],
        event_type=event.get("type", ""),
        status="pending",
        payload_json=event.get("data", {}).get("object", {}),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    db.refresh(row)
    return row


def fetch_subscription(subscription_id: str) -> dict[str, Any]:
    return stripe.Subscription.retrieve(subscription_id, api_key=settings.STRIPE_SECRET_KEY)


# ---------------------------------------------------------------------------
# Subscription helpers
# ---------------------------------------------------------------------------


def _ts(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _price_id(subscription: dict[str, Any]) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def resolve_user_id(db: Session, subscription: dict[str, Any]) -> str | None:
    user_id = (subscription.get("metadata") or {}).get("userId")
    if user_id:
        return user_id
    customer_id = subscription.get("customer")
    if customer_id:
        existing = db.execute(
            select(UserSubscription).where(UserSubscription.stripe_customer_id == customer_id)
        ).scalars().first()
        if existing is not None:
            return existing.user_id
    return None


def upsert_subscription(db: Session, user_id: str, **fields: Any) -> UserSubscription:
    row = db.execute(
        select(UserSubscription).where(UserSubscription.user_id == user_id)
    ).scalar_one_or_none()
    if row is None:
        row = UserSubscription(user_id=user_id)
        db.add(row)
    for key, value in fields.items():
        setattr(row, key, value)
    db.flush()
    return row


def apply_subscription(
    db: Session, subscription: dict[str, Any], user_id: str, *, status: str | None = None
) -> UserSubscription:
    return upsert_subscription(
        db,
        user_id,
        stripe_customer_id=subscription.get("customer"),
        stripe_subscription_id=subscription.get("id"),
        stripe_price_id=_price_id(subscription),
        status=status or subscription.get("status", "incomplete"),
        current_period_start=_ts(subscription.get("current_period_start")),
        current_period_end=_ts(subscription.get("current_period_end")),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


# ---------------------------------------------------------------------------
# Event processing
# ---------------------------------------------------------------------------


class StripeEventProcessor:
    def __init__(self, fetcher: SubscriptionFetcher | None = None) -> None:
        self.fetcher = fetcher or fetch_subscription

    def handle(self, db: Session, event: dict[str, Any]) -> str | None:
        """Apply *event*; returns a failure message or None on success."""
        event_type = event.get("type")
        obj = event.get("data", {}).get("object", {})

        if event_type == "checkout.session.completed":
            if obj.get("mode") != "subscription" or not obj.get("subscription"):
                return None
            subscription = self.fetcher(obj["subscription"])
            user_id = obj.get("client_reference_id") or resolve_user_id(db, subscription)
            if not user_id:
                return f"No userId found for checkout session {obj.get('id')}"
            apply_subscription(db, subscription, user_id)

        elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
            user_id = resolve_user_id(db, obj)
            if not user_id:
                return f"No userId found for subscription {obj.get('id')}"
            apply_subscription(db, obj, user_id)

        elif event_type == "customer.subscription.deleted":
            user_id = resolve_user_id(db, obj)
            if not user_id:
                return f"No userId found for deleted subscription {obj.get('id')}"
            row = apply_subscription(db, obj, user_id, status="canceled")
            row.canceled_at = datetime.now(timezone.utc)

        elif event_type == "invoice.payment_succeeded":
            if not obj.get("subscription"):
                logger.warning("Invoice %s has no subscription", obj.get("id"))
                return None
            subscription = self.fetcher(obj["subscription"])
            user_id = resolve_user_id(db, subscription)
            if not user_id:
                return f"No userId found for invoice {obj.get('id')}"
            apply_subscription(db, subscription, user_id)

        elif event_type == "invoice.payment_failed":
            if obj.get("subscription"):
                subscription = self.fetcher(obj["subscription"])
                user_id = resolve_user_id(db, subscription)
                if user_id:
                    upsert_subscription(db, user_id, status="past_due")

        else:
            logger.debug("Ignoring Stripe event type %s", event_type)
        return None

    def process(self, db: Session, event_row_id: Any, event: dict[str, Any]) -> None:
        row = db.get(StripeEvent, event_row_id)
        if row is None:
            logger.error("Stripe event row %s disappeared before processing", event_row_id)
            return
        try:
            failure = self.handle(db, event)
        except Exception as exc:
            db.rollback()
            logger.exception("Stripe webhook processing failed for %s", event.get("id"))
            failure = str(exc) or exc.__class__.__name__

        row = db.get(StripeEvent, event_row_id)
        row.status = "failed" if failure else "processed"
        row.error_message = failure
        row.processed_at = datetime.now(timezone.utc)
        db.commit()


def process_event_in_background(
    bind: Engine, event_row_id: Any, event: dict[str, Any], processor: StripeEventProcessor | None = None
) -> None:
    """Background-task entry point; owns its own session."""
    processor = processor or StripeEventProcessor()
    with session_scope(bind) as db:
        processor.process(db, event_row_id, event)
