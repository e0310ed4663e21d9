"""Stripe webhook endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from sahara.db import get_db
from sahara.schemas import WebhookAck
from sahara.services import billing

logger = logging.getLogger(__name__)

billing_router = APIRouter(prefix="/api/stripe", tags=["billing"])


@billing_router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Verify, claim and acknowledge; the event itself is processed afterwards."""
    if not billing.is_configured():
        raise HTTPException(status_code=503, detail="Billing is not configured")

    payload = await request.body()
    event = billing.verify_webhook(payload, request.headers.get("stripe-signature"))

    row = await run_in_threadpool(billing.claim_event, db, event)
    if row is None:
        logger.info("Stripe event %s already claimed", event.get("id"))
        return WebhookAck(status="already_claimed")

    logger.info("Queued Stripe event %s (%s)", event.get("id"), event.get("type"))
    background_tasks.add_task(
        billing.process_event_in_background, db.get_bind(), row.id, event
    )
    return WebhookAck()
