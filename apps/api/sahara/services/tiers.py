from __future__ import annotations

import enum
import logging

from fastapi import Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from sahara.auth import AuthContext, require_auth
from sahara.db import get_db
from sahara.models import UserSubscription
from sahara.settings import settings

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing")
UPGRADE_URL = "/pricing"


class UserTier(enum.IntEnum):
    FREE = 0
    PRO = 1
    STUDIO = 2


TIER_NAMES = {UserTier.FREE: "Free", UserTier.PRO: "Pro", UserTier.STUDIO: "Studio"}


def tier_for_price(price_id: str | None) -> UserTier:
    if price_id and price_id == settings.STRIPE_STUDIO_PRICE_ID:
        return UserTier.STUDIO
    if price_id and price_id == settings.STRIPE_PRO_PRICE_ID:
        return UserTier.PRO
    return UserTier.FREE


def get_user_tier(db: Session, user_id: str) -> UserTier:
    """Tier from the user's active or trialing subscription, FREE otherwise."""
    subscription = db.execute(
        select(UserSubscription).where(UserSubscription.user_id == user_id)
    ).scalar_one_or_none()
    if subscription is None or subscription.status not in ACTIVE_STATUSES:
        return UserTier.FREE
    return tier_for_price(subscription.stripe_price_id)


def require_tier(required: UserTier):
    """Build a dependency that rejects callers below *required* with 403."""

    def dependency(
        auth: AuthContext = Depends(require_auth),
        db: Session = Depends(get_db),
    ) -> AuthContext:
        current = get_user_tier(db, auth.user_id)
        if current < required:
            logger.info(
                "Tier check failed for %s: has %s, needs %s",
                auth.user_id, current.name, required.name,
            )
            raise HTTPException(
                status_code=403,
                detail={
                    "success": False,
                    "error": f"This feature requires the {TIER_NAMES[required]} plan",
                    "code": "TIER_REQUIRED",
                    "requiredTier": TIER_NAMES[required],
                    "currentTier": TIER_NAMES[current],
                    "upgradeUrl": UPGRADE_URL,
                },
            )
        return auth

    return dependency
