"""Paid-tier insights built from users who opted into benchmarks."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from sahara.auth import AuthContext
from sahara.db import get_db
from sahara.services.preferences import get_consenting_user_ids
from sahara.services.ratings import aggregate_ratings
from sahara.services.tiers import UserTier, require_tier

insights_router = APIRouter(prefix="/api/insights", tags=["insights"])


@insights_router.get("/benchmarks")
def rating_benchmarks(
    auth: AuthContext = Depends(require_tier(UserTier.PRO)),
    db: Session = Depends(get_db),
):
    user_ids = get_consenting_user_ids(db, "benchmarks")
    return {
        "success": True,
        "data": {
            "contributors": len(user_ids),
            "ratings": aggregate_ratings(db, user_ids=user_ids),
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
