"""FastAPI router for AI response ratings."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from sahara.auth import AuthContext, require_auth
from sahara.db import get_db
from sahara.schemas import RatingCreate, RatingOut
from sahara.services.rate_limit import RATE_LIMIT_TIERS, RateLimitConfig, rate_limit
from sahara.services.ratings import aggregate_ratings, list_ratings, submit_rating

logger = logging.getLogger(__name__)

ratings_router = APIRouter(prefix="/api/ai", tags=["ratings"])

RATING_RATE_LIMIT = RateLimitConfig(
    limit=RATE_LIMIT_TIERS["free"].limit,
    window_seconds=RATE_LIMIT_TIERS["free"].window_seconds,
    identifier="user",
    key_prefix="ai-rating",
)


@ratings_router.post(
    "/rating",
    dependencies=[Depends(rate_limit(RATING_RATE_LIMIT))],
)
def create_rating(
    body: RatingCreate,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    row = submit_rating(
        db,
        user_id=auth.user_id,
        response_id=body.response_id,
        rating=body.rating,
        variant=body.variant,
        tags=body.feedback.tags,
        feedback=body.feedback.text,
    )
    return {
        "success": True,
        "data": RatingOut.model_validate(row).model_dump(by_alias=True, mode="json"),
    }


@ratings_router.get("/rating")
def get_ratings(
    aggregate: bool = False,
    response_id: str | None = Query(default=None, alias="responseId"),
    user_id: str | None = Query(default=None, alias="userId"),
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """Aggregates by variant, or ratings by response, by user, or the latest 50.

    Non-admin callers only see their own ratings.
    """
    if user_id and user_id != auth.user_id and not auth.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")

    if aggregate:
        return {"success": True, "data": aggregate_ratings(db)}

    if not auth.is_admin and not response_id:
        user_id = auth.user_id
    rows = list_ratings(db, response_id=response_id, user_id=user_id)
    if not auth.is_admin:
        rows = [r for r in rows if r.user_id == auth.user_id]
    return {
        "success": True,
        "data": [RatingOut.model_validate(r).model_dump(by_alias=True, mode="json") for r in rows],
    }
