from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sahara.errors import ValidationError
from sahara.models import AIRating

logger = logging.getLogger(__name__)

RATING_VARIANTS = ("thumbs", "stars")
VALID_TAGS = ("helpful", "accurate", "unclear", "wrong", "incomplete")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def validate_rating(variant: str, rating: Any, tags: list[str] | None = None) -> int:
    """Return the normalised integer rating or raise ``ValidationError``.

    ``thumbs`` accepts -1 or 1; ``stars`` accepts integers 1..5.
    """
    if rating is None:
        raise ValidationError("rating is required")

    value = _as_int(rating)
    if variant == "thumbs":
        if value not in (-1, 1):
            raise ValidationError("For thumbs variant, rating must be -1 (down) or 1 (up)")
    elif variant == "stars":
        if value is None or not 1 <= value <= 5:
            raise ValidationError(
                "For stars variant, rating must be an integer between 1 and 5"
            )
    else:
        raise ValidationError('variant must be either "thumbs" or "stars"')

    invalid = [t for t in (tags or []) if t not in VALID_TAGS]
    if invalid:
        raise ValidationError(
            f"Invalid feedback tags: {', '.join(invalid)}. "
            f"Valid tags: {', '.join(VALID_TAGS)}"
        )
    return value


def submit_rating(
    db: Session,
    *,
    user_id: str,
    response_id: str,
    rating: Any,
    variant: str = "stars",
    tags: list[str] | None = None,
    feedback: str | None = None,
) -> AIRating:
    if not response_id:
        raise ValidationError("responseId is required")
    value = validate_rating(variant, rating, tags)

    row = AIRating(
        response_id=response_id,
        user_id=user_id,
        rating=value,
        variant=variant,
        tags=list(tags or []),
        feedback=feedback or None,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("Saved %s rating %s for response %s", variant, row.id, response_id)
    return row


def aggregate_ratings(db: Session, *, user_ids: list[str] | None = None) -> list[dict[str, Any]]:
    """Per-variant totals; optionally restricted to *user_ids*."""
    stmt = select(
        AIRating.variant,
        func.count(AIRating.id).label("total_ratings"),
        func.avg(AIRating.rating).label("avg_rating"),
        func.count(func.distinct(AIRating.user_id)).label("unique_users"),
        func.count(AIRating.feedback).label("with_feedback"),
    ).group_by(AIRating.variant).order_by(AIRating.variant)
    if user_ids is not None:
        stmt = stmt.where(AIRating.user_id.in_(user_ids))

    return [
        {
            "variant": r.variant,
            "total_ratings": r.total_ratings,
            "avg_rating": round(float(r.avg_rating), 3) if r.avg_rating is not None else None,
            "unique_users": r.unique_users,
            "with_feedback": r.with_feedback,
        }
        for r in db.execute(stmt).all()
    ]


def list_ratings(
    db: Session,
    *,
    response_id: str | None = None,
    user_id: str | None = None,
) -> list[AIRating]:
    stmt = select(AIRating).order_by(AIRating.created_at.desc())
    if response_id:
        stmt = stmt.where(AIRating.response_id == response_id)
    elif user_id:
        stmt = stmt.where(AIRating.user_id == user_id).limit(100)
    else:
        stmt = stmt.limit(50)
    return list(db.execute(stmt).scalars().all())
