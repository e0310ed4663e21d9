"""Promotion executor: flips traffic to a winning variant and rolls it back.

PromotionRecord lifecycle: ``pending -> promoted -> rolled_back``. Records are
never deleted; rollback only stamps the rollback fields.
"""

from __future__ import annotations

import logging
import uuid as uuid_mod
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from sahara.errors import (
    ManualApprovalRequiredError,
    NotEligibleError,
    PromotionNotFoundError,
    ValidationError,
)
from sahara.models import Experiment, PromotionRecord
from sahara.services.monitoring.eligibility import (
    EligibilityResult,
    PromotionConfig,
    check_promotion_eligibility,
)
from sahara.services.monitoring.metrics import get_experiment, variant_metrics_to_dict

logger = logging.getLogger(__name__)

PROMOTION_TYPES = ("auto", "manual")


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def equal_split(variant_ids: list[str]) -> dict[str, float]:
    """Split 100% evenly; the remainder goes to the first variant."""
    if not variant_ids:
        return {}
    share = (Decimal("100") / len(variant_ids)).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
    split = {vid: share for vid in variant_ids}
    split[variant_ids[0]] += Decimal("100") - share * len(variant_ids)
    return {vid: float(pct) for vid, pct in split.items()}


def current_allocation(experiment: Experiment) -> dict[str, float]:
    return {str(v.id): float(_to_decimal(v.traffic_percentage)) for v in experiment.variants}


class PromotionExecutor:
    """Applies and reverts promotions for one experiment at a time.

    No row locking: two concurrent promotions of the same experiment both
    write the variant rows and the last commit wins.
    """

    def promote_winner(
        self,
        db: Session,
        experiment_name: str,
        *,
        promotion_type: str = "manual",
        promoted_by: str | None = None,
        config: PromotionConfig | None = None,
        eligibility: EligibilityResult | None = None,
    ) -> PromotionRecord:
        """Route all traffic of *experiment_name* to its winning variant.

        Parameters
        ----------
        promotion_type : str
            ``auto`` or ``manual``. Auto promotions are refused when the
            config requires manual approval.
        eligibility : EligibilityResult, optional
            A result computed by the caller in the same request; recomputed
            when omitted.

        Raises
        ------
        ValidationError
            Unknown promotion type.
        NotEligibleError
            The eligibility check failed.
        ManualApprovalRequiredError
            Auto promotion while manual approval is required.
        """
        if promotion_type not in PROMOTION_TYPES:
            raise ValidationError("promotionType must be 'auto' or 'manual'")

        config = config or PromotionConfig.from_settings()
        eligibility = eligibility or check_promotion_eligibility(db, experiment_name, config)
        if not eligibility.is_eligible or eligibility.winner is None:
            raise NotEligibleError(
                f"Experiment '{experiment_name}' is not eligible for promotion",
                {"eligibility": eligibility.to_dict()},
            )
        if promotion_type == "auto" and config.require_manual_approval:
            raise ManualApprovalRequiredError(
                "Manual approval required for this promotion",
                {"eligibility": eligibility.to_dict()},
            )

        experiment = get_experiment(db, experiment_name)
        winner_id = uuid_mod.UUID(eligibility.winner.variant_id)
        now = datetime.now(timezone.utc)

        record = PromotionRecord(
            experiment_id=experiment.id,
            promoted_variant_id=winner_id,
            promoted_variant_name=eligibility.winner.variant_name,
            promotion_type=promotion_type,
            status="pending",
            confidence_level=eligibility.confidence_level,
            improvement_percent=round(eligibility.improvement_percent, 4),
            promoted_by=promoted_by,
            previous_allocation_json=current_allocation(experiment),
            metadata_json={
                "warnings": list(eligibility.warnings),
                "safety_checks": eligibility.safety_checks,
                "winner_metrics": variant_metrics_to_dict(eligibility.winner),
                "control_metrics": (
                    variant_metrics_to_dict(eligibility.control) if eligibility.control else None
                ),
                "config": config.model_dump(),
            },
        )
        db.add(record)
        db.flush()

        for variant in experiment.variants:
            is_winner = variant.id == winner_id
            variant.traffic_percentage = 100 if is_winner else 0
            variant.is_winner = is_winner

        experiment.is_active = False
        experiment.end_date = now
        record.status = "promoted"
        record.promoted_at = now

        db.commit()
        db.refresh(record)
        logger.info(
            "Promoted variant %s of experiment %s (%s, by %s)",
            record.promoted_variant_name, experiment_name, promotion_type, promoted_by,
        )
        return record

    def rollback_promotion(
        self,
        db: Session,
        experiment_name: str,
        *,
        reason: str,
        rolled_back_by: str | None = None,
    ) -> PromotionRecord:
        """Undo the latest live promotion of *experiment_name*.

        Restores the traffic split recorded at promotion time (equal split
        when none was recorded) and reactivates the experiment.
        """
        if not reason or not reason.strip():
            raise ValidationError("A rollback reason is required")

        experiment = get_experiment(db, experiment_name)
        record = db.execute(
            select(PromotionRecord)
            .where(
                PromotionRecord.experiment_id == experiment.id,
                PromotionRecord.status == "promoted",
                PromotionRecord.rollback_at.is_(None),
            )
            .order_by(PromotionRecord.promoted_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if record is None:
            raise PromotionNotFoundError(experiment_name)

        previous = dict(record.previous_allocation_json or {})
        variant_ids = [str(v.id) for v in experiment.variants]
        if not previous or not set(previous) & set(variant_ids):
            previous = equal_split(variant_ids)

        for variant in experiment.variants:
            variant.traffic_percentage = previous.get(str(variant.id), 0)
            variant.is_winner = False

        experiment.is_active = True
        experiment.end_date = None

        record.status = "rolled_back"
        record.rollback_at = datetime.now(timezone.utc)
        record.rollback_reason = reason.strip()
        record.metadata_json = {
            **(record.metadata_json or {}),
            "rolled_back_by": rolled_back_by,
            "restored_allocation": previous,
        }

        db.commit()
        db.refresh(record)
        logger.info(
            "Rolled back promotion %s of experiment %s: %s",
            record.id, experiment_name, record.rollback_reason,
        )
        return record


def get_promotion_history(
    db: Session, experiment_name: str | None = None, *, limit: int = 50
) -> list[PromotionRecord]:
    stmt = select(PromotionRecord).order_by(PromotionRecord.promoted_at.desc()).limit(limit)
    if experiment_name is not None:
        experiment = get_experiment(db, experiment_name)
        stmt = stmt.where(PromotionRecord.experiment_id == experiment.id)
    return list(db.execute(stmt).scalars().all())
