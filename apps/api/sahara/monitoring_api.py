"""FastAPI router for experiment monitoring and promotion.

Sync endpoints with ``get_db``; every route is admin-gated.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from sahara.auth import AuthContext, require_admin
from sahara.db import get_db
from sahara.schemas import (
    AlertOut,
    AutoPromotionOut,
    EligibilityOut,
    NotificationResultOut,
    PromoteRequest,
    PromotionRecordOut,
    RollbackRequest,
    VariantMetricsOut,
)
from sahara.services.monitoring.alerts import evaluate_experiment
from sahara.services.monitoring.eligibility import (
    PromotionConfig,
    check_promotion_eligibility,
)
from sahara.services.monitoring.metrics import (
    get_experiment_metrics,
    variant_metrics_to_dict,
)
from sahara.services.monitoring.monitor import (
    AutoPromotionRunner,
    get_monitoring_dashboard,
    notify_promotion,
)
from sahara.services.monitoring.promotion import (
    PROMOTION_TYPES,
    PromotionExecutor,
    get_promotion_history,
)

logger = logging.getLogger(__name__)

monitoring_router = APIRouter(
    prefix="/api/monitoring",
    tags=["monitoring"],
    dependencies=[Depends(require_admin)],
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _eligibility_out(result) -> dict:
    return EligibilityOut.model_validate(result.to_dict()).model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------


@monitoring_router.get("/experiments/{name}/promote")
def check_eligibility(
    name: str,
    min_sample_size: int | None = Query(default=None, alias="minSampleSize", ge=0),
    min_confidence_level: float | None = Query(default=None, alias="minConfidenceLevel"),
    min_improvement_percent: float | None = Query(default=None, alias="minImprovementPercent"),
    min_runtime_hours: float | None = Query(default=None, alias="minRuntimeHours", ge=0),
    max_error_rate: float | None = Query(default=None, alias="maxErrorRate", ge=0),
    db: Session = Depends(get_db),
):
    """Check whether an experiment's leading variant may be promoted."""
    overrides = {
        "min_sample_size": min_sample_size,
        "min_confidence_level": min_confidence_level,
        "min_improvement_percent": min_improvement_percent,
        "min_runtime_hours": min_runtime_hours,
        "max_error_rate": max_error_rate,
    }
    config = PromotionConfig.from_settings().model_copy(
        update={k: v for k, v in overrides.items() if v is not None}
    )
    logger.info("Checking promotion eligibility for %s", name)
    result = check_promotion_eligibility(db, name, config)
    return {
        "success": True,
        "data": {
            **_eligibility_out(result),
            "config": config.model_dump(by_alias=True),
        },
        "timestamp": _now(),
    }


@monitoring_router.post("/experiments/{name}/promote")
def promote_experiment(
    name: str,
    body: PromoteRequest,
    db: Session = Depends(get_db),
):
    """Promote the winning variant to 100% of traffic."""
    if body.promotion_type not in PROMOTION_TYPES:
        raise HTTPException(status_code=400, detail="promotionType must be 'auto' or 'manual'")

    config = body.config or PromotionConfig.from_settings()
    eligibility = check_promotion_eligibility(db, name, config)
    record = PromotionExecutor().promote_winner(
        db,
        name,
        promotion_type=body.promotion_type,
        promoted_by=body.promoted_by,
        config=config,
        eligibility=eligibility,
    )
    notifications = []
    if body.user_id:
        notifications = notify_promotion(db, body.user_id, record, eligibility)

    return {
        "success": True,
        "data": {
            "promotion": PromotionRecordOut.model_validate(record).model_dump(
                by_alias=True, mode="json"
            ),
            "eligibility": _eligibility_out(eligibility),
            "notifications": [
                NotificationResultOut.model_validate(n.model_dump()).model_dump(
                    by_alias=True, mode="json"
                )
                for n in notifications
            ],
        },
        "message": f"Successfully promoted variant {record.promoted_variant_name} to production",
        "timestamp": _now(),
    }


@monitoring_router.delete("/experiments/{name}/promote")
def rollback_experiment(
    name: str,
    body: RollbackRequest,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Roll back the latest live promotion."""
    if not body.reason or not body.reason.strip():
        raise HTTPException(status_code=400, detail="reason is required")

    record = PromotionExecutor().rollback_promotion(
        db,
        name,
        reason=body.reason,
        rolled_back_by=body.rolled_back_by or auth.user_id,
    )
    return {
        "success": True,
        "data": PromotionRecordOut.model_validate(record).model_dump(by_alias=True, mode="json"),
        "message": f"Rolled back promotion of {record.promoted_variant_name}",
        "timestamp": _now(),
    }


@monitoring_router.get(
    "/experiments/{name}/promotions",
    response_model=list[PromotionRecordOut],
)
def list_promotions(
    name: str,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return get_promotion_history(db, name, limit=limit)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@monitoring_router.get("/experiments/{name}/metrics")
def experiment_metrics(
    name: str,
    hours: float = Query(default=24, gt=0, le=24 * 90),
    db: Session = Depends(get_db),
):
    """Windowed per-variant metrics and current alerts."""
    end = datetime.now(timezone.utc)
    metrics = get_experiment_metrics(db, name, window_start=end - timedelta(hours=hours), window_end=end)
    alerts = evaluate_experiment(metrics)
    sig = metrics.significance
    return {
        "experimentName": metrics.experiment_name,
        "isActive": metrics.is_active,
        "windowStart": metrics.window_start.isoformat(),
        "windowEnd": metrics.window_end.isoformat(),
        "totalRequests": metrics.total_requests,
        "variants": [
            VariantMetricsOut.model_validate(variant_metrics_to_dict(v)).model_dump(
                by_alias=True, mode="json"
            )
            for v in metrics.variants
        ],
        "winner": metrics.winner.variant_name if metrics.winner else None,
        "isSignificant": bool(sig and sig.is_significant),
        "confidenceLevel": sig.confidence_level if sig else 0.0,
        "improvementPercent": round(metrics.improvement_percent, 2),
        "alerts": [
            AlertOut.model_validate(a.to_dict()).model_dump(by_alias=True, mode="json")
            for a in alerts
        ],
    }


@monitoring_router.get("/dashboard")
def monitoring_dashboard(db: Session = Depends(get_db)):
    return get_monitoring_dashboard(db)


@monitoring_router.get("/auto-promote", response_model=AutoPromotionOut)
def run_auto_promotion(
    user_id: str | None = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    """Cron entry point: check and promote every active experiment."""
    result = AutoPromotionRunner().run(db, user_id=user_id)
    return AutoPromotionOut(
        checked=result.checked,
        eligible=result.eligible,
        promoted=result.promoted,
        promoted_experiments=result.promoted_experiments,
        alerts_sent=result.alerts_sent,
        errors=result.errors,
    )
