"""Experiment monitor: the cron-style pass over all active experiments.

For each active experiment: aggregate metrics, evaluate alerts, check
eligibility, promote when allowed, then notify. One experiment failing never
stops the rest; failures are collected into the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from sahara.errors import SaharaError
from sahara.models import Experiment, PromotionRecord
from sahara.services.monitoring.alerts import (
    DEFAULT_THRESHOLDS,
    AlertThresholds,
    evaluate_experiment,
)
from sahara.services.monitoring.eligibility import (
    EligibilityResult,
    PromotionConfig,
    evaluate_eligibility,
)
from sahara.services.monitoring.metrics import (
    as_utc,
    get_experiment_metrics,
    variant_metrics_to_dict,
)
from sahara.services.monitoring.promotion import PromotionExecutor
from sahara.services.notifications.base import NotificationPayload, NotificationResult
from sahara.services.notifications.dispatcher import NotificationDispatcher, notify_alerts
from sahara.settings import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Promotion notifications
# ---------------------------------------------------------------------------


def notify_promotion(
    db: Session,
    user_id: str,
    record: PromotionRecord,
    eligibility: EligibilityResult,
    *,
    dispatcher: NotificationDispatcher | None = None,
) -> list[NotificationResult]:
    """Tell *user_id* a variant was promoted. Never raises."""
    dispatcher = dispatcher or NotificationDispatcher()
    experiment_name = eligibility.experiment_name
    payload = NotificationPayload(
        user_id=user_id,
        level="info",
        type="significance",
        title=f"[{experiment_name}] Variant '{record.promoted_variant_name}' promoted",
        message=(
            f"Variant '{record.promoted_variant_name}' now receives 100% of traffic "
            f"({record.promotion_type} promotion, {eligibility.confidence_level}% confidence, "
            f"{eligibility.improvement_percent:+.1f}% improvement)."
        ),
        experiment_name=experiment_name,
        variant_name=record.promoted_variant_name,
        metrics={
            "confidence_level": eligibility.confidence_level,
            "improvement_percent": round(eligibility.improvement_percent, 2),
        },
        action_url=f"{settings.APP_BASE_URL}/admin/experiments/{experiment_name}",
    )
    try:
        return dispatcher.send(db, payload)
    except Exception:
        logger.exception("Failed to send promotion notification for %s", experiment_name)
        return []


# ---------------------------------------------------------------------------
# Auto-promotion pass
# ---------------------------------------------------------------------------


@dataclass
class AutoPromotionResult:
    checked: int = 0
    eligible: int = 0
    promoted: int = 0
    promoted_experiments: list[str] = field(default_factory=list)
    alerts_sent: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class AutoPromotionRunner:
    """Runs the monitor pass over every active experiment."""

    def __init__(
        self,
        *,
        executor: PromotionExecutor | None = None,
        dispatcher: NotificationDispatcher | None = None,
        thresholds: AlertThresholds = DEFAULT_THRESHOLDS,
        notify_alerts_enabled: bool | None = None,
    ) -> None:
        self.executor = executor or PromotionExecutor()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.thresholds = thresholds
        self.notify_alerts_enabled = (
            settings.AUTO_NOTIFY_ALERTS if notify_alerts_enabled is None else notify_alerts_enabled
        )

    def run(
        self,
        db: Session,
        *,
        user_id: str | None = None,
        config: PromotionConfig | None = None,
    ) -> AutoPromotionResult:
        """Check every active experiment once.

        Parameters
        ----------
        user_id : str, optional
            Receives promotion notifications. Alerts go to all subscribers.
        config : PromotionConfig, optional
            Defaults to the settings-derived config.
        """
        config = config or PromotionConfig.from_settings()
        result = AutoPromotionResult()

        names = db.execute(
            select(Experiment.name).where(Experiment.is_active.is_(True)).order_by(Experiment.name)
        ).scalars().all()

        for name in names:
            result.checked += 1
            try:
                self._process(db, name, config, user_id, result)
            except SaharaError as exc:
                db.rollback()
                result.errors.append(f"{name}: {exc.message}")
            except Exception as exc:
                db.rollback()
                logger.exception("Auto-promotion failed for experiment %s", name)
                result.errors.append(f"{name}: {exc}")

        logger.info(
            "Auto-promotion pass: checked=%d eligible=%d promoted=%d errors=%d",
            result.checked, result.eligible, result.promoted, len(result.errors),
        )
        return result

    def _process(
        self,
        db: Session,
        name: str,
        config: PromotionConfig,
        user_id: str | None,
        result: AutoPromotionResult,
    ) -> None:
        experiment = db.execute(
            select(Experiment).where(Experiment.name == name)
        ).scalar_one()
        metrics = get_experiment_metrics(db, name, window_start=as_utc(experiment.start_date))

        if self.notify_alerts_enabled:
            alerts = evaluate_experiment(metrics, self.thresholds)
            stats = notify_alerts(
                db, alerts, experiment_name=name, dispatcher=self.dispatcher
            )
            result.alerts_sent += stats.notifications_sent

        eligibility = evaluate_eligibility(metrics, config)
        if not eligibility.is_eligible:
            return
        result.eligible += 1
        if config.require_manual_approval:
            return

        record = self.executor.promote_winner(
            db,
            name,
            promotion_type="auto",
            promoted_by="system",
            config=config,
            eligibility=eligibility,
        )
        result.promoted += 1
        result.promoted_experiments.append(name)
        if user_id:
            notify_promotion(db, user_id, record, eligibility, dispatcher=self.dispatcher)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def get_monitoring_dashboard(
    db: Session, *, thresholds: AlertThresholds = DEFAULT_THRESHOLDS
) -> dict[str, Any]:
    """Last-24h view of every active experiment with its alerts."""
    names = db.execute(
        select(Experiment.name).where(Experiment.is_active.is_(True)).order_by(Experiment.name)
    ).scalars().all()

    experiments: list[dict[str, Any]] = []
    total_requests = 0
    critical_alerts = 0
    for name in names:
        metrics = get_experiment_metrics(db, name)
        alerts = evaluate_experiment(metrics, thresholds)
        total_requests += metrics.total_requests
        critical_alerts += sum(1 for a in alerts if a.level == "critical")
        sig = metrics.significance
        experiments.append(
            {
                "experiment_name": name,
                "total_requests": metrics.total_requests,
                "variants": [variant_metrics_to_dict(v) for v in metrics.variants],
                "winner": metrics.winner.variant_name if metrics.winner else None,
                "is_significant": bool(sig and sig.is_significant),
                "confidence_level": sig.confidence_level if sig else 0.0,
                "improvement_percent": round(metrics.improvement_percent, 2),
                "alerts": [a.to_dict() for a in alerts],
            }
        )

    return {
        "active_experiments": len(experiments),
        "total_requests": total_requests,
        "critical_alerts": critical_alerts,
        "experiments": experiments,
    }
