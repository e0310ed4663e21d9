"""Promotion eligibility checks.

Each safety check is a small pure function returning a ``SafetyCheck``;
``check_promotion_eligibility`` loads metrics, runs them all and folds the
outcomes into an ``EligibilityResult`` with a recommendation tag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from sahara.services.monitoring.metrics import (
    ExperimentMetrics,
    VariantMetrics,
    as_utc,
    get_experiment,
    get_experiment_metrics,
    variant_metrics_to_dict,
)
from sahara.settings import settings

# Winner p95 may exceed control p95 by this factor before a warning
LATENCY_WARNING_FACTOR = 1.2


class PromotionConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    min_sample_size: int = Field(default=1000, ge=0)
    min_confidence_level: float = Field(default=95.0, ge=0, le=100)
    min_improvement_percent: float = 5.0
    min_runtime_hours: float = Field(default=48.0, ge=0)
    max_error_rate: float = Field(default=0.05, ge=0, le=1)
    require_manual_approval: bool = False

    @classmethod
    def from_settings(cls) -> "PromotionConfig":
        return cls(
            min_sample_size=settings.AUTO_PROMOTION_MIN_SAMPLE_SIZE,
            min_confidence_level=settings.AUTO_PROMOTION_MIN_CONFIDENCE,
            min_improvement_percent=settings.AUTO_PROMOTION_MIN_IMPROVEMENT_PCT,
            min_runtime_hours=settings.AUTO_PROMOTION_MIN_RUNTIME_HOURS,
            max_error_rate=settings.AUTO_PROMOTION_MAX_ERROR_RATE,
            require_manual_approval=settings.AUTO_PROMOTION_REQUIRE_MANUAL_APPROVAL,
        )


@dataclass(frozen=True)
class SafetyCheck:
    """Outcome of a single safety check."""

    passed: bool
    rule_name: str
    message: str
    severity: str = "critical"  # "critical" | "warning"
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class EligibilityResult:
    experiment_name: str
    is_eligible: bool = False
    recommendation: str = "not_ready"
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    checks: list[SafetyCheck] = field(default_factory=list)
    winner: VariantMetrics | None = None
    control: VariantMetrics | None = None
    confidence_level: float = 0.0
    improvement_percent: float = 0.0
    runtime_hours: float = 0.0

    @property
    def safety_checks(self) -> dict[str, bool]:
        return {c.rule_name: c.passed for c in self.checks}

    def to_dict(self) -> dict[str, Any]:
        return {
            "experiment_name": self.experiment_name,
            "is_eligible": self.is_eligible,
            "recommendation": self.recommendation,
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "safety_checks": self.safety_checks,
            "winner": variant_metrics_to_dict(self.winner) if self.winner else None,
            "control": variant_metrics_to_dict(self.control) if self.control else None,
            "confidence_level": self.confidence_level,
            "improvement_percent": round(self.improvement_percent, 2),
            "runtime_hours": round(self.runtime_hours, 2),
        }


# ---------------------------------------------------------------------------
# 1. Sample size
# ---------------------------------------------------------------------------


def check_sample_size(
    winner: VariantMetrics, control: VariantMetrics, *, min_sample_size: int
) -> SafetyCheck:
    passed = (
        winner.sample_size >= min_sample_size
        and control.sample_size >= min_sample_size
    )
    if passed:
        message = "Sample size sufficient"
    else:
        message = (
            f"Insufficient sample size (winner: {winner.sample_size}, "
            f"control: {control.sample_size}, required: {min_sample_size})"
        )
    return SafetyCheck(
        passed=passed,
        rule_name="min_sample_size",
        message=message,
        details={
            "winner": winner.sample_size,
            "control": control.sample_size,
            "required": min_sample_size,
        },
    )


# ---------------------------------------------------------------------------
# 2. Confidence
# ---------------------------------------------------------------------------


def check_confidence(
    is_significant: bool, confidence_level: float, *, min_confidence_level: float
) -> SafetyCheck:
    passed = is_significant and confidence_level >= min_confidence_level
    if passed:
        message = f"Confidence {confidence_level}% meets requirement"
    elif not is_significant:
        message = "Results are not statistically significant"
    else:
        message = (
            f"Confidence level too low ({confidence_level}% < "
            f"{min_confidence_level}%)"
        )
    return SafetyCheck(
        passed=passed,
        rule_name="min_confidence",
        message=message,
        details={"confidence_level": confidence_level, "required": min_confidence_level},
    )


# ---------------------------------------------------------------------------
# 3. Improvement
# ---------------------------------------------------------------------------


def check_improvement(
    improvement: float, *, min_improvement_percent: float
) -> SafetyCheck:
    passed = improvement >= min_improvement_percent
    return SafetyCheck(
        passed=passed,
        rule_name="min_improvement",
        message=(
            f"Improvement {improvement:.2f}% meets requirement"
            if passed
            else (
                f"Improvement too small ({improvement:.2f}% < "
                f"{min_improvement_percent}%)"
            )
        ),
        severity="warning",
        details={"improvement_percent": improvement, "required": min_improvement_percent},
    )


# ---------------------------------------------------------------------------
# 4. Runtime
# ---------------------------------------------------------------------------


def runtime_hours_since(start_date: datetime | None, now: datetime | None = None) -> float:
    if start_date is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    return max((now - start_date).total_seconds() / 3600, 0.0)


def check_runtime(runtime_hours: float, *, min_runtime_hours: float) -> SafetyCheck:
    passed = runtime_hours >= min_runtime_hours
    return SafetyCheck(
        passed=passed,
        rule_name="min_runtime",
        message=(
            f"Experiment has run {runtime_hours:.1f}h"
            if passed
            else (
                f"Experiment has not run long enough ({runtime_hours:.1f}h < "
                f"{min_runtime_hours}h)"
            )
        ),
        details={"runtime_hours": runtime_hours, "required": min_runtime_hours},
    )


# ---------------------------------------------------------------------------
# 5. Error rate ceiling
# ---------------------------------------------------------------------------


def check_error_rate(winner: VariantMetrics, *, max_error_rate: float) -> SafetyCheck:
    passed = winner.error_rate <= max_error_rate
    return SafetyCheck(
        passed=passed,
        rule_name="error_rate_acceptable",
        message=(
            "Winner error rate acceptable"
            if passed
            else (
                f"Error rate too high ({winner.error_rate * 100:.2f}% > "
                f"{max_error_rate * 100:.2f}%)"
            )
        ),
        details={"error_rate": winner.error_rate, "max": max_error_rate},
    )


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


def collect_warnings(winner: VariantMetrics, control: VariantMetrics) -> list[str]:
    warnings: list[str] = []
    if winner.error_rate > control.error_rate:
        warnings.append(
            f"Winner has higher error rate than control "
            f"({winner.error_rate * 100:.2f}% vs {control.error_rate * 100:.2f}%)"
        )
    if (
        control.p95_latency_ms > 0
        and winner.p95_latency_ms > control.p95_latency_ms * LATENCY_WARNING_FACTOR
    ):
        warnings.append(
            f"Winner has significantly higher P95 latency "
            f"({winner.p95_latency_ms:.0f}ms vs {control.p95_latency_ms:.0f}ms)"
        )
    if control.conversion_rate == 0:
        warnings.append("Control conversion rate is zero; improvement cannot be measured")
    return warnings


def recommend(checks: list[SafetyCheck], config: PromotionConfig) -> str:
    failed = {c.rule_name for c in checks if not c.passed}
    if failed & {"min_sample_size", "min_runtime"}:
        return "not_ready"
    if failed & {"min_confidence", "min_improvement"}:
        return "wait"
    if "error_rate_acceptable" in failed:
        return "manual_review"
    if config.require_manual_approval:
        return "manual_review"
    return "promote"


def evaluate_eligibility(
    metrics: ExperimentMetrics,
    config: PromotionConfig,
    *,
    now: datetime | None = None,
) -> EligibilityResult:
    """Run every safety check against already-aggregated *metrics*."""
    result = EligibilityResult(experiment_name=metrics.experiment_name)

    if not metrics.is_active:
        result.reasons.append("Experiment is not active")
        return result
    if len(metrics.variants) < 2 or metrics.control is None or metrics.winner is None:
        result.reasons.append("Experiment needs a control and at least one other variant")
        return result

    winner, control = metrics.winner, metrics.control
    result.winner = winner
    result.control = control
    result.runtime_hours = runtime_hours_since(metrics.start_date, now)

    if winner is control:
        result.reasons.append("Control is performing best; no promotion needed")
        return result

    sig = metrics.significance
    result.confidence_level = sig.confidence_level if sig else 0.0
    result.improvement_percent = metrics.improvement_percent

    result.checks = [
        check_sample_size(winner, control, min_sample_size=config.min_sample_size),
        check_confidence(
            bool(sig and sig.is_significant),
            result.confidence_level,
            min_confidence_level=config.min_confidence_level,
        ),
        check_improvement(
            result.improvement_percent,
            min_improvement_percent=config.min_improvement_percent,
        ),
        check_runtime(result.runtime_hours, min_runtime_hours=config.min_runtime_hours),
        check_error_rate(winner, max_error_rate=config.max_error_rate),
    ]
    result.reasons = [c.message for c in result.checks if not c.passed]
    result.warnings = collect_warnings(winner, control)
    result.is_eligible = all(c.passed for c in result.checks)
    result.recommendation = recommend(result.checks, config)
    return result


def check_promotion_eligibility(
    db: Session,
    experiment_name: str,
    config: PromotionConfig | None = None,
) -> EligibilityResult:
    """Decide whether the leading variant of *experiment_name* may be promoted.

    Metrics are aggregated from the experiment start (or the default window
    when no start is recorded). Raises ``ExperimentNotFoundError`` for an
    unknown experiment.
    """
    config = config or PromotionConfig.from_settings()
    experiment = get_experiment(db, experiment_name)
    metrics = get_experiment_metrics(
        db, experiment_name, window_start=as_utc(experiment.start_date)
    )
    return evaluate_eligibility(metrics, config)
