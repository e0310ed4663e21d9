"""Per-variant metrics aggregation for A/B experiments.

Reads served-request rows for a time window and reduces them to rates,
latency percentiles and a winner-vs-control significance test.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sahara.errors import ExperimentNotFoundError, VariantNotFoundError
from sahara.models import Experiment, Variant, VariantRequest

DEFAULT_WINDOW = timedelta(hours=24)
MIN_SIGNIFICANCE_SAMPLE = 100
SIGNIFICANCE_Z = 1.96

# |z| lower bound -> two-sided confidence level (%)
_CONFIDENCE_BUCKETS: tuple[tuple[float, float], ...] = (
    (3.29, 99.9),
    (2.58, 99.0),
    (1.96, 95.0),
    (1.645, 90.0),
)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class VariantMetrics:
    variant_id: str
    variant_name: str
    traffic_percentage: float = 0.0
    total_requests: int = 0
    unique_users: int = 0
    error_count: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    error_rate: float = 0.0
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    last_request_at: datetime | None = None

    @property
    def sample_size(self) -> int:
        return self.total_requests


@dataclass(frozen=True)
class SignificanceResult:
    is_significant: bool
    confidence_level: float
    z_score: float
    p_value: float


@dataclass
class ExperimentMetrics:
    experiment_id: str
    experiment_name: str
    is_active: bool
    start_date: datetime | None
    window_start: datetime
    window_end: datetime
    variants: list[VariantMetrics] = field(default_factory=list)
    control: VariantMetrics | None = None
    winner: VariantMetrics | None = None
    significance: SignificanceResult | None = None
    improvement_percent: float = 0.0
    previous_total_requests: int = 0

    @property
    def total_requests(self) -> int:
        return sum(v.total_requests for v in self.variants)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_div(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _percentile(sorted_values: list[float], pct: float) -> float:
    """Linear-interpolated percentile over an already sorted list."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    rank = (pct / 100.0) * (len(sorted_values) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(sorted_values[lower])
    weight = rank - lower
    return float(sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight)


def _normal_cdf(x: float) -> float:
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


def _confidence_for_z(z: float) -> float:
    for bound, level in _CONFIDENCE_BUCKETS:
        if abs(z) >= bound:
            return level
    return 0.0


def get_experiment(db: Session, experiment_name: str) -> Experiment:
    experiment = db.execute(
        select(Experiment).where(Experiment.name == experiment_name)
    ).scalar_one_or_none()
    if experiment is None:
        raise ExperimentNotFoundError(experiment_name)
    return experiment


# ---------------------------------------------------------------------------
# Significance
# ---------------------------------------------------------------------------


def calculate_significance(
    control: VariantMetrics, variant: VariantMetrics
) -> SignificanceResult:
    """Two-proportion z-test of *variant* conversion rate against *control*.

    Each arm needs at least ``MIN_SIGNIFICANCE_SAMPLE`` requests; below that
    the result is never significant and carries zero confidence.
    """
    n1 = control.total_requests
    n2 = variant.total_requests
    if n1 < MIN_SIGNIFICANCE_SAMPLE or n2 < MIN_SIGNIFICANCE_SAMPLE:
        return SignificanceResult(False, 0.0, 0.0, 1.0)

    p1 = control.conversion_rate
    p2 = variant.conversion_rate
    pooled = ((p1 * n1) + (p2 * n2)) / (n1 + n2)
    if pooled in (0, 1):
        return SignificanceResult(False, 0.0, 0.0, 1.0)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if se == 0:
        return SignificanceResult(False, 0.0, 0.0, 1.0)

    z = (p2 - p1) / se
    p_value = 2 * (1 - _normal_cdf(abs(z)))
    return SignificanceResult(
        is_significant=abs(z) >= SIGNIFICANCE_Z,
        confidence_level=_confidence_for_z(z),
        z_score=round(z, 4),
        p_value=round(p_value, 6),
    )


def improvement_percent(control: VariantMetrics, winner: VariantMetrics) -> float:
    """Relative conversion-rate lift of *winner* over *control*, in percent."""
    if control.conversion_rate == 0:
        return 0.0
    return (winner.conversion_rate - control.conversion_rate) / control.conversion_rate * 100


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def get_variant_metrics(
    db: Session,
    variant: Variant,
    window_start: datetime,
    window_end: datetime,
) -> VariantMetrics:
    rows = db.execute(
        select(
            VariantRequest.user_id,
            VariantRequest.latency_ms,
            VariantRequest.is_error,
            VariantRequest.converted,
            VariantRequest.created_at,
        ).where(
            VariantRequest.variant_id == variant.id,
            VariantRequest.created_at >= window_start,
            VariantRequest.created_at <= window_end,
        )
    ).all()

    total = len(rows)
    errors = sum(1 for r in rows if r.is_error)
    conversions = sum(1 for r in rows if r.converted)
    users = {r.user_id for r in rows if r.user_id}
    latencies = sorted(float(r.latency_ms) for r in rows if r.latency_ms is not None)
    last_request = max((r.created_at for r in rows), default=None)
    error_rate = _safe_div(errors, total)

    return VariantMetrics(
        variant_id=str(variant.id),
        variant_name=variant.variant_name,
        traffic_percentage=float(variant.traffic_percentage or 0),
        total_requests=total,
        unique_users=len(users),
        error_count=errors,
        conversions=conversions,
        conversion_rate=_safe_div(conversions, total),
        error_rate=error_rate,
        success_rate=1.0 - error_rate if total else 0.0,
        avg_latency_ms=_safe_div(sum(latencies), len(latencies)),
        p50_latency_ms=_percentile(latencies, 50),
        p95_latency_ms=_percentile(latencies, 95),
        p99_latency_ms=_percentile(latencies, 99),
        last_request_at=as_utc(last_request),
    )


def compare_variants(metrics: ExperimentMetrics) -> ExperimentMetrics:
    """Fill control, winner, significance and lift on *metrics* in place."""
    if not metrics.variants:
        return metrics

    control = next(
        (v for v in metrics.variants if v.variant_name.lower() == "control"),
        metrics.variants[0],
    )
    winner = max(metrics.variants, key=lambda v: v.conversion_rate)
    # Ties keep the control as the incumbent
    if winner.conversion_rate == control.conversion_rate:
        winner = control

    metrics.control = control
    metrics.winner = winner
    if winner is not control:
        metrics.significance = calculate_significance(control, winner)
        metrics.improvement_percent = improvement_percent(control, winner)
    else:
        metrics.significance = SignificanceResult(False, 0.0, 0.0, 1.0)
        metrics.improvement_percent = 0.0
    return metrics


def _count_requests(
    db: Session, variant_ids: list[Any], start: datetime, end: datetime
) -> int:
    if not variant_ids:
        return 0
    return db.execute(
        select(func.count(VariantRequest.id)).where(
            VariantRequest.variant_id.in_(variant_ids),
            VariantRequest.created_at >= start,
            VariantRequest.created_at < end,
        )
    ).scalar_one()


def get_experiment_metrics(
    db: Session,
    experiment_name: str,
    *,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> ExperimentMetrics:
    """Aggregate every variant of *experiment_name* over a time window.

    Parameters
    ----------
    db : Session
        Active database session.
    experiment_name : str
        Unique experiment name.
    window_start, window_end : datetime, optional
        Defaults to the 24 hours ending now.

    Raises
    ------
    ExperimentNotFoundError
        If no experiment has that name.
    """
    experiment = get_experiment(db, experiment_name)

    end = window_end or datetime.now(timezone.utc)
    start = window_start or (end - DEFAULT_WINDOW)

    result = ExperimentMetrics(
        experiment_id=str(experiment.id),
        experiment_name=experiment.name,
        is_active=experiment.is_active,
        start_date=as_utc(experiment.start_date),
        window_start=start,
        window_end=end,
    )
    for variant in experiment.variants:
        result.variants.append(get_variant_metrics(db, variant, start, end))

    result.previous_total_requests = _count_requests(
        db, [v.id for v in experiment.variants], start - (end - start), start
    )
    return compare_variants(result)


def record_variant_request(
    db: Session,
    experiment_name: str,
    variant_name: str,
    *,
    user_id: str | None = None,
    latency_ms: float | None = None,
    is_error: bool = False,
    converted: bool = False,
    created_at: datetime | None = None,
) -> VariantRequest:
    """Append one served request for a variant."""
    experiment = get_experiment(db, experiment_name)
    variant = next(
        (v for v in experiment.variants if v.variant_name == variant_name), None
    )
    if variant is None:
        raise VariantNotFoundError(experiment_name, variant_name)

    row = VariantRequest(
        variant_id=variant.id,
        user_id=user_id,
        latency_ms=latency_ms,
        is_error=is_error,
        converted=converted,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(row)
    db.commit()
    return row


def variant_metrics_to_dict(metrics: VariantMetrics) -> dict[str, Any]:
    return {
        "variant_id": metrics.variant_id,
        "variant_name": metrics.variant_name,
        "traffic_percentage": metrics.traffic_percentage,
        "total_requests": metrics.total_requests,
        "unique_users": metrics.unique_users,
        "error_count": metrics.error_count,
        "conversions": metrics.conversions,
        "conversion_rate": round(metrics.conversion_rate, 6),
        "error_rate": round(metrics.error_rate, 6),
        "success_rate": round(metrics.success_rate, 6),
        "avg_latency_ms": round(metrics.avg_latency_ms, 2),
        "p50_latency_ms": round(metrics.p50_latency_ms, 2),
        "p95_latency_ms": round(metrics.p95_latency_ms, 2),
        "p99_latency_ms": round(metrics.p99_latency_ms, 2),
        "sample_size": metrics.sample_size,
        "last_request_at": (
            metrics.last_request_at.isoformat() if metrics.last_request_at else None
        ),
    }
