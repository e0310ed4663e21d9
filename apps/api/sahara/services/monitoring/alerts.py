"""Threshold-based alert evaluation for experiment metrics.

Pure functions over ``ExperimentMetrics`` / ``VariantMetrics``. Nothing here
touches the database; alerts are recomputed on every call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sahara.services.monitoring.metrics import ExperimentMetrics, VariantMetrics

LEVEL_ORDER = {"info": 0, "warning": 1, "critical": 2}


@dataclass(frozen=True)
class AlertThresholds:
    p95_latency_ms: float = 2000.0
    p99_latency_ms: float = 5000.0
    error_rate: float = 0.05
    traffic_delta_percent: float = 150.0
    low_traffic_ratio: float = 0.10
    min_sample_size: int = 100


DEFAULT_THRESHOLDS = AlertThresholds()


@dataclass(frozen=True)
class Alert:
    level: str
    type: str
    message: str
    variant_name: str | None = None
    metric: str | None = None
    value: float | None = None
    threshold: float | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "type": self.type,
            "message": self.message,
            "variant_name": self.variant_name,
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "timestamp": self.timestamp.isoformat(),
        }


def determine_alert_level(
    value: float, threshold: float, critical_multiplier: float = 2.0
) -> str | None:
    """Return ``critical`` above multiplier x threshold, ``warning`` above threshold."""
    if value > threshold * critical_multiplier:
        return "critical"
    if value > threshold:
        return "warning"
    return None


def meets_level(level: str, minimum_level: str) -> bool:
    return LEVEL_ORDER.get(level, 0) >= LEVEL_ORDER.get(minimum_level, 0)


def format_metric_value(metric: str, value: float) -> str:
    if metric.endswith("latency_ms"):
        return f"{value:.0f}ms"
    if metric.endswith("rate"):
        return f"{value * 100:.2f}%"
    if metric.endswith("percent"):
        return f"{value:.1f}%"
    return f"{value:,.0f}"


_METRIC_LABELS = {
    "p95_latency_ms": "P95 latency",
    "p99_latency_ms": "P99 latency",
    "error_rate": "Error rate",
}


def _threshold_alert(
    variant: VariantMetrics,
    metric: str,
    alert_type: str,
    value: float,
    threshold: float,
) -> Alert | None:
    level = determine_alert_level(value, threshold)
    if level is None:
        return None
    label = _METRIC_LABELS.get(metric, metric)
    return Alert(
        level=level,
        type=alert_type,
        message=(
            f"{label} for variant '{variant.variant_name}' is "
            f"{format_metric_value(metric, value)} "
            f"(threshold {format_metric_value(metric, threshold)})"
        ),
        variant_name=variant.variant_name,
        metric=metric,
        value=value,
        threshold=threshold,
    )


def evaluate_variant(
    variant: VariantMetrics, thresholds: AlertThresholds = DEFAULT_THRESHOLDS
) -> list[Alert]:
    """Latency and error-rate alerts for one variant."""
    if variant.total_requests == 0:
        return []

    candidates = [
        _threshold_alert(
            variant, "p95_latency_ms", "performance",
            variant.p95_latency_ms, thresholds.p95_latency_ms,
        ),
        _threshold_alert(
            variant, "p99_latency_ms", "performance",
            variant.p99_latency_ms, thresholds.p99_latency_ms,
        ),
        _threshold_alert(
            variant, "error_rate", "errors",
            variant.error_rate, thresholds.error_rate,
        ),
    ]
    return [a for a in candidates if a is not None]


def evaluate_traffic_delta(
    current_requests: int,
    previous_requests: int,
    thresholds: AlertThresholds = DEFAULT_THRESHOLDS,
) -> Alert | None:
    """Flag a window-over-window traffic change beyond the threshold.

    No baseline (previous window empty) means no alert.
    """
    if previous_requests <= 0:
        return None
    delta_pct = abs(current_requests - previous_requests) / previous_requests * 100
    level = determine_alert_level(delta_pct, thresholds.traffic_delta_percent)
    if level is None:
        return None
    direction = "increased" if current_requests > previous_requests else "dropped"
    return Alert(
        level=level,
        type="traffic",
        message=(
            f"Traffic {direction} {delta_pct:.1f}% versus the previous window "
            f"({previous_requests:,} -> {current_requests:,} requests)"
        ),
        metric="traffic_delta_percent",
        value=round(delta_pct, 2),
        threshold=thresholds.traffic_delta_percent,
    )


def evaluate_experiment(
    metrics: ExperimentMetrics, thresholds: AlertThresholds = DEFAULT_THRESHOLDS
) -> list[Alert]:
    """All alerts for an experiment, most severe first."""
    alerts: list[Alert] = []
    total = metrics.total_requests

    for variant in metrics.variants:
        alerts.extend(evaluate_variant(variant, thresholds))

        if total > 0 and variant.traffic_percentage > 0:
            actual_share = variant.total_requests / total * 100
            expected_share = variant.traffic_percentage
            if actual_share < expected_share * thresholds.low_traffic_ratio:
                alerts.append(
                    Alert(
                        level="warning",
                        type="traffic",
                        message=(
                            f"Variant '{variant.variant_name}' is receiving "
                            f"{actual_share:.1f}% of traffic, expected {expected_share:.1f}%"
                        ),
                        variant_name=variant.variant_name,
                        metric="traffic_share_percent",
                        value=round(actual_share, 2),
                        threshold=expected_share,
                    )
                )

    delta_alert = evaluate_traffic_delta(total, metrics.previous_total_requests, thresholds)
    if delta_alert is not None:
        alerts.append(delta_alert)

    undersampled = [
        v.variant_name for v in metrics.variants
        if v.total_requests < thresholds.min_sample_size
    ]
    if metrics.variants and undersampled:
        alerts.append(
            Alert(
                level="info",
                type="traffic",
                message=(
                    f"Insufficient sample size for {', '.join(undersampled)} "
                    f"(minimum {thresholds.min_sample_size})"
                ),
                metric="sample_size",
                threshold=thresholds.min_sample_size,
            )
        )

    sig = metrics.significance
    if (
        sig is not None
        and sig.is_significant
        and metrics.winner is not None
        and metrics.winner is not metrics.control
    ):
        alerts.append(
            Alert(
                level="info",
                type="significance",
                message=(
                    f"Variant '{metrics.winner.variant_name}' is winning with "
                    f"{sig.confidence_level}% confidence "
                    f"({metrics.improvement_percent:+.1f}% conversion lift)"
                ),
                variant_name=metrics.winner.variant_name,
                metric="confidence_level",
                value=sig.confidence_level,
            )
        )

    alerts.sort(key=lambda a: LEVEL_ORDER[a.level], reverse=True)
    return alerts
