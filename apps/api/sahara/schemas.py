"""Pydantic request/response schemas for the HTTP surface.

Bodies use camelCase on the wire; snake_case field names are accepted too.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from sahara.services.monitoring.eligibility import PromotionConfig


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CamelOrmModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


# ---------------------------------------------------------------------------
# Admin analyzer config
# ---------------------------------------------------------------------------


class AnalyzerConfigCreate(CamelModel):
    analyzer: str = Field(min_length=1)
    model: str = "gpt-4-turbo-preview"
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=1000, ge=1)
    dimension_weights: dict[str, Any] | None = None
    score_thresholds: dict[str, Any] | None = None
    custom_settings: dict[str, Any] | None = None


class AnalyzerConfigUpdate(CamelModel):
    analyzer: str = Field(min_length=1)
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)
    dimension_weights: dict[str, Any] | None = None
    score_thresholds: dict[str, Any] | None = None
    custom_settings: dict[str, Any] | None = None

    @field_validator("model", "temperature", "max_tokens")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("must not be null")
        return value


class AnalyzerConfigOut(CamelOrmModel):
    id: uuid.UUID
    analyzer: str
    model: str
    temperature: float
    max_tokens: int
    dimension_weights: dict[str, Any] | None = None
    score_thresholds: dict[str, Any] | None = None
    custom_settings: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Monitoring / promotion
# ---------------------------------------------------------------------------


class PromoteRequest(CamelModel):
    promotion_type: str = "manual"
    promoted_by: str | None = None
    config: PromotionConfig | None = None
    user_id: str | None = None


class RollbackRequest(CamelModel):
    reason: str | None = None
    rolled_back_by: str | None = None


class PromotionRecordOut(CamelOrmModel):
    id: uuid.UUID
    experiment_id: uuid.UUID
    promoted_variant_id: uuid.UUID
    promoted_variant_name: str
    promotion_type: str
    status: str
    confidence_level: float
    improvement_percent: float
    promoted_by: str | None = None
    promoted_at: datetime | None = None
    previous_allocation_json: dict[str, Any] = {}
    metadata_json: dict[str, Any] = {}
    rollback_at: datetime | None = None
    rollback_reason: str | None = None


class AutoPromotionOut(CamelModel):
    checked: int
    eligible: int
    promoted: int
    promoted_experiments: list[str]
    alerts_sent: int
    errors: list[str]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class PagerDutyRequest(CamelModel):
    action: str = "trigger"
    routing_key: str | None = None
    dedup_key: str | None = None
    level: str | None = None
    type: str | None = None
    title: str | None = None
    message: str | None = None
    experiment_name: str | None = None
    variant_name: str | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)


class NotificationSendItem(CamelModel):
    level: str | None = None
    type: str | None = None
    title: str | None = None
    message: str | None = None
    experiment_name: str | None = None
    variant_name: str | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)
    action_url: str | None = None


class NotificationSendRequest(NotificationSendItem):
    batch: list[NotificationSendItem] | None = None


class NotificationConfigCreate(CamelModel):
    channel: str
    enabled: bool = True
    webhook_url: str | None = None
    routing_key: str | None = None
    email_address: str | None = None
    alert_levels: list[str] = Field(default_factory=lambda: ["warning", "critical"])
    metadata: dict[str, Any] = Field(default_factory=dict)


class NotificationConfigPatch(CamelModel):
    id: uuid.UUID
    enabled: bool | None = None
    webhook_url: str | None = None
    routing_key: str | None = None
    email_address: str | None = None
    alert_levels: list[str] | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("enabled", "alert_levels")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("must not be null")
        return value


class NotificationConfigOut(CamelOrmModel):
    id: uuid.UUID
    channel: str
    enabled: bool
    webhook_url: str | None = None
    routing_key: str | None = None
    email_address: str | None = None
    alert_levels: list[str] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None


class NotificationResultOut(CamelModel):
    success: bool
    channel: str
    error: str | None = None
    message_id: str | None = None
    timestamp: datetime


class InAppNotificationOut(CamelOrmModel):
    id: uuid.UUID
    level: str
    type: str
    title: str
    message: str
    metadata_json: dict[str, Any] = {}
    read_at: datetime | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------


class RatingFeedback(CamelModel):
    tags: list[str] = Field(default_factory=list)
    text: str | None = None


class RatingCreate(CamelModel):
    response_id: str | None = None
    rating: Any = None
    variant: str = "stars"
    feedback: RatingFeedback = Field(default_factory=RatingFeedback)


class RatingOut(CamelOrmModel):
    id: uuid.UUID
    response_id: str
    user_id: str
    rating: int
    variant: str
    tags: list[str] = []
    feedback: str | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


class PreferenceUpdate(CamelModel):
    category: str
    enabled: bool


class PreferenceOut(CamelModel):
    enabled: bool
    label: str
    description: str


class PreferencesOut(CamelModel):
    preferences: dict[str, PreferenceOut]


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class WebhookAck(CamelModel):
    received: bool = True
    status: Literal["queued", "already_claimed"] = "queued"


# ---------------------------------------------------------------------------
# Metrics / eligibility views
# ---------------------------------------------------------------------------


class VariantMetricsOut(CamelModel):
    variant_id: str
    variant_name: str
    traffic_percentage: float
    total_requests: int
    unique_users: int
    error_count: int
    conversions: int
    conversion_rate: float
    error_rate: float
    success_rate: float
    avg_latency_ms: float
    p50_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float
    sample_size: int
    last_request_at: datetime | None = None


class EligibilityOut(CamelModel):
    experiment_name: str
    is_eligible: bool
    recommendation: str
    reasons: list[str]
    warnings: list[str]
    safety_checks: dict[str, bool]
    winner: VariantMetricsOut | None = None
    control: VariantMetricsOut | None = None
    confidence_level: float
    improvement_percent: float
    runtime_hours: float


class AlertOut(CamelModel):
    level: str
    type: str
    message: str
    variant_name: str | None = None
    metric: str | None = None
    value: float | None = None
    threshold: float | None = None
    timestamp: datetime
