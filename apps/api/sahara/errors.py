"""Domain exceptions shared by services and routers.

Services raise these; ``sahara.main`` maps each family to an HTTP status so
routers do not need to translate them one by one.
"""

from __future__ import annotations

from typing import Any


class SaharaError(Exception):
    """Base exception for all domain errors."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


class ValidationError(SaharaError):
    """Raised when input fails a domain rule."""

    status_code = 400


class NotFoundError(SaharaError):
    status_code = 404


class ExperimentNotFoundError(NotFoundError):
    def __init__(self, experiment_name: str) -> None:
        super().__init__(
            f"Experiment '{experiment_name}' not found",
            {"experiment_name": experiment_name},
        )


class VariantNotFoundError(NotFoundError):
    def __init__(self, experiment_name: str, variant_name: str) -> None:
        super().__init__(
            f"Variant '{variant_name}' not found in experiment '{experiment_name}'",
            {"experiment_name": experiment_name, "variant_name": variant_name},
        )


class PromotionNotFoundError(NotFoundError):
    def __init__(self, experiment_name: str) -> None:
        super().__init__(
            f"No active promotion found for experiment '{experiment_name}'",
            {"experiment_name": experiment_name},
        )


class ConflictError(SaharaError):
    status_code = 409


class NotEligibleError(ValidationError):
    """Raised when a promotion is requested for an ineligible experiment."""


class ManualApprovalRequiredError(ConflictError):
    """Raised when auto-promotion is attempted but the config requires approval."""


class ChannelDeliveryError(SaharaError):
    """Raised by channel senders; the dispatcher converts it to a failed result."""

    status_code = 502
