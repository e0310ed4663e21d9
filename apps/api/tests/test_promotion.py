"""Tests for PromotionExecutor: promote, rollback and history."""

from __future__ import annotations

import pytest

from sahara.errors import (
    ExperimentNotFoundError,
    ManualApprovalRequiredError,
    NotEligibleError,
    PromotionNotFoundError,
    ValidationError,
)
from sahara.services.monitoring.eligibility import PromotionConfig
from sahara.services.monitoring.promotion import (
    PromotionExecutor,
    equal_split,
    get_promotion_history,
)
from tests.conftest import (
    add_requests,
    make_experiment,
    seed_winning_experiment,
    setup_test_db,
    variant_by_name,
)


def _traffic(experiment) -> dict[str, float]:
    return {v.variant_name: float(v.traffic_percentage) for v in experiment.variants}


class TestEqualSplit:
    def test_sums_to_one_hundred(self):
        split = equal_split(["a", "b", "c"])
        assert sum(split.values()) == pytest.approx(100.0)
        assert split["a"] >= split["b"]

    def test_empty(self):
        assert equal_split([]) == {}


class TestPromoteWinner:
    def test_promotes_and_records(self):
        _, Session = setup_test_db()
        db = Session()
        experiment = seed_winning_experiment(db)

        record = PromotionExecutor().promote_winner(
            db, "checkout-button", promoted_by="admin@sahara.dev", config=PromotionConfig()
        )

        db.refresh(experiment)
        assert record.status == "promoted"
        assert record.promoted_variant_name == "treatment"
        assert record.promotion_type == "manual"
        assert record.promoted_at is not None
        assert float(record.confidence_level) == 99.9
        assert _traffic(experiment) == {"control": 0.0, "treatment": 100.0}
        assert variant_by_name(experiment, "treatment").is_winner is True
        assert experiment.is_active is False
        assert experiment.end_date is not None
        assert record.previous_allocation_json[str(variant_by_name(experiment, "control").id)] == 50
        db.close()

    def test_not_eligible(self):
        _, Session = setup_test_db()
        db = Session()
        experiment = make_experiment(db)
        add_requests(db, variant_by_name(experiment, "control"), 500, conversions=50)
        add_requests(db, variant_by_name(experiment, "treatment"), 500, conversions=90)

        with pytest.raises(NotEligibleError) as exc_info:
            PromotionExecutor().promote_winner(db, "checkout-button", config=PromotionConfig())

        assert exc_info.value.status_code == 400
        assert exc_info.value.details["eligibility"]["is_eligible"] is False
        db.refresh(experiment)
        assert _traffic(experiment) == {"control": 50.0, "treatment": 50.0}
        db.close()

    def test_auto_blocked_by_manual_approval(self):
        _, Session = setup_test_db()
        db = Session()
        seed_winning_experiment(db)

        with pytest.raises(ManualApprovalRequiredError):
            PromotionExecutor().promote_winner(
                db,
                "checkout-button",
                promotion_type="auto",
                config=PromotionConfig(require_manual_approval=True),
            )
        db.close()

    def test_invalid_type(self):
        _, Session = setup_test_db()
        db = Session()
        seed_winning_experiment(db)
        with pytest.raises(ValidationError):
            PromotionExecutor().promote_winner(db, "checkout-button", promotion_type="yolo")
        db.close()

    def test_unknown_experiment(self):
        _, Session = setup_test_db()
        db = Session()
        with pytest.raises(ExperimentNotFoundError):
            PromotionExecutor().promote_winner(db, "missing", config=PromotionConfig())
        db.close()


class TestRollback:
    def test_rollback_restores_allocation(self):
        _, Session = setup_test_db()
        db = Session()
        experiment = seed_winning_experiment(db)
        executor = PromotionExecutor()
        promoted = executor.promote_winner(db, "checkout-button", config=PromotionConfig())
        promoted_at = promoted.promoted_at

        record = executor.rollback_promotion(
            db, "checkout-button", reason="Conversion drop in EU", rolled_back_by="oncall"
        )

        db.refresh(experiment)
        assert record.id == promoted.id
        assert record.status == "rolled_back"
        assert record.rollback_at is not None
        assert record.rollback_reason == "Conversion drop in EU"
        assert record.promoted_at == promoted_at
        assert record.metadata_json["rolled_back_by"] == "oncall"
        assert _traffic(experiment) == {"control": 50.0, "treatment": 50.0}
        assert experiment.is_active is True
        assert experiment.end_date is None
        assert not any(v.is_winner for v in experiment.variants)
        db.close()

    def test_rollback_never_promoted(self):
        _, Session = setup_test_db()
        db = Session()
        make_experiment(db)
        with pytest.raises(PromotionNotFoundError):
            PromotionExecutor().rollback_promotion(db, "checkout-button", reason="oops")
        db.close()

    def test_rollback_twice(self):
        _, Session = setup_test_db()
        db = Session()
        seed_winning_experiment(db)
        executor = PromotionExecutor()
        executor.promote_winner(db, "checkout-button", config=PromotionConfig())
        executor.rollback_promotion(db, "checkout-button", reason="first")

        with pytest.raises(PromotionNotFoundError):
            executor.rollback_promotion(db, "checkout-button", reason="second")
        db.close()

    def test_rollback_requires_reason(self):
        _, Session = setup_test_db()
        db = Session()
        seed_winning_experiment(db)
        with pytest.raises(ValidationError):
            PromotionExecutor().rollback_promotion(db, "checkout-button", reason="  ")
        db.close()


class TestHistory:
    def test_history_lists_promotions(self):
        _, Session = setup_test_db()
        db = Session()
        seed_winning_experiment(db)
        seed_winning_experiment(db, name="pricing-page")
        executor = PromotionExecutor()
        executor.promote_winner(db, "checkout-button", config=PromotionConfig())
        executor.promote_winner(db, "pricing-page", config=PromotionConfig())

        assert len(get_promotion_history(db)) == 2
        history = get_promotion_history(db, "pricing-page")
        assert len(history) == 1
        assert history[0].promoted_variant_name == "treatment"
        db.close()
