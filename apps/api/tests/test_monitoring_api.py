"""API tests for the monitoring and promotion endpoints."""

from __future__ import annotations

from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import select

from sahara.main import app
from sahara.models import InAppNotification, Variant
from tests.conftest import (
    add_requests,
    admin_headers,
    make_experiment,
    seed_winning_experiment,
    use_test_db,
    user_headers,
    variant_by_name,
)

PROMOTE_URL = "/api/monitoring/experiments/checkout-button/promote"


class TestAuth:
    def test_requires_admin(self):
        use_test_db()
        client = TestClient(app)

        assert client.get(PROMOTE_URL).status_code == 401
        assert client.get(PROMOTE_URL, headers=user_headers("user-1")).status_code == 401
        assert client.get(PROMOTE_URL, headers={"x-admin-key": "wrong"}).status_code == 401

    def test_bearer_admin_key(self):
        _, Session = use_test_db()
        db = Session()
        make_experiment(db)
        db.close()
        client = TestClient(app)

        resp = client.get(PROMOTE_URL, headers={"Authorization": "Bearer test-admin-key"})
        assert resp.status_code == 200


class TestEligibilityEndpoint:
    def test_eligible(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        db.close()
        client = TestClient(app)

        resp = client.get(PROMOTE_URL, headers=admin_headers())

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        data = body["data"]
        assert data["isEligible"] is True
        assert data["recommendation"] == "promote"
        assert data["winner"]["variantName"] == "treatment"
        assert data["safetyChecks"]["min_sample_size"] is True
        assert data["config"]["minSampleSize"] == 1000

    def test_query_overrides(self):
        _, Session = use_test_db()
        db = Session()
        experiment = make_experiment(db)
        add_requests(db, variant_by_name(experiment, "control"), 500, conversions=50)
        add_requests(db, variant_by_name(experiment, "treatment"), 500, conversions=90)
        db.close()
        client = TestClient(app)

        strict = client.get(PROMOTE_URL, params={"minSampleSize": 1000}, headers=admin_headers())
        assert strict.json()["data"]["isEligible"] is False
        assert any("sample size" in r.lower() for r in strict.json()["data"]["reasons"])

        relaxed = client.get(PROMOTE_URL, params={"minSampleSize": 400}, headers=admin_headers())
        assert relaxed.json()["data"]["isEligible"] is True
        assert relaxed.json()["data"]["config"]["minSampleSize"] == 400

    def test_negative_override_400(self):
        use_test_db()
        client = TestClient(app)

        resp = client.get(PROMOTE_URL, params={"minSampleSize": -1}, headers=admin_headers())

        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["details"]["errors"][0]["loc"] == ["query", "minSampleSize"]

    def test_unknown_experiment(self):
        use_test_db()
        client = TestClient(app)

        resp = client.get("/api/monitoring/experiments/nope/promote", headers=admin_headers())

        assert resp.status_code == 404
        assert resp.json()["success"] is False


class TestPromoteEndpoint:
    def test_promote(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        db.close()
        client = TestClient(app)

        resp = client.post(
            PROMOTE_URL,
            json={"promotionType": "manual", "promotedBy": "admin@sahara.dev"},
            headers=admin_headers(),
        )

        assert resp.status_code == 200
        promotion = resp.json()["data"]["promotion"]
        assert promotion["status"] == "promoted"
        assert promotion["promotedVariantName"] == "treatment"
        assert promotion["promotedBy"] == "admin@sahara.dev"

        db = Session()
        traffic = {
            v.variant_name: float(v.traffic_percentage)
            for v in db.execute(select(Variant)).scalars()
        }
        assert traffic == {"control": 0.0, "treatment": 100.0}
        db.close()

    def test_promote_notifies_user(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        db.close()
        client = TestClient(app)

        resp = client.post(
            PROMOTE_URL,
            json={"promotionType": "manual", "userId": "promo-watcher"},
            headers=admin_headers(),
        )

        assert resp.status_code == 200
        sent = resp.json()["data"]["notifications"]
        assert [(n["channel"], n["success"]) for n in sent] == [("in_app", True)]
        db = Session()
        inbox = db.execute(select(InAppNotification)).scalars().all()
        assert [n.user_id for n in inbox] == ["promo-watcher"]
        db.close()

    def test_invalid_type(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        db.close()
        client = TestClient(app)

        resp = client.post(PROMOTE_URL, json={"promotionType": "yolo"}, headers=admin_headers())
        assert resp.status_code == 400

    def test_not_eligible(self):
        _, Session = use_test_db()
        db = Session()
        make_experiment(db)
        db.close()
        client = TestClient(app)

        resp = client.post(PROMOTE_URL, json={}, headers=admin_headers())

        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert "not eligible" in body["error"]
        assert body["details"]["eligibility"]["is_eligible"] is False

    def test_auto_requires_manual_approval(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        db.close()
        client = TestClient(app)

        resp = client.post(
            PROMOTE_URL,
            json={"promotionType": "auto", "config": {"requireManualApproval": True}},
            headers=admin_headers(),
        )
        assert resp.status_code == 409


class TestRollbackEndpoint:
    def test_rollback(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        db.close()
        client = TestClient(app)
        client.post(PROMOTE_URL, json={}, headers=admin_headers())

        resp = client.request(
            "DELETE", PROMOTE_URL, json={"reason": "Checkout errors"}, headers=admin_headers()
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "rolled_back"
        assert data["rollbackReason"] == "Checkout errors"
        assert data["rollbackAt"] is not None

    def test_rollback_requires_reason(self):
        use_test_db()
        client = TestClient(app)
        resp = client.request("DELETE", PROMOTE_URL, json={}, headers=admin_headers())
        assert resp.status_code == 400

    def test_rollback_without_promotion(self):
        _, Session = use_test_db()
        db = Session()
        make_experiment(db)
        db.close()
        client = TestClient(app)

        resp = client.request(
            "DELETE", PROMOTE_URL, json={"reason": "just because"}, headers=admin_headers()
        )
        assert resp.status_code == 404


class TestMonitoringViews:
    def test_history(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        db.close()
        client = TestClient(app)
        client.post(PROMOTE_URL, json={}, headers=admin_headers())

        resp = client.get(
            "/api/monitoring/experiments/checkout-button/promotions", headers=admin_headers()
        )

        assert resp.status_code == 200
        assert len(resp.json()) == 1
        assert resp.json()[0]["promotedVariantName"] == "treatment"

    def test_metrics_with_alerts(self):
        _, Session = use_test_db()
        db = Session()
        experiment = make_experiment(db)
        add_requests(db, variant_by_name(experiment, "control"), 200, conversions=20)
        add_requests(db, variant_by_name(experiment, "treatment"), 200, errors=40, latency_ms=2500)
        db.close()
        client = TestClient(app)

        resp = client.get(
            "/api/monitoring/experiments/checkout-button/metrics", headers=admin_headers()
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["totalRequests"] == 400
        assert len(body["variants"]) == 2
        levels = {(a["type"], a["level"]) for a in body["alerts"]}
        assert ("errors", "critical") in levels
        assert ("performance", "warning") in levels

    def test_dashboard(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        make_experiment(db, name="retired", is_active=False)
        db.close()
        client = TestClient(app)

        resp = client.get("/api/monitoring/dashboard", headers=admin_headers())

        assert resp.status_code == 200
        body = resp.json()
        assert body["active_experiments"] == 1
        assert body["total_requests"] == 2000

    def test_auto_promote(self):
        _, Session = use_test_db()
        db = Session()
        seed_winning_experiment(db)
        make_experiment(db, name="young", started_hours_ago=1)
        db.close()
        client = TestClient(app)

        with patch("sahara.services.monitoring.monitor.settings.AUTO_NOTIFY_ALERTS", False):
            resp = client.get("/api/monitoring/auto-promote", headers=admin_headers())

        assert resp.status_code == 200
        body = resp.json()
        assert body["checked"] == 2
        assert body["eligible"] == 1
        assert body["promoted"] == 1
        assert body["promotedExperiments"] == ["checkout-button"]
        assert body["errors"] == []
