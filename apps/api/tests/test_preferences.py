from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from sahara.errors import ValidationError
from sahara.main import app
from sahara.models import NotificationConfig
from sahara.services.preferences import (
    get_consenting_user_ids,
    is_consent_enabled,
    should_send_push,
    update_consent_preference,
    update_push_preference,
)
from tests.conftest import setup_test_db, use_test_db, user_headers


class TestConsentService:
    def test_defaults_off_and_upsert(self):
        _, Session = setup_test_db()
        db = Session()

        assert is_consent_enabled(db, "u1", "benchmarks") is False
        prefs = update_consent_preference(db, "u1", "benchmarks", True)
        assert prefs["benchmarks"]["enabled"] is True
        assert prefs["directory"]["enabled"] is False

        update_consent_preference(db, "u1", "benchmarks", False)
        assert is_consent_enabled(db, "u1", "benchmarks") is False
        db.close()

    def test_unknown_category(self):
        _, Session = setup_test_db()
        db = Session()

        with pytest.raises(ValidationError):
            update_consent_preference(db, "u1", "ads", True)
        assert is_consent_enabled(db, "u1", "ads") is False
        db.close()

    def test_consenting_user_ids(self):
        _, Session = setup_test_db()
        db = Session()
        update_consent_preference(db, "u1", "benchmarks", True)
        update_consent_preference(db, "u2", "benchmarks", False)
        update_consent_preference(db, "u3", "directory", True)

        assert get_consenting_user_ids(db, "benchmarks") == ["u1"]
        db.close()


class TestPushService:
    def test_defaults_on_and_stored_in_push_config(self):
        _, Session = setup_test_db()
        db = Session()

        assert should_send_push(db, "u1", "weekly_digest") is True
        update_push_preference(db, "u1", "weekly_digest", False)
        update_push_preference(db, "u1", "red_flags", True)

        assert should_send_push(db, "u1", "weekly_digest") is False
        assert should_send_push(db, "u1", "inbox_messages") is True
        config = db.execute(select(NotificationConfig)).scalar_one()
        assert config.channel == "push"
        assert config.metadata_json == {
            "weekly_digest": {"enabled": False},
            "red_flags": {"enabled": True},
        }
        db.close()

    def test_unknown_category(self):
        _, Session = setup_test_db()
        db = Session()

        with pytest.raises(ValidationError):
            update_push_preference(db, "u1", "benchmarks", True)
        assert should_send_push(db, "u1", "nope") is False
        db.close()


class TestPreferencesApi:
    def test_requires_auth(self):
        use_test_db()
        client = TestClient(app)

        assert client.get("/api/preferences/consent").status_code == 401

    def test_consent_roundtrip(self):
        use_test_db()
        client = TestClient(app)
        headers = user_headers("u1")

        prefs = client.get("/api/preferences/consent", headers=headers).json()["preferences"]
        assert set(prefs) == {"benchmarks", "social_feed", "directory", "messaging"}
        assert prefs["benchmarks"] == {
            "enabled": False,
            "label": "Benchmark Data",
            "description": prefs["benchmarks"]["description"],
        }

        resp = client.put(
            "/api/preferences/consent",
            json={"category": "messaging", "enabled": True},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["preferences"]["messaging"]["enabled"] is True

        other = client.get("/api/preferences/consent", headers=user_headers("u2")).json()
        assert other["preferences"]["messaging"]["enabled"] is False

    def test_invalid_category_400(self):
        use_test_db()
        client = TestClient(app)

        resp = client.put(
            "/api/preferences/consent",
            json={"category": "ads", "enabled": True},
            headers=user_headers("u1"),
        )
        assert resp.status_code == 400

    def test_push_toggle(self):
        use_test_db()
        client = TestClient(app)
        headers = user_headers("u1")

        prefs = client.get("/api/preferences/push", headers=headers).json()["preferences"]
        assert all(p["enabled"] for p in prefs.values())

        resp = client.put(
            "/api/preferences/push",
            json={"category": "wellbeing_alerts", "enabled": False},
            headers=headers,
        )
        assert resp.json()["preferences"]["wellbeing_alerts"]["enabled"] is False
        assert resp.json()["preferences"]["red_flags"]["enabled"] is True
