from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from sahara.main import app
from tests.conftest import admin_headers, use_test_db, user_headers

CONFIG_URL = "/api/admin/config"


def _create(client: TestClient, analyzer: str = "pitch-deck", **fields):
    return client.post(
        CONFIG_URL,
        json={"analyzer": analyzer, **fields},
        headers=admin_headers(),
    )


class TestAdminConfig:
    def test_requires_admin(self):
        use_test_db()
        client = TestClient(app)

        assert client.get(CONFIG_URL).status_code == 401
        assert client.get(CONFIG_URL, headers=user_headers("user-1")).status_code == 401

    def test_create_and_fetch(self):
        use_test_db()
        client = TestClient(app)

        resp = _create(client, dimensionWeights={"market": 0.4, "team": 0.6}, maxTokens=2000)
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["analyzer"] == "pitch-deck"
        assert data["model"] == "gpt-4-turbo-preview"
        assert data["maxTokens"] == 2000
        assert data["dimensionWeights"] == {"market": 0.4, "team": 0.6}

        resp = client.get(CONFIG_URL, params={"analyzer": "pitch-deck"}, headers=admin_headers())
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == data["id"]

    def test_list_is_sorted_by_analyzer(self):
        use_test_db()
        client = TestClient(app)
        _create(client, "traction")
        _create(client, "market")

        resp = client.get(CONFIG_URL, headers=admin_headers())

        assert [c["analyzer"] for c in resp.json()["data"]] == ["market", "traction"]

    def test_unknown_analyzer_404(self):
        use_test_db()
        client = TestClient(app)

        resp = client.get(CONFIG_URL, params={"analyzer": "nope"}, headers=admin_headers())
        assert resp.status_code == 404

    def test_duplicate_409(self):
        use_test_db()
        client = TestClient(app)
        _create(client)

        assert _create(client).status_code == 409

    def test_invalid_temperature_400(self):
        use_test_db()
        client = TestClient(app)

        resp = _create(client, temperature=3.5)

        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "Invalid request"
        assert body["details"]["errors"][0]["loc"][-1] == "temperature"

    def test_missing_analyzer_400(self):
        use_test_db()
        client = TestClient(app)

        resp = client.post(CONFIG_URL, json={"model": "x"}, headers=admin_headers())
        assert resp.status_code == 400

    def test_patch_updates_only_given_fields(self):
        use_test_db()
        client = TestClient(app)
        _create(client, maxTokens=1500)

        resp = client.patch(
            CONFIG_URL,
            json={"analyzer": "pitch-deck", "temperature": 0.2},
            headers=admin_headers(),
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["temperature"] == pytest.approx(0.2)
        assert data["maxTokens"] == 1500

    def test_patch_without_fields_400(self):
        use_test_db()
        client = TestClient(app)
        _create(client)

        resp = client.patch(CONFIG_URL, json={"analyzer": "pitch-deck"}, headers=admin_headers())
        assert resp.status_code == 400

    def test_patch_missing_404(self):
        use_test_db()
        client = TestClient(app)

        resp = client.patch(
            CONFIG_URL, json={"analyzer": "ghost", "model": "x"}, headers=admin_headers()
        )
        assert resp.status_code == 404

    @pytest.mark.parametrize("field", ["model", "temperature", "maxTokens"])
    def test_patch_null_required_field_400(self, field):
        _, Session = use_test_db()
        client = TestClient(app)
        _create(client)

        resp = client.patch(
            CONFIG_URL, json={"analyzer": "pitch-deck", field: None}, headers=admin_headers()
        )

        assert resp.status_code == 400
        assert resp.json()["details"]["errors"][0]["msg"].endswith("must not be null")
        data = client.get(CONFIG_URL, params={"analyzer": "pitch-deck"}, headers=admin_headers()).json()["data"]
        assert data["model"] == "gpt-4-turbo-preview"

    def test_patch_null_optional_field_clears_it(self):
        use_test_db()
        client = TestClient(app)
        _create(client, customSettings={"depth": 2})

        resp = client.patch(
            CONFIG_URL,
            json={"analyzer": "pitch-deck", "customSettings": None},
            headers=admin_headers(),
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["customSettings"] is None
