from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from sahara.errors import ValidationError
from sahara.main import app
from sahara.services import rate_limit as rate_limit_module
from sahara.services.rate_limit import MemoryRateLimitStore
from sahara.services.ratings import aggregate_ratings, submit_rating, validate_rating
from tests.conftest import admin_headers, setup_test_db, use_test_db, user_headers

RATING_URL = "/api/ai/rating"


@pytest.fixture(autouse=True)
def _fresh_rate_limit_store(monkeypatch):
    monkeypatch.setattr(rate_limit_module, "_store", MemoryRateLimitStore())


class TestValidateRating:
    @pytest.mark.parametrize("value", [-1, 1])
    def test_thumbs_accepts_up_and_down(self, value):
        assert validate_rating("thumbs", value) == value

    @pytest.mark.parametrize("value", [0, 2, True, "1"])
    def test_thumbs_rejects(self, value):
        with pytest.raises(ValidationError):
            validate_rating("thumbs", value)

    def test_stars_range(self):
        assert validate_rating("stars", 5) == 5
        assert validate_rating("stars", 3.0) == 3
        for bad in (0, 6, 2.5):
            with pytest.raises(ValidationError):
                validate_rating("stars", bad)

    def test_unknown_variant(self):
        with pytest.raises(ValidationError, match="variant"):
            validate_rating("emoji", 1)

    def test_missing_rating(self):
        with pytest.raises(ValidationError, match="required"):
            validate_rating("stars", None)

    def test_invalid_tags(self):
        with pytest.raises(ValidationError, match="Invalid feedback tags: sarcastic"):
            validate_rating("stars", 4, ["helpful", "sarcastic"])


class TestAggregate:
    def test_groups_by_variant_and_filters_users(self):
        _, Session = setup_test_db()
        db = Session()
        submit_rating(db, user_id="u1", response_id="r1", rating=4, variant="stars", feedback="nice")
        submit_rating(db, user_id="u2", response_id="r1", rating=2, variant="stars")
        submit_rating(db, user_id="u1", response_id="r2", rating=1, variant="thumbs")

        rows = {r["variant"]: r for r in aggregate_ratings(db)}
        assert rows["stars"]["total_ratings"] == 2
        assert rows["stars"]["avg_rating"] == pytest.approx(3.0)
        assert rows["stars"]["unique_users"] == 2
        assert rows["stars"]["with_feedback"] == 1
        assert rows["thumbs"]["total_ratings"] == 1

        only_u2 = aggregate_ratings(db, user_ids=["u2"])
        assert [(r["variant"], r["total_ratings"]) for r in only_u2] == [("stars", 1)]
        db.close()


class TestRatingEndpoint:
    def test_requires_auth(self):
        use_test_db()
        client = TestClient(app)

        resp = client.post(RATING_URL, json={"responseId": "r1", "rating": 5})
        assert resp.status_code == 401

    def test_submit(self):
        use_test_db()
        client = TestClient(app)

        resp = client.post(
            RATING_URL,
            json={
                "responseId": "resp-1",
                "rating": 1,
                "variant": "thumbs",
                "feedback": {"tags": ["helpful"], "text": "Spot on"},
            },
            headers=user_headers("user-7"),
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["userId"] == "user-7"
        assert data["responseId"] == "resp-1"
        assert data["tags"] == ["helpful"]
        assert data["feedback"] == "Spot on"
        assert resp.headers["X-RateLimit-Limit"] == "20"

    def test_invalid_rating_400(self):
        use_test_db()
        client = TestClient(app)

        resp = client.post(
            RATING_URL,
            json={"responseId": "resp-1", "rating": 0, "variant": "thumbs"},
            headers=user_headers("user-7"),
        )
        assert resp.status_code == 400
        assert resp.json()["success"] is False

        resp = client.post(
            RATING_URL,
            json={"responseId": "resp-1", "rating": 6},
            headers=user_headers("user-7"),
        )
        assert resp.status_code == 400

    def test_missing_response_id_400(self):
        use_test_db()
        client = TestClient(app)

        resp = client.post(RATING_URL, json={"rating": 3}, headers=user_headers("user-7"))
        assert resp.status_code == 400

    def test_rate_limited_after_twenty(self):
        use_test_db()
        client = TestClient(app)
        headers = user_headers("user-busy")
        body = {"responseId": "resp-1", "rating": 5}

        for _ in range(20):
            assert client.post(RATING_URL, json=body, headers=headers).status_code == 200

        resp = client.post(RATING_URL, json=body, headers=headers)
        assert resp.status_code == 429
        assert "Retry-After" in resp.headers
        assert client.post(RATING_URL, json=body, headers=user_headers("user-calm")).status_code == 200

    def test_users_only_see_their_own(self):
        use_test_db()
        client = TestClient(app)
        client.post(RATING_URL, json={"responseId": "r1", "rating": 5}, headers=user_headers("u1"))
        client.post(RATING_URL, json={"responseId": "r1", "rating": 2}, headers=user_headers("u2"))

        mine = client.get(RATING_URL, headers=user_headers("u1")).json()["data"]
        assert [r["userId"] for r in mine] == ["u1"]

        by_response = client.get(
            RATING_URL, params={"responseId": "r1"}, headers=user_headers("u1")
        ).json()["data"]
        assert [r["userId"] for r in by_response] == ["u1"]

        resp = client.get(RATING_URL, params={"userId": "u2"}, headers=user_headers("u1"))
        assert resp.status_code == 403

    def test_admin_sees_everything_and_aggregates(self):
        use_test_db()
        client = TestClient(app)
        admin = {**user_headers("ops"), **admin_headers()}
        client.post(RATING_URL, json={"responseId": "r1", "rating": 5}, headers=user_headers("u1"))
        client.post(RATING_URL, json={"responseId": "r1", "rating": 3}, headers=user_headers("u2"))

        rows = client.get(RATING_URL, params={"responseId": "r1"}, headers=admin).json()["data"]
        assert sorted(r["userId"] for r in rows) == ["u1", "u2"]

        agg = client.get(RATING_URL, params={"aggregate": "true"}, headers=admin).json()["data"]
        assert agg[0]["variant"] == "stars"
        assert agg[0]["total_ratings"] == 2
