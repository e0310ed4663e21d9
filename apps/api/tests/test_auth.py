"""Session token and admin key checks."""

from __future__ import annotations

from fastapi.testclient import TestClient
from starlette.requests import Request

from sahara.auth import is_admin_request, sign_session, verify_session_token
from sahara.main import app
from tests.conftest import ADMIN_KEY, use_test_db


def _request(headers: list[tuple[bytes, bytes]]) -> Request:
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


class TestSessionTokens:
    def test_round_trip(self):
        assert verify_session_token(sign_session("user-1")) == "user-1"

    def test_tampered_signature(self):
        token = sign_session("user-1")
        flipped = "1" if token[-1] == "0" else "0"
        assert verify_session_token(token[:-1] + flipped) is None
        assert verify_session_token("user-2." + token.split(".", 1)[1]) is None

    def test_malformed(self):
        assert verify_session_token(None) is None
        assert verify_session_token("no-dot") is None
        assert verify_session_token(".abc") is None

    def test_non_ascii_token_is_rejected(self):
        assert verify_session_token("usér.sïg") is None


class TestAdminKey:
    def test_header_and_cookie(self):
        assert is_admin_request(_request([(b"x-admin-key", ADMIN_KEY.encode())]))
        assert is_admin_request(_request([(b"cookie", f"sahara_admin={ADMIN_KEY}".encode())]))
        assert not is_admin_request(_request([(b"x-admin-key", b"wrong")]))

    def test_non_ascii_key_is_rejected(self):
        request = _request([(b"x-admin-key", "clé-ü".encode("latin-1"))])
        assert is_admin_request(request) is False

    def test_non_ascii_key_401_over_http(self):
        use_test_db()
        client = TestClient(app)

        resp = client.get("/api/admin/config", headers={"x-admin-key": "clé-ü".encode("latin-1")})

        assert resp.status_code == 401

    def test_non_ascii_session_cookie_401(self):
        use_test_db()
        client = TestClient(app)

        resp = client.get(
            "/api/notifications/inbox",
            headers={"cookie": "sahara_session=usér.sïg".encode("latin-1")},
        )

        assert resp.status_code == 401
