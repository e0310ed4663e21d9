"""Request authentication.

Admins present ``ADMIN_SECRET_KEY`` via the ``x-admin-key`` header, a bearer
token or the ``sahara_admin`` cookie. Users present an HMAC-signed session
token (``<user_id>.<hexdigest>``) via the ``sahara_session`` cookie or a
bearer token. User ids are never read from request bodies.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from fastapi import HTTPException, Request

from sahara.settings import settings

ADMIN_HEADER = "x-admin-key"
ADMIN_COOKIE = "sahara_admin"
SESSION_COOKIE = "sahara_session"


@dataclass(frozen=True)
class AuthContext:
    user_id: str | None = None
    is_admin: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None or self.is_admin


def _signature(user_id: str) -> str:
    return hmac.new(
        settings.SESSION_SECRET.encode(), msg=user_id.encode(), digestmod=hashlib.sha256
    ).hexdigest()


def sign_session(user_id: str) -> str:
    return f"{user_id}.{_signature(user_id)}"


def verify_session_token(token: str | None) -> str | None:
    """Return the user id carried by *token*, or None if it is not valid."""
    if not token or "." not in token:
        return None
    user_id, sig = token.rsplit(".", 1)
    if not user_id or not hmac.compare_digest(_signature(user_id).encode(), sig.encode()):
        return None
    return user_id


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def is_admin_request(request: Request) -> bool:
    secret = settings.ADMIN_SECRET_KEY
    if not secret:
        return False
    for candidate in (
        request.headers.get(ADMIN_HEADER),
        _bearer_token(request),
        request.cookies.get(ADMIN_COOKIE),
    ):
        if candidate and hmac.compare_digest(candidate.encode(), secret.encode()):
            return True
    return False


def get_optional_auth(request: Request) -> AuthContext:
    token = request.cookies.get(SESSION_COOKIE) or _bearer_token(request)
    return AuthContext(
        user_id=verify_session_token(token),
        is_admin=is_admin_request(request),
    )


def require_auth(request: Request) -> AuthContext:
    auth = get_optional_auth(request)
    if auth.user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return auth


def require_admin(request: Request) -> AuthContext:
    auth = get_optional_auth(request)
    if not auth.is_admin:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return auth
