from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from sahara.auth import AuthContext, require_auth
from sahara.db import get_db
from sahara.schemas import PreferencesOut, PreferenceUpdate
from sahara.services.preferences import (
    get_consent_preferences,
    get_push_preferences,
    update_consent_preference,
    update_push_preference,
)

preferences_router = APIRouter(prefix="/api/preferences", tags=["preferences"])


@preferences_router.get("/consent", response_model=PreferencesOut)
def read_consent(
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    return PreferencesOut(preferences=get_consent_preferences(db, auth.user_id))


@preferences_router.put("/consent", response_model=PreferencesOut)
def write_consent(
    body: PreferenceUpdate,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    prefs = update_consent_preference(db, auth.user_id, body.category, body.enabled)
    return PreferencesOut(preferences=prefs)


@preferences_router.get("/push", response_model=PreferencesOut)
def read_push(
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    return PreferencesOut(preferences=get_push_preferences(db, auth.user_id))


@preferences_router.put("/push", response_model=PreferencesOut)
def write_push(
    body: PreferenceUpdate,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    prefs = update_push_preference(db, auth.user_id, body.category, body.enabled)
    return PreferencesOut(preferences=prefs)
