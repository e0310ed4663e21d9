"""Per-user consent and push-notification preferences.

Consent rows live in ``consent_preferences`` (one row per user and category,
opt-in, default off). Push preferences live in the ``metadata_json`` of the
user's ``push`` notification config (opt-out, default on). Both are merged
with their defaults at read time. Consent changes are audited by a database
trigger, not here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from sahara.errors import ValidationError
from sahara.models import ConsentPreference, NotificationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryInfo:
    label: str
    description: str
    default: bool


CONSENT_CATEGORIES: dict[str, CategoryInfo] = {
    "benchmarks": CategoryInfo(
        "Benchmark Data",
        "Include your anonymized data in community benchmarks so founders can compare progress",
        False,
    ),
    "social_feed": CategoryInfo(
        "Social Feed",
        "Allow your milestones and achievements to appear in the community feed",
        False,
    ),
    "directory": CategoryInfo(
        "Founder Directory",
        "Make your community profile searchable in the founder directory",
        False,
    ),
    "messaging": CategoryInfo(
        "Direct Messaging",
        "Allow other founders to send you direct messages",
        False,
    ),
}

PUSH_CATEGORIES: dict[str, CategoryInfo] = {
    "red_flags": CategoryInfo(
        "Red Flag Alerts",
        "Get notified when potential risks are detected in your startup data",
        True,
    ),
    "wellbeing_alerts": CategoryInfo(
        "Wellbeing Alerts",
        "Receive burnout and wellbeing check-in notifications",
        True,
    ),
    "agent_completions": CategoryInfo(
        "Agent Completions",
        "Get notified when an AI agent finishes a task",
        True,
    ),
    "inbox_messages": CategoryInfo(
        "Inbox Messages",
        "Receive notifications for new inbox messages",
        True,
    ),
    "weekly_digest": CategoryInfo(
        "Weekly Digest",
        "Receive a weekly summary of your startup activity",
        True,
    ),
}


def _merge(
    categories: dict[str, CategoryInfo], stored: dict[str, bool]
) -> dict[str, dict]:
    return {
        name: {
            "enabled": stored.get(name, info.default),
            "label": info.label,
            "description": info.description,
        }
        for name, info in categories.items()
    }


# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------


def get_consent_preferences(db: Session, user_id: str) -> dict[str, dict]:
    rows = db.execute(
        select(ConsentPreference).where(ConsentPreference.user_id == user_id)
    ).scalars().all()
    return _merge(CONSENT_CATEGORIES, {r.category: r.enabled for r in rows})


def update_consent_preference(
    db: Session, user_id: str, category: str, enabled: bool
) -> dict[str, dict]:
    """Upsert one consent flag and return the merged preferences."""
    if category not in CONSENT_CATEGORIES:
        raise ValidationError(f"Invalid consent category: {category}")

    row = db.execute(
        select(ConsentPreference).where(
            ConsentPreference.user_id == user_id,
            ConsentPreference.category == category,
        )
    ).scalar_one_or_none()
    if row is None:
        row = ConsentPreference(user_id=user_id, category=category, enabled=enabled)
        db.add(row)
    else:
        row.enabled = enabled
    db.commit()
    logger.info("Consent %s set to %s for user %s", category, enabled, user_id)
    return get_consent_preferences(db, user_id)


def is_consent_enabled(db: Session, user_id: str, category: str) -> bool:
    if category not in CONSENT_CATEGORIES:
        return False
    enabled = db.execute(
        select(ConsentPreference.enabled).where(
            ConsentPreference.user_id == user_id,
            ConsentPreference.category == category,
        )
    ).scalar_one_or_none()
    return bool(enabled) if enabled is not None else CONSENT_CATEGORIES[category].default


def get_consenting_user_ids(db: Session, category: str) -> list[str]:
    if category not in CONSENT_CATEGORIES:
        raise ValidationError(f"Invalid consent category: {category}")
    return list(
        db.execute(
            select(ConsentPreference.user_id).where(
                ConsentPreference.category == category,
                ConsentPreference.enabled.is_(True),
            )
        ).scalars().all()
    )


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


def _push_config(db: Session, user_id: str) -> NotificationConfig | None:
    return db.execute(
        select(NotificationConfig).where(
            NotificationConfig.user_id == user_id,
            NotificationConfig.channel == "push",
        )
    ).scalar_one_or_none()


def get_push_preferences(db: Session, user_id: str) -> dict[str, dict]:
    config = _push_config(db, user_id)
    stored: dict[str, bool] = {}
    if config is not None:
        for name, value in (config.metadata_json or {}).items():
            if isinstance(value, dict) and "enabled" in value:
                stored[name] = bool(value["enabled"])
    return _merge(PUSH_CATEGORIES, stored)


def update_push_preference(
    db: Session, user_id: str, category: str, enabled: bool
) -> dict[str, dict]:
    """Set one push category, creating the user's push config row if needed."""
    if category not in PUSH_CATEGORIES:
        raise ValidationError(f"Invalid push category: {category}")

    config = _push_config(db, user_id)
    if config is None:
        config = NotificationConfig(
            user_id=user_id,
            channel="push",
            enabled=True,
            alert_levels=["info", "warning", "critical"],
            metadata_json={},
        )
        db.add(config)
    config.metadata_json = {**(config.metadata_json or {}), category: {"enabled": enabled}}
    db.commit()
    return get_push_preferences(db, user_id)


def should_send_push(db: Session, user_id: str, category: str) -> bool:
    prefs = get_push_preferences(db, user_id)
    entry = prefs.get(category)
    return bool(entry and entry["enabled"])
