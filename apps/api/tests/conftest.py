from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sahara import models  # noqa: F401  -- ensure all models are registered
from sahara.auth import sign_session
from sahara.db import Base, get_db
from sahara.main import app
from sahara.models import Experiment, Variant, VariantRequest
from sahara.settings import settings

ADMIN_KEY = "test-admin-key"


# ---------------------------------------------------------------------------
# Sync test DB
# ---------------------------------------------------------------------------


def setup_test_db():
    """Create an in-memory SQLite engine and session factory."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(engine)
    return engine, TestingSessionLocal


def use_test_db():
    """Point the app's ``get_db`` at a fresh in-memory database."""
    engine, TestingSessionLocal = setup_test_db()

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return engine, TestingSessionLocal


@pytest.fixture(autouse=True)
def _admin_secret(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_SECRET_KEY", ADMIN_KEY)
    yield
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Auth headers
# ---------------------------------------------------------------------------


def admin_headers() -> dict[str, str]:
    return {"x-admin-key": ADMIN_KEY}


def user_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {sign_session(user_id)}"}


# ---------------------------------------------------------------------------
# Experiment fixtures
# ---------------------------------------------------------------------------


def make_experiment(
    db: Session,
    name: str = "checkout-button",
    variants: tuple[tuple[str, float], ...] = (("control", 50), ("treatment", 50)),
    started_hours_ago: float = 72,
    is_active: bool = True,
) -> Experiment:
    now = datetime.now(timezone.utc)
    experiment = Experiment(
        name=name,
        is_active=is_active,
        start_date=now - timedelta(hours=started_hours_ago),
    )
    db.add(experiment)
    db.flush()
    for i, (variant_name, traffic) in enumerate(variants):
        db.add(
            Variant(
                experiment_id=experiment.id,
                variant_name=variant_name,
                traffic_percentage=traffic,
                config_json={},
                created_at=now - timedelta(hours=started_hours_ago) + timedelta(seconds=i),
            )
        )
    db.commit()
    db.refresh(experiment)
    return experiment


def variant_by_name(experiment: Experiment, name: str) -> Variant:
    return next(v for v in experiment.variants if v.variant_name == name)


def add_requests(
    db: Session,
    variant: Variant,
    count: int,
    *,
    conversions: int = 0,
    errors: int = 0,
    latency_ms: float = 120.0,
    hours_ago: float = 1.0,
) -> None:
    """Bulk-insert *count* served requests; the first rows convert / error."""
    at = datetime.now(timezone.utc) - timedelta(hours=hours_ago)
    db.add_all(
        [
            VariantRequest(
                variant_id=variant.id,
                user_id=f"user-{i}",
                latency_ms=latency_ms,
                is_error=i < errors,
                converted=i < conversions,
                created_at=at,
            )
            for i in range(count)
        ]
    )
    db.commit()


def seed_winning_experiment(db: Session, name: str = "checkout-button") -> Experiment:
    """1000 requests per arm, control converts 10%, treatment 15%."""
    experiment = make_experiment(db, name=name)
    add_requests(db, variant_by_name(experiment, "control"), 1000, conversions=100, errors=10)
    add_requests(db, variant_by_name(experiment, "treatment"), 1000, conversions=150, errors=10)
    return experiment
