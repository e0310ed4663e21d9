from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from sahara.settings import settings


class Base(DeclarativeBase):
    pass


def get_engine(url: str | None = None) -> Engine:
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = get_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db() -> Iterator[Session]:
    """Request-scoped session for FastAPI routes."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(bind: Engine) -> Iterator[Session]:
    """Standalone session for work that outlives a request.

    Rolls back on error; callers commit what they want kept.
    """
    db = Session(bind=bind, autoflush=False)
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
