"""Admin-only CRUD for analyzer configuration."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sahara.auth import require_admin
from sahara.db import get_db
from sahara.models import AnalyzerConfig
from sahara.schemas import AnalyzerConfigCreate, AnalyzerConfigOut, AnalyzerConfigUpdate

logger = logging.getLogger(__name__)

admin_router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


def _get_config(db: Session, analyzer: str) -> AnalyzerConfig | None:
    return db.execute(
        select(AnalyzerConfig).where(AnalyzerConfig.analyzer == analyzer)
    ).scalar_one_or_none()


@admin_router.get("/config")
def get_analyzer_configs(
    analyzer: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    if analyzer:
        config = _get_config(db, analyzer)
        if config is None:
            raise HTTPException(status_code=404, detail="Configuration not found")
        return {
            "success": True,
            "data": AnalyzerConfigOut.model_validate(config).model_dump(by_alias=True, mode="json"),
        }

    configs = db.execute(select(AnalyzerConfig).order_by(AnalyzerConfig.analyzer)).scalars().all()
    return {
        "success": True,
        "data": [
            AnalyzerConfigOut.model_validate(c).model_dump(by_alias=True, mode="json")
            for c in configs
        ],
    }


@admin_router.post("/config", status_code=201)
def create_analyzer_config(
    body: AnalyzerConfigCreate,
    db: Session = Depends(get_db),
):
    if _get_config(db, body.analyzer) is not None:
        raise HTTPException(status_code=409, detail="Configuration already exists")

    config = AnalyzerConfig(**body.model_dump())
    db.add(config)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Configuration already exists")
    db.refresh(config)
    logger.info("Created analyzer config %s", config.analyzer)
    return {
        "success": True,
        "data": AnalyzerConfigOut.model_validate(config).model_dump(by_alias=True, mode="json"),
    }


@admin_router.patch("/config")
def update_analyzer_config(
    body: AnalyzerConfigUpdate,
    db: Session = Depends(get_db),
):
    updates = body.model_dump(exclude_unset=True, exclude={"analyzer"})
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    config = _get_config(db, body.analyzer)
    if config is None:
        raise HTTPException(status_code=404, detail="Configuration not found")

    for key, value in updates.items():
        setattr(config, key, value)
    db.commit()
    db.refresh(config)
    logger.info("Updated analyzer config %s: %s", config.analyzer, sorted(updates))
    return {
        "success": True,
        "data": AnalyzerConfigOut.model_validate(config).model_dump(by_alias=True, mode="json"),
    }
