from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hierarchy_authz.db.session import get_db
from hierarchy_authz.security.dependencies import get_stack
from hierarchy_authz.security.errors import SubsystemUnavailable
from hierarchy_authz.security.factory import AuthzStack

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/health/ready")
def ready(db: Session = Depends(get_db), stack: AuthzStack = Depends(get_stack)) -> dict:
    checks: dict[str, str] = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Readiness check: database failed error=%s", exc)
        checks["database"] = "unavailable"
    try:
        stack.cache.stats()
        checks["cache"] = "ok"
    except SubsystemUnavailable as exc:
        logger.warning("Readiness check: cache failed error=%s", exc)
        checks["cache"] = "unavailable"
    breaker = stack.guard.breaker
    checks["circuit"] = breaker.state.value if breaker is not None else "disabled"
    healthy = checks["database"] == "ok"
    return {"status": "ok" if healthy else "degraded", "checks": checks}
