"""
Append-only audit log for administrative changes and (optionally) decisions.

``AuditLog.append`` never raises: a failing sink is logged and the caller
carries on, so an audit outage cannot change a decision or abort a grant.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hierarchy_authz.db.base import utcnow
from hierarchy_authz.models.authz import AuditLogEntry

from .errors import SubsystemUnavailable

logger = logging.getLogger(__name__)

OPERATIONS = ("grant", "revoke", "check", "sync")
TARGET_TYPES = ("policy", "role", "permission", "hierarchy")


@dataclass(frozen=True)
class AuditEvent:
    operation: str
    target_type: str
    result: str
    performed_by: str
    subject_type: str | None = None
    subject_id: str | None = None
    role_name: str | None = None
    resource: str | None = None
    action: str | None = None
    effect: str | None = None
    reason: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.operation not in OPERATIONS:
            raise ValueError(f"Unknown audit operation {self.operation!r}")
        if self.target_type not in TARGET_TYPES:
            raise ValueError(f"Unknown audit target type {self.target_type!r}")


@dataclass(frozen=True)
class AuditFilter:
    operation: str | None = None
    target_type: str | None = None
    subject_type: str | None = None
    subject_id: str | None = None
    performed_by: str | None = None
    result: str | None = None
    since: datetime | None = None
    until: datetime | None = None


class AuditSink(Protocol):
    def write(self, event: AuditEvent) -> None: ...

    def query(self, filters: AuditFilter, limit: int, offset: int) -> tuple[list[AuditLogEntry], int]: ...


class SqlAuditSink:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def write(self, event: AuditEvent) -> None:
        with self._session_factory() as db:
            db.add(
                AuditLogEntry(
                    operation=event.operation,
                    target_type=event.target_type,
                    subject_type=event.subject_type,
                    subject_id=event.subject_id,
                    role_name=event.role_name,
                    resource=event.resource,
                    action=event.action,
                    effect=event.effect,
                    result=event.result,
                    reason=event.reason,
                    error=event.error,
                    performed_by=event.performed_by,
                    timestamp=event.timestamp,
                )
            )
            db.commit()

    def query(self, filters: AuditFilter, limit: int, offset: int) -> tuple[list[AuditLogEntry], int]:
        conditions = []
        for column, value in (
            (AuditLogEntry.operation, filters.operation),
            (AuditLogEntry.target_type, filters.target_type),
            (AuditLogEntry.subject_type, filters.subject_type),
            (AuditLogEntry.subject_id, filters.subject_id),
            (AuditLogEntry.performed_by, filters.performed_by),
            (AuditLogEntry.result, filters.result),
        ):
            if value is not None:
                conditions.append(column == value)
        if filters.since is not None:
            conditions.append(AuditLogEntry.timestamp >= filters.since)
        if filters.until is not None:
            conditions.append(AuditLogEntry.timestamp < filters.until)

        with self._session_factory() as db:
            total = db.scalar(select(func.count(AuditLogEntry.id)).where(*conditions)) or 0
            rows = db.scalars(
                select(AuditLogEntry)
                .where(*conditions)
                .order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
        return list(rows), int(total)


class AuditLog:
    """Fire-and-forget writer plus paginated reader over an ``AuditSink``."""

    MAX_LIMIT = 500

    def __init__(self, sink: AuditSink, record_decisions: bool = False) -> None:
        self._sink = sink
        self.record_decisions = record_decisions

    def append(self, event: AuditEvent) -> None:
        try:
            self._sink.write(event)
        except Exception as exc:
            logger.error(
                "Audit write failed operation=%s target=%s result=%s error=%s",
                event.operation,
                event.target_type,
                event.result,
                exc,
            )

    def record_decision(self, user_id: str, resource: str, action: str, allowed: bool, granted_by: str | None) -> None:
        if not self.record_decisions:
            return
        self.append(
            AuditEvent(
                operation="check",
                target_type="permission",
                result="allowed" if allowed else "denied",
                performed_by=user_id,
                subject_type="user",
                subject_id=user_id,
                resource=resource,
                action=action,
                reason=f"granted by {granted_by}" if granted_by else None,
            )
        )

    def query(
        self, filters: AuditFilter | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[AuditLogEntry], int]:
        limit = max(1, min(limit, self.MAX_LIMIT))
        offset = max(0, offset)
        try:
            return self._sink.query(filters or AuditFilter(), limit, offset)
        except SQLAlchemyError as exc:
            raise SubsystemUnavailable("audit log", f"query failed: {type(exc).__name__}") from exc
