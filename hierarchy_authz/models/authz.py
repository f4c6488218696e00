from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hierarchy_authz.db.base import Base, utcnow


class CharacterHierarchy(Base):
    """One row per character; all rows for a user are replaced together on sync."""

    __tablename__ = "character_hierarchies"
    __table_args__ = (Index("ix_character_hierarchies_user_primary", "user_id", "is_primary"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    character_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    character_name: Mapped[str] = mapped_column(String(100), nullable=False)
    corporation_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    alliance_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class PermissionPolicy(Base):
    """Metadata for a rule held by the engine. Soft-deleted on revoke, never removed."""

    __tablename__ = "permission_policies"
    __table_args__ = (
        Index(
            "ix_permission_policies_lookup",
            "subject_type",
            "subject_id",
            "resource",
            "action",
            "domain",
            "effect",
            "is_active",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    resource: Mapped[str] = mapped_column(String(200), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    domain: Mapped[str] = mapped_column(String(50), nullable=False, default="global")
    effect: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    revoked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def subject(self) -> str:
        return f"{self.subject_type}:{self.subject_id}"


class RoleAssignment(Base):
    """Metadata for a subject→role link held by the engine. Same lifecycle as PermissionPolicy."""

    __tablename__ = "role_assignments"
    __table_args__ = (
        Index("ix_role_assignments_lookup", "role_name", "subject_type", "subject_id", "domain", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role_name: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    domain: Mapped[str] = mapped_column(String(50), nullable=False, default="global")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    granted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    revoked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def subject(self) -> str:
        return f"{self.subject_type}:{self.subject_id}"


class AuditLogEntry(Base):
    """Append-only; rows are never updated or deleted."""

    __tablename__ = "authz_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    role_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resource: Mapped[str | None] = mapped_column(String(200), nullable=True)
    action: Mapped[str | None] = mapped_column(String(100), nullable=True)
    effect: Mapped[str | None] = mapped_column(String(10), nullable=True)
    result: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
