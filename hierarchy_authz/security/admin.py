"""
Policy and role administration.

Background for newcomers:
    Every grant lives in two places: the rule engine (which answers
    ``enforce``) and a metadata row (who granted it, when, why, until when).
    The two must not diverge, so writes follow one discipline:

    * grant / assign: write the engine first; only if that succeeds write the
      metadata row. If the row cannot be written, undo the engine write and
      fail the operation.
    * revoke: remove from the engine first, then mark the row inactive
      (rows are never deleted). If the row cannot be updated, put the engine
      rule back and fail.

    Every mutation, successful or not, is followed by an audit entry. Every
    successful mutation drops the whole decision cache.

    Repeating an identical active grant is a no-op reported as ``exists``;
    revoking something that is not granted is reported as ``not_found``.
    Bulk operations never stop at the first failure; they report per-item
    results instead.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hierarchy_authz.db.base import as_naive_utc, utcnow
from hierarchy_authz.models.authz import AuditLogEntry, CharacterHierarchy, PermissionPolicy, RoleAssignment
from hierarchy_authz.token.principal import Principal

from .audit import AuditEvent, AuditFilter, AuditLog
from .cache import AuthzCache
from .engine import PolicyRule, RuleEngine
from .errors import AdministrationError, AuthzError, SubsystemUnavailable, ValidationError
from .evaluator import Decision, PermissionEvaluator
from .expiry import ExpiryWatch
from .hierarchy import CharacterRecord, HierarchyContext, HierarchyResolver
from .permissions import GLOBAL_DOMAIN, PermissionID, parse_effect, validate_action, validate_resource
from .subjects import Subject, SubjectType

logger = logging.getLogger(__name__)

SYSTEM_PERFORMER = "system"

_ROLE_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


@dataclass(frozen=True)
class GrantResult:
    outcome: str  # "created" | "exists"
    policy: PermissionPolicy

    @property
    def created(self) -> bool:
        return self.outcome == "created"


@dataclass(frozen=True)
class RevokeResult:
    outcome: str  # "revoked" | "not_found"
    policy: PermissionPolicy | None = None

    @property
    def revoked(self) -> bool:
        return self.outcome == "revoked"


@dataclass(frozen=True)
class RoleResult:
    outcome: str  # "assigned" | "exists"
    assignment: RoleAssignment

    @property
    def created(self) -> bool:
        return self.outcome == "assigned"


@dataclass(frozen=True)
class RoleRevokeResult:
    outcome: str  # "revoked" | "not_found"
    assignment: RoleAssignment | None = None

    @property
    def revoked(self) -> bool:
        return self.outcome == "revoked"


@dataclass(frozen=True)
class ItemFailure:
    item: str
    error: str


@dataclass
class BulkResult:
    successful: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[ItemFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.successful)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


@dataclass(frozen=True)
class SyncResult:
    user_id: str
    synced: tuple[int, ...]
    failed: tuple[ItemFailure, ...]
    previous_owners: tuple[str, ...] = ()


@dataclass(frozen=True)
class SubjectPermissions:
    subject: str
    roles: tuple[str, ...]
    policies: tuple[PolicyRule, ...]


@dataclass(frozen=True)
class EffectivePermissions:
    user_id: str
    subjects: tuple[SubjectPermissions, ...]

    @property
    def allowed(self) -> set[str]:
        return {f"{p.resource}:{p.action}" for s in self.subjects for p in s.policies if p.effect == "allow"}

    @property
    def denied(self) -> set[str]:
        return {f"{p.resource}:{p.action}" for s in self.subjects for p in s.policies if p.effect == "deny"}


def _role_subject(role_name: str) -> str:
    if not role_name or not _ROLE_NAME_RE.match(role_name):
        raise ValidationError(f"Invalid role name {role_name!r}")
    return str(Subject.role(role_name))


def _require_performer(performed_by: str) -> str:
    if not performed_by or not str(performed_by).strip():
        raise ValidationError("An authenticated performer is required")
    return str(performed_by)


def _not_expired(column, now: datetime):
    return or_(column.is_(None), column > now)


class PolicyAdminService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        engine: RuleEngine,
        evaluator: PermissionEvaluator,
        resolver: HierarchyResolver,
        audit: AuditLog,
        cache: AuthzCache | None = None,
        expiry: ExpiryWatch | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._evaluator = evaluator
        self._resolver = resolver
        self._audit = audit
        self._cache = cache
        self._expiry = expiry
        if expiry is not None:
            expiry.bind(self.expire_stale_grants)

    # ---- policies ----------------------------------------------------------------

    def grant_policy(
        self,
        performed_by: str,
        subject_type: str,
        subject_id: str,
        resource: str,
        action: str,
        effect: str = "allow",
        domain: str = GLOBAL_DOMAIN,
        expires_at: datetime | None = None,
        reason: str | None = None,
    ) -> GrantResult:
        performed_by = _require_performer(performed_by)
        subject = Subject.of(subject_type, subject_id)
        validate_resource(resource)
        validate_action(action)
        eft = parse_effect(effect).value
        expires_at = as_naive_utc(expires_at)
        now = utcnow()
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at must be in the future")

        event = dict(
            operation="grant",
            target_type="policy",
            performed_by=performed_by,
            subject_type=subject.type.value,
            subject_id=subject.id,
            resource=resource,
            action=action,
            effect=eft,
            reason=reason,
        )

        try:
            with self._session_factory() as db:
                existing = db.scalars(
                    self._policy_query(subject, resource, action, domain, eft).where(
                        _not_expired(PermissionPolicy.expires_at, now)
                    )
                ).first()
        except SQLAlchemyError as exc:
            self._audit_failure(event, exc)
            raise SubsystemUnavailable("policy store", type(exc).__name__) from exc
        if existing is not None:
            self._audit.append(AuditEvent(result="exists", **event))
            return GrantResult("exists", existing)

        try:
            added = self._engine.add_policy(str(subject), resource, action, domain, eft)
        except SubsystemUnavailable as exc:
            self._audit_failure(event, exc)
            raise

        try:
            with self._session_factory() as db:
                # An expired row for the same rule would otherwise be swept later and take this grant with it.
                for stale in db.scalars(self._policy_query(subject, resource, action, domain, eft)):
                    stale.is_active = False
                    stale.revoked_at = now
                    stale.revoked_by = SYSTEM_PERFORMER
                row = PermissionPolicy(
                    subject_type=subject.type.value,
                    subject_id=subject.id,
                    resource=resource,
                    action=action,
                    domain=domain,
                    effect=eft,
                    reason=reason,
                    created_by=performed_by,
                    created_at=now,
                    expires_at=expires_at,
                    is_active=True,
                )
                db.add(row)
                db.commit()
        except SQLAlchemyError as exc:
            if added:
                self._undo("remove_policy", self._engine.remove_policy, str(subject), resource, action, domain, eft)
            self._audit_failure(event, exc)
            raise AdministrationError(f"Could not persist policy metadata: {type(exc).__name__}") from exc

        if self._expiry is not None:
            self._expiry.note(expires_at)
        self._invalidate_decisions()
        self._audit.append(AuditEvent(result="success", **event))
        logger.info("Policy granted subject=%s permission=%s:%s effect=%s by=%s", subject, resource, action, eft, performed_by)
        return GrantResult("created", row)

    def revoke_policy(
        self,
        performed_by: str,
        subject_type: str,
        subject_id: str,
        resource: str,
        action: str,
        effect: str = "allow",
        domain: str = GLOBAL_DOMAIN,
        reason: str | None = None,
    ) -> RevokeResult:
        performed_by = _require_performer(performed_by)
        subject = Subject.of(subject_type, subject_id)
        eft = parse_effect(effect).value
        event = dict(
            operation="revoke",
            target_type="policy",
            performed_by=performed_by,
            subject_type=subject.type.value,
            subject_id=subject.id,
            resource=resource,
            action=action,
            effect=eft,
            reason=reason,
        )

        try:
            with self._session_factory() as db:
                rows = list(db.scalars(self._policy_query(subject, resource, action, domain, eft)))
            in_engine = self._engine.has_policy(str(subject), resource, action, domain, eft)
        except SQLAlchemyError as exc:
            self._audit_failure(event, exc)
            raise SubsystemUnavailable("policy store", type(exc).__name__) from exc
        except SubsystemUnavailable as exc:
            self._audit_failure(event, exc)
            raise

        if not rows and not in_engine:
            self._audit.append(AuditEvent(result="not_found", **event))
            return RevokeResult("not_found")

        removed = False
        if in_engine:
            try:
                removed = self._engine.remove_policy(str(subject), resource, action, domain, eft)
            except SubsystemUnavailable as exc:
                self._audit_failure(event, exc)
                raise

        now = utcnow()
        try:
            with self._session_factory() as db:
                for row in db.scalars(self._policy_query(subject, resource, action, domain, eft)):
                    row.is_active = False
                    row.revoked_at = now
                    row.revoked_by = performed_by
                db.commit()
        except SQLAlchemyError as exc:
            if removed:
                self._undo("add_policy", self._engine.add_policy, str(subject), resource, action, domain, eft)
            self._audit_failure(event, exc)
            raise AdministrationError(f"Could not persist policy revocation: {type(exc).__name__}") from exc

        self._invalidate_decisions()
        self._audit.append(AuditEvent(result="success", **event))
        logger.info("Policy revoked subject=%s permission=%s:%s effect=%s by=%s", subject, resource, action, eft, performed_by)
        return RevokeResult("revoked", rows[0] if rows else None)

    def revoke_policy_by_id(self, performed_by: str, policy_id: int, reason: str | None = None) -> RevokeResult:
        row = self._get_row(PermissionPolicy, policy_id)
        if row is None or not row.is_active:
            return RevokeResult("not_found", row)
        return self.revoke_policy(
            performed_by, row.subject_type, row.subject_id, row.resource, row.action, row.effect, row.domain, reason
        )

    # ---- roles -------------------------------------------------------------------

    def assign_role(
        self,
        performed_by: str,
        role_name: str,
        subject_type: str,
        subject_id: str,
        domain: str = GLOBAL_DOMAIN,
        expires_at: datetime | None = None,
        reason: str | None = None,
    ) -> RoleResult:
        performed_by = _require_performer(performed_by)
        role = _role_subject(role_name)
        subject = Subject.of(subject_type, subject_id)
        if subject.type is SubjectType.ROLE:
            raise ValidationError("Roles cannot be assigned to roles")
        expires_at = as_naive_utc(expires_at)
        now = utcnow()
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at must be in the future")

        event = dict(
            operation="grant",
            target_type="role",
            performed_by=performed_by,
            subject_type=subject.type.value,
            subject_id=subject.id,
            role_name=role_name,
            reason=reason,
        )

        try:
            with self._session_factory() as db:
                existing = db.scalars(
                    self._role_query(role_name, subject, domain).where(_not_expired(RoleAssignment.expires_at, now))
                ).first()
        except SQLAlchemyError as exc:
            self._audit_failure(event, exc)
            raise SubsystemUnavailable("policy store", type(exc).__name__) from exc
        if existing is not None:
            self._audit.append(AuditEvent(result="exists", **event))
            return RoleResult("exists", existing)

        try:
            added = self._engine.add_role_for_subject(str(subject), role, domain)
        except SubsystemUnavailable as exc:
            self._audit_failure(event, exc)
            raise

        try:
            with self._session_factory() as db:
                for stale in db.scalars(self._role_query(role_name, subject, domain)):
                    stale.is_active = False
                    stale.revoked_at = now
                    stale.revoked_by = SYSTEM_PERFORMER
                row = RoleAssignment(
                    role_name=role_name,
                    subject_type=subject.type.value,
                    subject_id=subject.id,
                    domain=domain,
                    reason=reason,
                    granted_by=performed_by,
                    granted_at=now,
                    expires_at=expires_at,
                    is_active=True,
                )
                db.add(row)
                db.commit()
        except SQLAlchemyError as exc:
            if added:
                self._undo("remove_role", self._engine.remove_role_for_subject, str(subject), role, domain)
            self._audit_failure(event, exc)
            raise AdministrationError(f"Could not persist role assignment: {type(exc).__name__}") from exc

        if self._expiry is not None:
            self._expiry.note(expires_at)
        self._invalidate_decisions()
        self._audit.append(AuditEvent(result="success", **event))
        logger.info("Role assigned role=%s subject=%s by=%s", role_name, subject, performed_by)
        return RoleResult("assigned", row)

    def revoke_role(
        self,
        performed_by: str,
        role_name: str,
        subject_type: str,
        subject_id: str,
        domain: str = GLOBAL_DOMAIN,
        reason: str | None = None,
    ) -> RoleRevokeResult:
        performed_by = _require_performer(performed_by)
        role = _role_subject(role_name)
        subject = Subject.of(subject_type, subject_id)
        event = dict(
            operation="revoke",
            target_type="role",
            performed_by=performed_by,
            subject_type=subject.type.value,
            subject_id=subject.id,
            role_name=role_name,
            reason=reason,
        )

        try:
            with self._session_factory() as db:
                rows = list(db.scalars(self._role_query(role_name, subject, domain)))
            in_engine = self._engine.has_role_for_subject(str(subject), role, domain)
        except SQLAlchemyError as exc:
            self._audit_failure(event, exc)
            raise SubsystemUnavailable("policy store", type(exc).__name__) from exc
        except SubsystemUnavailable as exc:
            self._audit_failure(event, exc)
            raise

        if not rows and not in_engine:
            self._audit.append(AuditEvent(result="not_found", **event))
            return RoleRevokeResult("not_found")

        removed = False
        if in_engine:
            try:
                removed = self._engine.remove_role_for_subject(str(subject), role, domain)
            except SubsystemUnavailable as exc:
                self._audit_failure(event, exc)
                raise

        now = utcnow()
        try:
            with self._session_factory() as db:
                for row in db.scalars(self._role_query(role_name, subject, domain)):
                    row.is_active = False
                    row.revoked_at = now
                    row.revoked_by = performed_by
                db.commit()
        except SQLAlchemyError as exc:
            if removed:
                self._undo("add_role", self._engine.add_role_for_subject, str(subject), role, domain)
            self._audit_failure(event, exc)
            raise AdministrationError(f"Could not persist role revocation: {type(exc).__name__}") from exc

        self._invalidate_decisions()
        self._audit.append(AuditEvent(result="success", **event))
        logger.info("Role revoked role=%s subject=%s by=%s", role_name, subject, performed_by)
        return RoleRevokeResult("revoked", rows[0] if rows else None)

    def revoke_role_by_id(self, performed_by: str, assignment_id: int, reason: str | None = None) -> RoleRevokeResult:
        row = self._get_row(RoleAssignment, assignment_id)
        if row is None or not row.is_active:
            return RoleRevokeResult("not_found", row)
        return self.revoke_role(performed_by, row.role_name, row.subject_type, row.subject_id, row.domain, reason)

    def bulk_assign_role(
        self,
        performed_by: str,
        role_name: str,
        user_ids: Iterable[str],
        domain: str = GLOBAL_DOMAIN,
        expires_at: datetime | None = None,
        reason: str | None = None,
    ) -> BulkResult:
        """Assign ``role_name`` to each user independently; one failure never stops the rest."""
        result = BulkResult()
        for user_id in user_ids:
            try:
                outcome = self.assign_role(
                    performed_by, role_name, SubjectType.USER.value, user_id, domain, expires_at, reason
                )
            except AuthzError as exc:
                result.failed.append(ItemFailure(str(user_id), exc.message))
                continue
            (result.successful if outcome.created else result.skipped).append(str(user_id))
        logger.info(
            "Bulk role assignment role=%s ok=%d skipped=%d failed=%d",
            role_name,
            result.success_count,
            len(result.skipped),
            result.failure_count,
        )
        return result

    # ---- hierarchy ---------------------------------------------------------------

    def sync_hierarchy(self, performed_by: str, user_id: str, characters: Sequence[CharacterRecord]) -> SyncResult:
        """
        Replace every hierarchy row for ``user_id`` in one transaction.

        Invalid characters are reported per item and left out; the valid
        ones are written. If characters were submitted but none is valid the
        stored hierarchy is left untouched; an empty list clears it. A character currently owned by another user moves
        to this user, and the previous owner's cached hierarchy is dropped too.
        """
        performed_by = _require_performer(performed_by)
        user_id = str(user_id).strip()
        if not user_id:
            raise ValidationError("user_id is required")

        valid: list[CharacterRecord] = []
        failed: list[ItemFailure] = []
        seen: set[int] = set()
        primary_seen = False
        for c in characters:
            problem = None
            if c.character_id <= 0:
                problem = "character_id must be positive"
            elif c.corporation_id <= 0:
                problem = "corporation_id must be positive"
            elif not c.character_name.strip():
                problem = "character_name is required"
            elif c.character_id in seen:
                problem = "duplicate character"
            elif c.is_primary and primary_seen:
                problem = "more than one primary character"
            if problem:
                failed.append(ItemFailure(str(c.character_id), problem))
                continue
            seen.add(c.character_id)
            primary_seen = primary_seen or c.is_primary
            valid.append(c)

        event = dict(
            operation="sync",
            target_type="hierarchy",
            performed_by=performed_by,
            subject_type=SubjectType.USER.value,
            subject_id=user_id,
        )
        if characters and not valid:
            # Nothing usable was submitted; the stored hierarchy stays.
            self._audit.append(AuditEvent(result="failure", reason=f"synced=0 failed={len(failed)}", **event))
            logger.warning("Hierarchy sync rejected every character user_id=%s failed=%d", user_id, len(failed))
            return SyncResult(user_id=user_id, synced=(), failed=tuple(failed))

        now = utcnow()
        try:
            with self._session_factory() as db, db.begin():
                previous_owners = set()
                if seen:
                    previous_owners = set(
                        db.scalars(
                            select(CharacterHierarchy.user_id).where(
                                CharacterHierarchy.character_id.in_(seen), CharacterHierarchy.user_id != user_id
                            )
                        )
                    )
                    db.execute(delete(CharacterHierarchy).where(CharacterHierarchy.character_id.in_(seen)))
                db.execute(delete(CharacterHierarchy).where(CharacterHierarchy.user_id == user_id))
                db.add_all(
                    CharacterHierarchy(
                        user_id=user_id,
                        character_id=c.character_id,
                        character_name=c.character_name.strip(),
                        corporation_id=c.corporation_id,
                        alliance_id=c.alliance_id or None,
                        is_primary=c.is_primary,
                        synced_at=now,
                    )
                    for c in valid
                )
        except SQLAlchemyError as exc:
            self._audit_failure(event, exc)
            raise AdministrationError(f"Hierarchy sync failed: {type(exc).__name__}") from exc

        self._invalidate_users([user_id, *sorted(previous_owners)])
        self._audit.append(
            AuditEvent(
                result="partial" if failed else "success",
                reason=f"synced={len(valid)} failed={len(failed)}",
                **event,
            )
        )
        logger.info("Hierarchy synced user_id=%s characters=%d failed=%d", user_id, len(valid), len(failed))
        return SyncResult(
            user_id=user_id,
            synced=tuple(c.character_id for c in valid),
            failed=tuple(failed),
            previous_owners=tuple(sorted(previous_owners)),
        )

    def get_user_hierarchy(self, user_id: str) -> HierarchyContext:
        return self._resolver.resolve(user_id)

    # ---- read-only queries ---------------------------------------------------------

    def check_permission(self, user_id: str, permission: str | PermissionID) -> Decision:
        return self._evaluator.check(Principal.internal(user_id), permission)

    def batch_check_permissions(self, user_id: str, permissions: Iterable[str]) -> dict[str, Decision]:
        return self._evaluator.batch_check(Principal.internal(user_id), permissions)

    def get_effective_permissions(self, user_id: str, domain: str = GLOBAL_DOMAIN) -> EffectivePermissions:
        self._evaluator.sweep_expired()
        entries = []
        for subject in self._evaluator.subjects_for(Principal.internal(user_id)):
            name = str(subject)
            roles = tuple(self._engine.get_roles_for_subject(name, domain))
            policies = list(self._engine.get_permissions_for_subject(name, domain))
            for role in roles:
                policies.extend(self._engine.get_permissions_for_subject(role, domain))
            entries.append(SubjectPermissions(subject=name, roles=roles, policies=tuple(policies)))
        return EffectivePermissions(user_id=user_id, subjects=tuple(entries))

    def get_subject_roles(self, subject_type: str, subject_id: str, domain: str = GLOBAL_DOMAIN) -> list[str]:
        subject = Subject.of(subject_type, subject_id)
        prefix = f"{SubjectType.ROLE.value}:"
        return [r[len(prefix) :] if r.startswith(prefix) else r for r in self._engine.get_roles_for_subject(str(subject), domain)]

    def get_user_roles(self, user_id: str, domain: str = GLOBAL_DOMAIN) -> list[str]:
        return self.get_subject_roles(SubjectType.USER.value, user_id, domain)

    def get_role_policies(self, role_name: str, domain: str = GLOBAL_DOMAIN) -> list[PolicyRule]:
        return self._engine.get_permissions_for_subject(_role_subject(role_name), domain)

    def list_policies(
        self,
        subject_type: str | None = None,
        subject_id: str | None = None,
        resource: str | None = None,
        include_inactive: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[PermissionPolicy], int]:
        conditions = []
        if subject_type is not None:
            conditions.append(PermissionPolicy.subject_type == subject_type)
        if subject_id is not None:
            conditions.append(PermissionPolicy.subject_id == subject_id)
        if resource is not None:
            conditions.append(PermissionPolicy.resource == resource)
        if not include_inactive:
            conditions.append(PermissionPolicy.is_active.is_(True))
            conditions.append(_not_expired(PermissionPolicy.expires_at, utcnow()))
        return self._page(PermissionPolicy, conditions, limit, offset)

    def list_roles(
        self,
        role_name: str | None = None,
        subject_type: str | None = None,
        subject_id: str | None = None,
        include_inactive: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[RoleAssignment], int]:
        conditions = []
        if role_name is not None:
            conditions.append(RoleAssignment.role_name == role_name)
        if subject_type is not None:
            conditions.append(RoleAssignment.subject_type == subject_type)
        if subject_id is not None:
            conditions.append(RoleAssignment.subject_id == subject_id)
        if not include_inactive:
            conditions.append(RoleAssignment.is_active.is_(True))
            conditions.append(_not_expired(RoleAssignment.expires_at, utcnow()))
        return self._page(RoleAssignment, conditions, limit, offset)

    def query_audit(
        self, filters: AuditFilter | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[AuditLogEntry], int]:
        return self._audit.query(filters, limit, offset)

    # ---- maintenance ---------------------------------------------------------------

    def expire_stale_grants(self, now: datetime | None = None) -> dict[str, int]:
        """Revoke every active policy and role assignment whose ``expires_at`` has passed."""
        now = as_naive_utc(now) or utcnow()
        try:
            with self._session_factory() as db:
                policies = list(
                    db.scalars(
                        select(PermissionPolicy).where(
                            PermissionPolicy.is_active.is_(True),
                            PermissionPolicy.expires_at.is_not(None),
                            PermissionPolicy.expires_at <= now,
                        )
                    )
                )
                roles = list(
                    db.scalars(
                        select(RoleAssignment).where(
                            RoleAssignment.is_active.is_(True),
                            RoleAssignment.expires_at.is_not(None),
                            RoleAssignment.expires_at <= now,
                        )
                    )
                )
        except SQLAlchemyError as exc:
            raise SubsystemUnavailable("policy store", type(exc).__name__) from exc

        expired = {"policies": 0, "roles": 0}
        for p in policies:
            try:
                outcome = self.revoke_policy(
                    SYSTEM_PERFORMER, p.subject_type, p.subject_id, p.resource, p.action, p.effect, p.domain, "expired"
                )
            except AuthzError as exc:
                logger.error("Expiring policy failed policy_id=%s error=%s", p.id, exc)
                continue
            expired["policies"] += int(outcome.revoked)
        for r in roles:
            try:
                outcome = self.revoke_role(
                    SYSTEM_PERFORMER, r.role_name, r.subject_type, r.subject_id, r.domain, "expired"
                )
            except AuthzError as exc:
                logger.error("Expiring role assignment failed assignment_id=%s error=%s", r.id, exc)
                continue
            expired["roles"] += int(outcome.revoked)
        if policies or roles:
            logger.info("Expired grants revoked policies=%d roles=%d", expired["policies"], expired["roles"])
        if self._expiry is not None:
            self._expiry.reset(self._next_pending_expiry())
        return expired

    # ---- helpers -----------------------------------------------------------------

    def _next_pending_expiry(self) -> datetime | None:
        """Earliest ``expires_at`` among active grants, including ones whose revocation failed."""
        try:
            with self._session_factory() as db:
                candidates = (
                    db.scalar(select(func.min(PermissionPolicy.expires_at)).where(PermissionPolicy.is_active.is_(True))),
                    db.scalar(select(func.min(RoleAssignment.expires_at)).where(RoleAssignment.is_active.is_(True))),
                )
        except SQLAlchemyError as exc:
            raise SubsystemUnavailable("policy store", type(exc).__name__) from exc
        pending = [c for c in candidates if c is not None]
        return min(pending) if pending else None

    @staticmethod
    def _policy_query(subject: Subject, resource: str, action: str, domain: str, effect: str):
        return select(PermissionPolicy).where(
            PermissionPolicy.subject_type == subject.type.value,
            PermissionPolicy.subject_id == subject.id,
            PermissionPolicy.resource == resource,
            PermissionPolicy.action == action,
            PermissionPolicy.domain == domain,
            PermissionPolicy.effect == effect,
            PermissionPolicy.is_active.is_(True),
        )

    @staticmethod
    def _role_query(role_name: str, subject: Subject, domain: str):
        return select(RoleAssignment).where(
            RoleAssignment.role_name == role_name,
            RoleAssignment.subject_type == subject.type.value,
            RoleAssignment.subject_id == subject.id,
            RoleAssignment.domain == domain,
            RoleAssignment.is_active.is_(True),
        )

    def _get_row(self, model, row_id: int):
        try:
            with self._session_factory() as db:
                return db.get(model, row_id)
        except SQLAlchemyError as exc:
            raise SubsystemUnavailable("policy store", type(exc).__name__) from exc

    def _page(self, model, conditions: list, limit: int, offset: int):
        limit = max(1, min(limit, 1000))
        offset = max(0, offset)
        try:
            with self._session_factory() as db:
                total = db.scalar(select(func.count(model.id)).where(*conditions)) or 0
                rows = db.scalars(select(model).where(*conditions).order_by(model.id).limit(limit).offset(offset)).all()
        except SQLAlchemyError as exc:
            raise SubsystemUnavailable("policy store", type(exc).__name__) from exc
        return list(rows), int(total)

    def _undo(self, op: str, fn, *args: str) -> None:
        try:
            fn(*args)
        except SubsystemUnavailable as exc:
            logger.error("Engine rollback failed op=%s args=%s error=%s", op, args, exc)

    def _audit_failure(self, event: dict, exc: Exception) -> None:
        self._audit.append(AuditEvent(result="failure", error=f"{type(exc).__name__}: {exc}", **event))

    def _invalidate_decisions(self) -> None:
        if self._cache is None:
            return
        try:
            self._cache.invalidate_decisions()
        except SubsystemUnavailable as exc:
            logger.error("Decision cache invalidation failed; entries expire by TTL error=%s", exc)

    def _invalidate_users(self, user_ids: list[str]) -> None:
        if self._cache is None:
            return
        try:
            self._cache.invalidate_users(user_ids)
        except SubsystemUnavailable as exc:
            logger.error("Hierarchy cache invalidation failed user_ids=%s error=%s", user_ids, exc)
