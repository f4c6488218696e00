"""
Permission evaluation across the subject hierarchy.

Background for newcomers:
    ``evaluate(principal, resource, action)`` answers "may this user do this?"

    0. If a grant has expired since the last sweep, sweep first so the
       expired rule can neither match nor be served from cache.
    1. Look for a cached decision for ``(user_id, resource, action)``.
    2. On a miss, resolve the user's hierarchy and build the subject list
       (user, primary character, other characters, corporations, alliances).
    3. Ask the rule engine about each subject in that order. The first
       subject the engine grants wins. A subject that holds an explicit deny
       for the permission stops the walk with a denial, so a character-level
       deny beats a corporation-level allow further down the list. Subjects
       with no rule at all are skipped.
    4. Nothing granted means deny.
    5. Cache the result and, if enabled, write a ``check`` audit entry.

    The cache is an optimization: if it cannot be read or written the
    decision is computed directly and a warning is logged. Rule-engine and
    directory failures propagate as ``SubsystemUnavailable`` for the guard's
    fallback policy to handle.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from hierarchy_authz.token.principal import Principal

from .audit import AuditLog
from .cache import AuthzCache
from .engine import RuleEngine
from .errors import SubsystemUnavailable
from .expiry import ExpiryWatch
from .hierarchy import HierarchyResolver
from .permissions import GLOBAL_DOMAIN, PermissionID
from .subjects import Subject, SubjectType, build_subjects

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    resource: str
    action: str
    granted_by: str | None = None
    denied_by: str | None = None
    cached: bool = False

    @property
    def permission(self) -> str:
        return f"{self.resource}:{self.action}"

    @property
    def reason(self) -> str:
        if self.cached:
            return "cached decision"
        if self.granted_by:
            return f"granted via {self.granted_by}"
        if self.denied_by:
            return f"denied via {self.denied_by}"
        return "no matching policy"


class PermissionEvaluator:
    def __init__(
        self,
        engine: RuleEngine,
        resolver: HierarchyResolver,
        cache: AuthzCache | None = None,
        audit: AuditLog | None = None,
        domain: str = GLOBAL_DOMAIN,
        expiry: ExpiryWatch | None = None,
    ) -> None:
        self._engine = engine
        self._resolver = resolver
        self._cache = cache
        self._audit = audit
        self._domain = domain
        self._expiry = expiry

    def sweep_expired(self) -> None:
        """Drop grants whose expiry has passed before anything reads the engine or the decision cache."""
        if self._expiry is not None:
            self._expiry.sweep_if_due()

    def subjects_for(self, principal: Principal) -> list[Subject]:
        context = self._resolver.resolve(principal.user_id)
        subjects = build_subjects(context)
        if context.is_empty and principal.primary_character_id is not None:
            # Hierarchy not synced yet: fall back to the character named in the credential.
            subjects.insert(1, Subject(SubjectType.CHARACTER, str(principal.primary_character_id)))
        return subjects

    def evaluate(self, principal: Principal, resource: str, action: str) -> Decision:
        user_id = principal.user_id
        self.sweep_expired()

        cached = self._read_cache(user_id, resource, action)
        if cached is not None:
            logger.debug("Decision cache hit user_id=%s permission=%s:%s allowed=%s", user_id, resource, action, cached)
            return Decision(allowed=cached, resource=resource, action=action, cached=True)

        decision = self.evaluate_subjects(self.subjects_for(principal), resource, action)
        self._write_cache(user_id, resource, action, decision.allowed)
        if self._audit is not None:
            self._audit.record_decision(user_id, resource, action, decision.allowed, decision.granted_by)
        return decision

    def evaluate_subjects(self, subjects: Iterable[Subject], resource: str, action: str) -> Decision:
        """Walk ``subjects`` in order; first grant wins, an explicit deny stops the walk."""
        for subject in subjects:
            name = str(subject)
            if self._engine.enforce(name, resource, action, self._domain):
                logger.debug("Permission granted subject=%s permission=%s:%s", name, resource, action)
                return Decision(allowed=True, resource=resource, action=action, granted_by=name)
            if self._engine.explicitly_denies(name, resource, action, self._domain):
                logger.debug("Permission explicitly denied subject=%s permission=%s:%s", name, resource, action)
                return Decision(allowed=False, resource=resource, action=action, denied_by=name)
        return Decision(allowed=False, resource=resource, action=action)

    def check(self, principal: Principal, permission: str | PermissionID) -> Decision:
        pid = permission if isinstance(permission, PermissionID) else PermissionID.parse(permission)
        return self.evaluate(principal, pid.object, pid.action)

    def batch_check(self, principal: Principal, permissions: Iterable[str]) -> dict[str, Decision]:
        return {p: self.check(principal, p) for p in permissions}

    def warmup(self, user_id: str, permissions: Iterable[str]) -> int:
        """Pre-populate the decision cache for a user; returns how many permissions were evaluated."""
        principal = Principal.internal(user_id)
        count = 0
        for permission in permissions:
            self.check(principal, permission)
            count += 1
        logger.info("Decision cache warmed user_id=%s permissions=%d", user_id, count)
        return count

    def _read_cache(self, user_id: str, resource: str, action: str) -> bool | None:
        if self._cache is None:
            return None
        try:
            return self._cache.get_decision(user_id, resource, action)
        except SubsystemUnavailable as exc:
            logger.warning("Decision cache read failed; evaluating uncached error=%s", exc)
            return None

    def _write_cache(self, user_id: str, resource: str, action: str, allowed: bool) -> None:
        if self._cache is None:
            return
        try:
            self._cache.set_decision(user_id, resource, action, allowed)
        except SubsystemUnavailable as exc:
            logger.warning("Decision cache write failed error=%s", exc)
