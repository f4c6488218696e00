"""
Request guards: require-auth, require-permission, require-any, require-all.

Background for newcomers:
    A guarded call runs the same small pipeline every time:

        extract credential -> authenticate (401 on failure)
            -> resolve hierarchy -> build subjects -> evaluate (403 on deny)

    Authentication failures are final. If the evaluation side (rule engine,
    directory) is down, the guard either degrades to "authenticated is
    enough" (``fallback_to_auth_only``, the default) or fails with
    ``SubsystemUnavailable`` (HTTP 500). A corrupt hierarchy (two primary
    characters) is a data fault and always fails the request. An optional
    circuit breaker stops calling a failing engine for a while and goes
    straight to that fallback.

    ``GuardOptions`` is built once and never changed; ``with_*`` methods
    return a new instance.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from hierarchy_authz.token.principal import Principal
from hierarchy_authz.token.validator import TokenValidator

from .circuit_breaker import CircuitBreaker
from .errors import AuthorizationError, HierarchyIntegrityError, SubsystemUnavailable
from .evaluator import Decision, PermissionEvaluator
from .permissions import PermissionID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardOptions:
    debug_logging: bool = False
    circuit_breaker: bool = False
    fallback_to_auth_only: bool = True
    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0

    def with_debug_logging(self, enabled: bool = True) -> GuardOptions:
        return dataclasses.replace(self, debug_logging=enabled)

    def with_circuit_breaker(
        self, enabled: bool = True, failure_threshold: int | None = None, reset_timeout_seconds: float | None = None
    ) -> GuardOptions:
        return dataclasses.replace(
            self,
            circuit_breaker=enabled,
            failure_threshold=self.failure_threshold if failure_threshold is None else failure_threshold,
            reset_timeout_seconds=self.reset_timeout_seconds if reset_timeout_seconds is None else reset_timeout_seconds,
        )

    def with_fallback(self, enabled: bool = True) -> GuardOptions:
        return dataclasses.replace(self, fallback_to_auth_only=enabled)

    def without_fallback(self) -> GuardOptions:
        return self.with_fallback(False)


@dataclass(frozen=True)
class GuardResult:
    """What a permission guard decided; ``degraded`` means evaluation was skipped by fallback."""

    principal: Principal
    granted: tuple[str, ...] = ()
    degraded: bool = False


class AuthorizationGuard:
    def __init__(
        self,
        validator: TokenValidator,
        evaluator: PermissionEvaluator,
        options: GuardOptions | None = None,
        breaker: CircuitBreaker | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._validator = validator
        self._evaluator = evaluator
        self.options = options or GuardOptions()
        if breaker is None and self.options.circuit_breaker:
            breaker = CircuitBreaker(self.options.failure_threshold, self.options.reset_timeout_seconds)
        self.breaker = breaker
        self._log = log or logger
        self._trace_level = logging.INFO if self.options.debug_logging else logging.DEBUG

    def _trace(self, msg: str, *args: object) -> None:
        self._log.log(self._trace_level, msg, *args)

    # ---- primitives --------------------------------------------------------------

    def require_auth(self, headers: Mapping[str, str]) -> Principal:
        principal = self._validator.authenticate(headers)
        self._trace("guard stage=authenticate user_id=%s source=%s", principal.user_id, principal.request_type)
        return principal

    def require_permission(self, headers: Mapping[str, str], permission: str) -> Principal:
        return self.check_permission(headers, permission).principal

    def require_any_permission(self, headers: Mapping[str, str], permissions: Sequence[str]) -> Principal:
        return self.check_any_permission(headers, permissions).principal

    def require_all_permissions(self, headers: Mapping[str, str], permissions: Sequence[str]) -> Principal:
        return self.check_all_permissions(headers, permissions).principal

    # ---- detailed variants ---------------------------------------------------------

    def check_permission(self, headers: Mapping[str, str], permission: str) -> GuardResult:
        return self.check_all_permissions(headers, [permission])

    def check_any_permission(self, headers: Mapping[str, str], permissions: Sequence[str]) -> GuardResult:
        """Pass on the first granted permission, in list order. An empty list passes."""
        principal = self.require_auth(headers)
        parsed = [PermissionID.parse(p) for p in permissions]
        if not parsed:
            return GuardResult(principal)

        try:
            for pid in parsed:
                if self._evaluate(principal, pid).allowed:
                    self._trace("guard stage=decision mode=any user_id=%s granted=%s", principal.user_id, pid)
                    return GuardResult(principal, granted=(str(pid),))
        except SubsystemUnavailable as exc:
            return self._fallback(principal, exc)

        self._trace("guard stage=decision mode=any user_id=%s granted=none", principal.user_id)
        raise AuthorizationError(
            [str(p) for p in parsed], f"Requires any of: {', '.join(str(p) for p in parsed)}"
        )

    def check_all_permissions(self, headers: Mapping[str, str], permissions: Sequence[str]) -> GuardResult:
        """Stop at the first missing permission. An empty list passes."""
        principal = self.require_auth(headers)
        parsed = [PermissionID.parse(p) for p in permissions]

        granted: list[str] = []
        try:
            for pid in parsed:
                if not self._evaluate(principal, pid).allowed:
                    self._trace("guard stage=decision mode=all user_id=%s missing=%s", principal.user_id, pid)
                    raise AuthorizationError([str(pid)])
                granted.append(str(pid))
        except SubsystemUnavailable as exc:
            return self._fallback(principal, exc)

        return GuardResult(principal, granted=tuple(granted))

    # ---- internals ---------------------------------------------------------------

    def _evaluate(self, principal: Principal, pid: PermissionID) -> Decision:
        if self.breaker is not None:
            self.breaker.before_call()
        try:
            decision = self._evaluator.evaluate(principal, pid.object, pid.action)
        except SubsystemUnavailable:
            if self.breaker is not None:
                self.breaker.record_failure()
            raise
        except HierarchyIntegrityError as exc:
            self._log.error("Hierarchy integrity fault; denying evaluation user_id=%s error=%s", principal.user_id, exc)
            raise
        if self.breaker is not None:
            self.breaker.record_success()
        self._trace(
            "guard stage=evaluate user_id=%s permission=%s allowed=%s reason=%s",
            principal.user_id,
            pid,
            decision.allowed,
            decision.reason,
        )
        return decision

    def _fallback(self, principal: Principal, exc: SubsystemUnavailable) -> GuardResult:
        if not self.options.fallback_to_auth_only:
            self._log.error("Permission evaluation unavailable; failing request user_id=%s error=%s", principal.user_id, exc)
            raise exc
        self._log.warning(
            "Permission evaluation unavailable; falling back to authentication only user_id=%s error=%s",
            principal.user_id,
            exc,
        )
        return GuardResult(principal, degraded=True)
