"""
Rule engine adapter (Casbin).

Background for newcomers:
    Casbin matches a request ``(subject, object, action, domain)`` against
    stored ``p`` rules and ``g`` role links. Our model lives in
    ``authz_model.conf`` next to this file:

    * a ``p`` rule is ``subject, object, action, domain, effect`` where effect
      is ``allow`` or ``deny``;
    * ``g`` links a subject to a ``role:<name>`` subject inside a domain, so a
      subject inherits every rule held by its roles;
    * the effect is deny-override: a subject (together with its roles) is
      granted only if some rule allows and no rule denies.

    Casbin answers one subject at a time. Combining answers across the
    user/character/corporation/alliance chain is done by the evaluator.

    The enforcer keeps its rules in memory and writes through to its adapter
    (``casbin_sqlalchemy_adapter`` in production). Reads and writes are
    serialized with a lock here because the enforcer's in-memory model is not
    safe for concurrent mutation.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

import casbin
from casbin.model import Model
import casbin_sqlalchemy_adapter

from .errors import SubsystemUnavailable
from .permissions import GLOBAL_DOMAIN

logger = logging.getLogger(__name__)

MODEL_PATH = Path(__file__).with_name("authz_model.conf")

T = TypeVar("T")


@dataclass(frozen=True)
class PolicyRule:
    subject: str
    resource: str
    action: str
    domain: str
    effect: str


class RuleEngine(Protocol):
    def enforce(self, subject: str, resource: str, action: str, domain: str = GLOBAL_DOMAIN) -> bool: ...

    def explicitly_denies(self, subject: str, resource: str, action: str, domain: str = GLOBAL_DOMAIN) -> bool: ...

    def add_policy(self, subject: str, resource: str, action: str, domain: str, effect: str) -> bool: ...

    def remove_policy(self, subject: str, resource: str, action: str, domain: str, effect: str) -> bool: ...

    def has_policy(self, subject: str, resource: str, action: str, domain: str, effect: str) -> bool: ...

    def add_role_for_subject(self, subject: str, role: str, domain: str = GLOBAL_DOMAIN) -> bool: ...

    def remove_role_for_subject(self, subject: str, role: str, domain: str = GLOBAL_DOMAIN) -> bool: ...

    def has_role_for_subject(self, subject: str, role: str, domain: str = GLOBAL_DOMAIN) -> bool: ...

    def get_roles_for_subject(self, subject: str, domain: str = GLOBAL_DOMAIN) -> list[str]: ...

    def get_permissions_for_subject(self, subject: str, domain: str = GLOBAL_DOMAIN) -> list[PolicyRule]: ...


def create_enforcer(adapter: Any | None = None) -> casbin.Enforcer:
    """Enforcer over the bundled model; rules persist through ``adapter`` when given."""
    if adapter is None:
        model = Model()
        model.load_model_from_text(MODEL_PATH.read_text(encoding="utf-8"))
        return casbin.Enforcer(model)
    return casbin.Enforcer(str(MODEL_PATH), adapter)


def create_sql_enforcer(db_url_or_engine: Any) -> casbin.Enforcer:
    """Enforcer persisting rules in the ``casbin_rule`` table of the given database."""
    adapter = casbin_sqlalchemy_adapter.Adapter(db_url_or_engine)
    return create_enforcer(adapter)


class CasbinRuleEngine:
    """``RuleEngine`` over a ``casbin.Enforcer``; every failure becomes ``SubsystemUnavailable``."""

    def __init__(self, enforcer: casbin.Enforcer) -> None:
        self._enforcer = enforcer
        self._lock = threading.RLock()

    def _call(self, op: str, fn: Callable[[], T]) -> T:
        try:
            with self._lock:
                return fn()
        except SubsystemUnavailable:
            raise
        except Exception as exc:
            logger.warning("Rule engine call failed op=%s error=%s", op, type(exc).__name__)
            raise SubsystemUnavailable("rule engine", f"{op} failed: {exc}") from exc

    def enforce(self, subject: str, resource: str, action: str, domain: str = GLOBAL_DOMAIN) -> bool:
        return bool(self._call("enforce", lambda: self._enforcer.enforce(subject, resource, action, domain)))

    def explicitly_denies(self, subject: str, resource: str, action: str, domain: str = GLOBAL_DOMAIN) -> bool:
        """True when the subject or any role it inherits holds a deny rule for exactly this permission."""

        def check() -> bool:
            candidates = [subject, *self._enforcer.get_implicit_roles_for_user(subject, domain)]
            return any(self._enforcer.has_policy(s, resource, action, domain, "deny") for s in candidates)

        return self._call("explicitly_denies", check)

    def add_policy(self, subject: str, resource: str, action: str, domain: str, effect: str) -> bool:
        return bool(self._call("add_policy", lambda: self._enforcer.add_policy(subject, resource, action, domain, effect)))

    def remove_policy(self, subject: str, resource: str, action: str, domain: str, effect: str) -> bool:
        return bool(
            self._call("remove_policy", lambda: self._enforcer.remove_policy(subject, resource, action, domain, effect))
        )

    def has_policy(self, subject: str, resource: str, action: str, domain: str, effect: str) -> bool:
        return bool(self._call("has_policy", lambda: self._enforcer.has_policy(subject, resource, action, domain, effect)))

    def add_role_for_subject(self, subject: str, role: str, domain: str = GLOBAL_DOMAIN) -> bool:
        return bool(self._call("add_role", lambda: self._enforcer.add_grouping_policy(subject, role, domain)))

    def remove_role_for_subject(self, subject: str, role: str, domain: str = GLOBAL_DOMAIN) -> bool:
        return bool(self._call("remove_role", lambda: self._enforcer.remove_grouping_policy(subject, role, domain)))

    def has_role_for_subject(self, subject: str, role: str, domain: str = GLOBAL_DOMAIN) -> bool:
        return bool(self._call("has_role", lambda: self._enforcer.has_grouping_policy(subject, role, domain)))

    def get_roles_for_subject(self, subject: str, domain: str = GLOBAL_DOMAIN) -> list[str]:
        return list(self._call("get_roles", lambda: self._enforcer.get_roles_for_user_in_domain(subject, domain)))

    def get_permissions_for_subject(self, subject: str, domain: str = GLOBAL_DOMAIN) -> list[PolicyRule]:
        rows = self._call("get_permissions", lambda: self._enforcer.get_filtered_policy(0, subject))
        return [PolicyRule(*row[:5]) for row in rows if len(row) >= 5 and row[3] == domain]

    def reload(self) -> None:
        """Re-read all rules from the adapter (after out-of-band changes)."""
        self._call("load_policy", self._enforcer.load_policy)
