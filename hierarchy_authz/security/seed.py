"""
Policy seed file: default roles and their permissions.

Expected shape:

    policy_seed:
      roles:
        member:
          description: Any authenticated pilot
          permissions: [sitemap:routes:view]
        admin:
          extends: member
          permissions: [system:permissions:manage]
      assignments:
        - role: admin
          subject: user:1

``extends`` copies the parent's permissions into the child (transitively);
cycles and unknown parents are rejected at load time. Applying a seed goes
through the administration service, so it is idempotent and audited.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .admin import SYSTEM_PERFORMER, PolicyAdminService
from .errors import ValidationError
from .permissions import PermissionID
from .subjects import Subject

logger = logging.getLogger(__name__)


class PolicySeedError(ValueError):
    """Raised when the seed file is invalid."""


class SeedRole(BaseModel):
    description: str | None = None
    extends: str | None = None
    permissions: list[str] = Field(default_factory=list)

    @field_validator("permissions")
    @classmethod
    def _well_formed(cls, value: list[str]) -> list[str]:
        for p in value:
            try:
                PermissionID.parse(p)
            except ValidationError as exc:
                raise ValueError(exc.message) from exc
        return value


class SeedAssignment(BaseModel):
    role: str
    subject: str


class PolicySeedModel(BaseModel):
    roles: dict[str, SeedRole] = Field(default_factory=dict)
    assignments: list[SeedAssignment] = Field(default_factory=list)


class PolicySeed:
    """Validated seed with role inheritance resolved."""

    def __init__(self, model: PolicySeedModel) -> None:
        self.model = model
        self.effective_permissions = _resolve_inheritance(model.roles)
        for a in model.assignments:
            if a.role not in model.roles:
                raise PolicySeedError(f"assignment references unknown role {a.role!r}")


def _resolve_inheritance(roles: dict[str, SeedRole]) -> dict[str, tuple[str, ...]]:
    resolved: dict[str, tuple[str, ...]] = {}

    def visit(name: str, path: tuple[str, ...]) -> tuple[str, ...]:
        if name in resolved:
            return resolved[name]
        if name in path:
            raise PolicySeedError(f"role inheritance cycle: {' -> '.join((*path, name))}")
        role = roles[name]
        inherited: tuple[str, ...] = ()
        if role.extends:
            if role.extends not in roles:
                raise PolicySeedError(f"role {name!r} extends unknown role {role.extends!r}")
            inherited = visit(role.extends, (*path, name))
        perms = tuple(dict.fromkeys((*inherited, *role.permissions)))
        resolved[name] = perms
        return perms

    for role_name in roles:
        visit(role_name, ())
    return resolved


def load_policy_seed(path: Path) -> PolicySeed:
    raw_text = path.read_text(encoding="utf-8")
    raw: dict[str, Any] = yaml.safe_load(raw_text) or {}

    if "policy_seed" not in raw:
        raise PolicySeedError(f"Missing top-level 'policy_seed' key in seed file: {path}")

    model = PolicySeedModel.model_validate(raw["policy_seed"] or {})
    return PolicySeed(model)


def apply_policy_seed(seed: PolicySeed, admin: PolicyAdminService) -> dict[str, int]:
    """Grant every role's permissions and make the listed assignments; returns created counts."""
    created = {"policies": 0, "assignments": 0}
    for role_name, permissions in seed.effective_permissions.items():
        for raw in permissions:
            pid = PermissionID.parse(raw)
            result = admin.grant_policy(
                SYSTEM_PERFORMER, "role", role_name, pid.object, pid.action, "allow", reason="policy seed"
            )
            created["policies"] += int(result.created)
    for a in seed.model.assignments:
        subject = Subject.parse(a.subject)
        result = admin.assign_role(SYSTEM_PERFORMER, a.role, subject.type.value, subject.id, reason="policy seed")
        created["assignments"] += int(result.created)
    logger.info("Policy seed applied policies=%d assignments=%d", created["policies"], created["assignments"])
    return created
