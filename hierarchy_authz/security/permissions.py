"""Permission identifiers, effects and the fixed authorization domain."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .errors import ValidationError

GLOBAL_DOMAIN = "global"

_SEGMENT = r"[A-Za-z0-9_.\-]+"
_PERMISSION_RE = re.compile(rf"^({_SEGMENT}):({_SEGMENT}):({_SEGMENT})$")
_RESOURCE_RE = re.compile(rf"^{_SEGMENT}:{_SEGMENT}$")
_ACTION_RE = re.compile(rf"^{_SEGMENT}$")


class Effect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class PermissionID:
    """
    A parsed ``<resource>:<category>:<action>`` identifier.

    The rule engine sees ``<resource>:<category>`` as the object and
    ``<action>`` as the action, so ``scheduler:tasks:read`` is stored as
    object ``scheduler:tasks`` / action ``read``.
    """

    resource: str
    category: str
    action: str

    @property
    def object(self) -> str:
        return f"{self.resource}:{self.category}"

    def __str__(self) -> str:
        return f"{self.resource}:{self.category}:{self.action}"

    @classmethod
    def parse(cls, raw: str) -> PermissionID:
        match = _PERMISSION_RE.match(raw.strip()) if isinstance(raw, str) else None
        if match is None:
            raise ValidationError(f"Malformed permission identifier {raw!r}; expected '<resource>:<category>:<action>'")
        return cls(*match.groups())

    @classmethod
    def from_parts(cls, resource: str, action: str) -> PermissionID:
        """Build from the engine-level (object, action) pair."""
        return cls.parse(f"{resource}:{action}")


def validate_resource(resource: str) -> str:
    if not _RESOURCE_RE.match(resource):
        raise ValidationError(f"Malformed resource {resource!r}; expected '<resource>:<category>'")
    return resource


def validate_action(action: str) -> str:
    if not _ACTION_RE.match(action):
        raise ValidationError(f"Malformed action {action!r}")
    return action


def parse_effect(raw: str | Effect) -> Effect:
    try:
        return Effect(raw)
    except ValueError as exc:
        raise ValidationError(f"Effect must be 'allow' or 'deny', got {raw!r}") from exc
