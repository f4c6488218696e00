from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hierarchy_authz.security.errors import ValidationError
from hierarchy_authz.security.permissions import PermissionID

SubjectTypeIn = Literal["user", "character", "corporation", "alliance", "role"]
EffectIn = Literal["allow", "deny"]


class _PermissionTarget(BaseModel):
    """Either ``permission`` ("res:cat:act") or ``resource`` ("res:cat") plus ``action``."""

    permission: str | None = None
    resource: str | None = None
    action: str | None = None

    @model_validator(mode="after")
    def _split_permission(self):
        if self.permission:
            try:
                pid = PermissionID.parse(self.permission)
            except ValidationError as exc:
                raise ValueError(exc.message) from exc
            self.resource, self.action = pid.object, pid.action
        elif not (self.resource and self.action):
            raise ValueError("Provide 'permission' or both 'resource' and 'action'")
        return self


class PolicyCreate(_PermissionTarget):
    subject_type: SubjectTypeIn
    subject_id: str = Field(min_length=1, max_length=100)
    effect: EffectIn = "allow"
    domain: str = "global"
    expires_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)


class PolicyRevoke(_PermissionTarget):
    subject_type: SubjectTypeIn
    subject_id: str = Field(min_length=1, max_length=100)
    effect: EffectIn = "allow"
    domain: str = "global"
    reason: str | None = Field(default=None, max_length=500)


class PolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subject_type: str
    subject_id: str
    resource: str
    action: str
    domain: str
    effect: str
    reason: str | None
    created_by: str
    created_at: datetime
    expires_at: datetime | None
    is_active: bool
    revoked_by: str | None = None
    revoked_at: datetime | None = None


class PolicyRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subject: str
    resource: str
    action: str
    domain: str
    effect: str


class RoleAssign(BaseModel):
    role_name: str = Field(min_length=1, max_length=100)
    subject_type: SubjectTypeIn = "user"
    subject_id: str = Field(min_length=1, max_length=100)
    domain: str = "global"
    expires_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)


class RoleRevoke(BaseModel):
    role_name: str = Field(min_length=1, max_length=100)
    subject_type: SubjectTypeIn = "user"
    subject_id: str = Field(min_length=1, max_length=100)
    domain: str = "global"
    reason: str | None = Field(default=None, max_length=500)


class BulkRoleAssign(BaseModel):
    role_name: str = Field(min_length=1, max_length=100)
    user_ids: list[str] = Field(min_length=1, max_length=500)
    domain: str = "global"
    expires_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)


class RoleAssignmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    role_name: str
    subject_type: str
    subject_id: str
    domain: str
    reason: str | None
    granted_by: str
    granted_at: datetime
    expires_at: datetime | None
    is_active: bool
    revoked_by: str | None = None
    revoked_at: datetime | None = None


class ItemFailureOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item: str
    error: str


class PermissionCheck(BaseModel):
    user_id: str = Field(min_length=1)
    permission: str


class BatchPermissionCheck(BaseModel):
    user_id: str = Field(min_length=1)
    permissions: list[str] = Field(min_length=1, max_length=100)


class DecisionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    allowed: bool
    permission: str
    reason: str
    granted_by: str | None = None
    denied_by: str | None = None
    cached: bool = False


class CharacterIn(BaseModel):
    character_id: int
    character_name: str = Field(min_length=1, max_length=100)
    corporation_id: int
    alliance_id: int | None = None
    is_primary: bool = False


class HierarchySync(BaseModel):
    characters: list[CharacterIn] = Field(default_factory=list, max_length=1000)


class CharacterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    character_id: int
    character_name: str
    corporation_id: int
    alliance_id: int | None
    is_primary: bool


class HierarchyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    primary_character_id: int | None
    characters: list[CharacterOut]
    corporation_ids: list[int]
    alliance_ids: list[int]


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    operation: str
    target_type: str
    subject_type: str | None
    subject_id: str | None
    role_name: str | None
    resource: str | None
    action: str | None
    effect: str | None
    result: str
    reason: str | None
    error: str | None
    performed_by: str
    timestamp: datetime


class CacheWarmup(BaseModel):
    user_id: str = Field(min_length=1)
    permissions: list[str] = Field(min_length=1, max_length=200)
