from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status

from hierarchy_authz.schemas.authz import (
    AuditEntryOut,
    BatchPermissionCheck,
    BulkRoleAssign,
    CacheWarmup,
    CharacterOut,
    DecisionOut,
    HierarchyOut,
    HierarchySync,
    ItemFailureOut,
    PermissionCheck,
    PolicyCreate,
    PolicyOut,
    PolicyRevoke,
    PolicyRuleOut,
    RoleAssign,
    RoleAssignmentOut,
    RoleRevoke,
)
from hierarchy_authz.security.adapters import PERMISSIONS_ADMIN_PERMISSION
from hierarchy_authz.security.audit import AuditFilter
from hierarchy_authz.security.decorators import require_permission
from hierarchy_authz.security.dependencies import get_principal, get_stack
from hierarchy_authz.security.evaluator import Decision
from hierarchy_authz.security.factory import AuthzStack
from hierarchy_authz.security.hierarchy import CharacterRecord, HierarchyContext
from hierarchy_authz.token.principal import Principal

router = APIRouter(prefix="/admin/permissions", tags=["permissions_admin"])


def _decision_out(decision: Decision) -> dict:
    return DecisionOut(
        allowed=decision.allowed,
        permission=decision.permission,
        reason=decision.reason,
        granted_by=decision.granted_by,
        denied_by=decision.denied_by,
        cached=decision.cached,
    ).model_dump()


def _hierarchy_out(ctx: HierarchyContext) -> dict:
    return HierarchyOut(
        user_id=ctx.user_id,
        primary_character_id=ctx.primary_character_id,
        characters=[CharacterOut.model_validate(c) for c in ctx.characters],
        corporation_ids=list(ctx.corporation_ids),
        alliance_ids=list(ctx.alliance_ids),
    ).model_dump()


# ---- policies ------------------------------------------------------------------


@router.post("/policies", status_code=status.HTTP_201_CREATED)
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def grant_policy(
    body: PolicyCreate,
    response: Response,
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    result = stack.admin.grant_policy(
        principal.user_id,
        body.subject_type,
        body.subject_id,
        body.resource,
        body.action,
        effect=body.effect,
        domain=body.domain,
        expires_at=body.expires_at,
        reason=body.reason,
    )
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return {
        "success": True,
        "message": "Policy granted" if result.created else "Policy already exists",
        "outcome": result.outcome,
        "policy": PolicyOut.model_validate(result.policy).model_dump(),
    }


@router.get("/policies")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def list_policies(
    subject_type: str | None = None,
    subject_id: str | None = None,
    resource: str | None = None,
    include_inactive: bool = False,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    rows, total = stack.admin.list_policies(subject_type, subject_id, resource, include_inactive, limit, offset)
    return {
        "success": True,
        "total": total,
        "limit": limit,
        "offset": offset,
        "policies": [PolicyOut.model_validate(r).model_dump() for r in rows],
    }


@router.post("/policies/revoke")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def revoke_policy(
    body: PolicyRevoke,
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    result = stack.admin.revoke_policy(
        principal.user_id,
        body.subject_type,
        body.subject_id,
        body.resource,
        body.action,
        effect=body.effect,
        domain=body.domain,
        reason=body.reason,
    )
    return {
        "success": result.revoked,
        "message": "Policy revoked" if result.revoked else "Policy not found",
        "outcome": result.outcome,
    }


@router.delete("/policies/{policy_id}")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def revoke_policy_by_id(
    policy_id: int,
    reason: str | None = None,
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    result = stack.admin.revoke_policy_by_id(principal.user_id, policy_id, reason)
    return {
        "success": result.revoked,
        "message": "Policy revoked" if result.revoked else "Policy not found",
        "outcome": result.outcome,
    }


# ---- roles ---------------------------------------------------------------------


@router.post("/roles", status_code=status.HTTP_201_CREATED)
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def assign_role(
    body: RoleAssign,
    response: Response,
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    result = stack.admin.assign_role(
        principal.user_id,
        body.role_name,
        body.subject_type,
        body.subject_id,
        domain=body.domain,
        expires_at=body.expires_at,
        reason=body.reason,
    )
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return {
        "success": True,
        "message": "Role assigned" if result.created else "Role already assigned",
        "outcome": result.outcome,
        "assignment": RoleAssignmentOut.model_validate(result.assignment).model_dump(),
    }


@router.get("/roles")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def list_roles(
    role_name: str | None = None,
    subject_type: str | None = None,
    subject_id: str | None = None,
    include_inactive: bool = False,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    rows, total = stack.admin.list_roles(role_name, subject_type, subject_id, include_inactive, limit, offset)
    return {
        "success": True,
        "total": total,
        "limit": limit,
        "offset": offset,
        "assignments": [RoleAssignmentOut.model_validate(r).model_dump() for r in rows],
    }


@router.post("/roles/revoke")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def revoke_role(
    body: RoleRevoke,
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    result = stack.admin.revoke_role(
        principal.user_id, body.role_name, body.subject_type, body.subject_id, domain=body.domain, reason=body.reason
    )
    return {
        "success": result.revoked,
        "message": "Role revoked" if result.revoked else "Role assignment not found",
        "outcome": result.outcome,
    }


@router.delete("/roles/{assignment_id}")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def revoke_role_by_id(
    assignment_id: int,
    reason: str | None = None,
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    result = stack.admin.revoke_role_by_id(principal.user_id, assignment_id, reason)
    return {
        "success": result.revoked,
        "message": "Role revoked" if result.revoked else "Role assignment not found",
        "outcome": result.outcome,
    }


@router.post("/roles/bulk")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def bulk_assign_role(
    body: BulkRoleAssign,
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    result = stack.admin.bulk_assign_role(
        principal.user_id,
        body.role_name,
        body.user_ids,
        domain=body.domain,
        expires_at=body.expires_at,
        reason=body.reason,
    )
    return {
        "success": result.failure_count == 0,
        "message": f"Assigned {result.success_count}, skipped {len(result.skipped)}, failed {result.failure_count}",
        "successful": result.successful,
        "skipped": result.skipped,
        "failed": [ItemFailureOut.model_validate(f).model_dump() for f in result.failed],
    }


@router.get("/roles/{role_name}/policies")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def role_policies(role_name: str, stack: AuthzStack = Depends(get_stack)) -> dict:
    rules = stack.admin.get_role_policies(role_name)
    return {"success": True, "role_name": role_name, "policies": [PolicyRuleOut.model_validate(r).model_dump() for r in rules]}


# ---- users ---------------------------------------------------------------------


@router.get("/users/{user_id}/roles")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def user_roles(user_id: str, stack: AuthzStack = Depends(get_stack)) -> dict:
    return {"success": True, "user_id": user_id, "roles": stack.admin.get_user_roles(user_id)}


@router.get("/users/{user_id}/effective")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def effective_permissions(user_id: str, stack: AuthzStack = Depends(get_stack)) -> dict:
    effective = stack.admin.get_effective_permissions(user_id)
    return {
        "success": True,
        "user_id": user_id,
        "allowed": sorted(effective.allowed),
        "denied": sorted(effective.denied),
        "subjects": [
            {
                "subject": s.subject,
                "roles": list(s.roles),
                "policies": [PolicyRuleOut.model_validate(p).model_dump() for p in s.policies],
            }
            for s in effective.subjects
        ],
    }


@router.get("/users/{user_id}/hierarchy")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def user_hierarchy(user_id: str, stack: AuthzStack = Depends(get_stack)) -> dict:
    return {"success": True, "hierarchy": _hierarchy_out(stack.admin.get_user_hierarchy(user_id))}


@router.put("/users/{user_id}/hierarchy")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def sync_hierarchy(
    user_id: str,
    body: HierarchySync,
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    records = [
        CharacterRecord(
            character_id=c.character_id,
            character_name=c.character_name,
            corporation_id=c.corporation_id,
            alliance_id=c.alliance_id,
            is_primary=c.is_primary,
        )
        for c in body.characters
    ]
    result = stack.admin.sync_hierarchy(principal.user_id, user_id, records)
    return {
        "success": not result.failed,
        "message": f"Synced {len(result.synced)} characters, {len(result.failed)} rejected",
        "synced": list(result.synced),
        "failed": [ItemFailureOut.model_validate(f).model_dump() for f in result.failed],
        "previous_owners": list(result.previous_owners),
    }


# ---- checks --------------------------------------------------------------------


@router.post("/check")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def check_permission(body: PermissionCheck, stack: AuthzStack = Depends(get_stack)) -> dict:
    decision = stack.admin.check_permission(body.user_id, body.permission)
    return {"success": True, "user_id": body.user_id, "decision": _decision_out(decision)}


@router.post("/check/batch")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def batch_check(body: BatchPermissionCheck, stack: AuthzStack = Depends(get_stack)) -> dict:
    decisions = stack.admin.batch_check_permissions(body.user_id, body.permissions)
    return {
        "success": True,
        "user_id": body.user_id,
        "decisions": {p: _decision_out(d) for p, d in decisions.items()},
    }


# ---- audit ---------------------------------------------------------------------


@router.get("/audit")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def query_audit(
    operation: str | None = None,
    target_type: str | None = None,
    subject_type: str | None = None,
    subject_id: str | None = None,
    performed_by: str | None = None,
    result: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    filters = AuditFilter(
        operation=operation,
        target_type=target_type,
        subject_type=subject_type,
        subject_id=subject_id,
        performed_by=performed_by,
        result=result,
        since=since,
        until=until,
    )
    rows, total = stack.admin.query_audit(filters, limit, offset)
    return {
        "success": True,
        "total": total,
        "limit": limit,
        "offset": offset,
        "entries": [AuditEntryOut.model_validate(r).model_dump() for r in rows],
    }


# ---- cache and maintenance -------------------------------------------------------


@router.get("/cache/stats")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def cache_stats(stack: AuthzStack = Depends(get_stack)) -> dict:
    return {"success": True, "stats": stack.cache.stats()}


@router.post("/cache/invalidate")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def invalidate_cache(user_id: str | None = None, stack: AuthzStack = Depends(get_stack)) -> dict:
    if user_id:
        removed = stack.cache.invalidate_user(user_id)
        message = f"Cache cleared for user {user_id}"
    else:
        removed = stack.cache.invalidate_all()
        message = "Cache cleared"
    return {"success": True, "message": message, "removed": removed}


@router.post("/cache/warmup")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def warmup_cache(body: CacheWarmup, stack: AuthzStack = Depends(get_stack)) -> dict:
    warmed = stack.evaluator.warmup(body.user_id, body.permissions)
    return {"success": True, "user_id": body.user_id, "warmed": warmed}


@router.post("/maintenance/expire")
@require_permission(PERMISSIONS_ADMIN_PERMISSION)
def expire_grants(stack: AuthzStack = Depends(get_stack)) -> dict:
    return {"success": True, "expired": stack.admin.expire_stale_grants()}
