from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from hierarchy_authz.security.decorators import require_auth
from hierarchy_authz.security.dependencies import get_principal, get_stack
from hierarchy_authz.security.factory import AuthzStack
from hierarchy_authz.token.principal import Principal

router = APIRouter(prefix="/me", tags=["session"])


@router.get("")
@require_auth()
def me(request: Request, principal: Principal = Depends(get_principal)) -> dict:
    ctx = request.state.authz
    return {"principal": principal.to_dict(), "degraded": ctx.degraded}


@router.get("/hierarchy")
@require_auth()
def my_hierarchy(principal: Principal = Depends(get_principal), stack: AuthzStack = Depends(get_stack)) -> dict:
    return {"hierarchy": stack.resolver.resolve(principal.user_id).to_dict()}


@router.get("/permissions")
@require_auth()
def my_permissions(
    permission: list[str] = Query(...),
    principal: Principal = Depends(get_principal),
    stack: AuthzStack = Depends(get_stack),
) -> dict:
    # Checks run against the caller's own credential so the token character counts.
    decisions = stack.evaluator.batch_check(principal, permission)
    return {"permissions": {p: d.allowed for p, d in decisions.items()}}
