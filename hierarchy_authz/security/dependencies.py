from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request, status

from hierarchy_authz.token.principal import Principal

from .context import RequestAuthContext
from .errors import AuthenticationError, AuthzError
from .factory import AuthzStack
from .guard import AuthorizationGuard, GuardResult
from .permissions import PermissionID


def get_stack(request: Request) -> AuthzStack:
    stack = getattr(request.app.state, "authz", None)
    if stack is None:
        raise RuntimeError("Authorization stack not loaded. Did app startup run?")
    return stack


def get_guard(stack: AuthzStack = Depends(get_stack)) -> AuthorizationGuard:
    return stack.guard


def _http_error(exc: AuthzError) -> HTTPException:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return HTTPException(status_code=exc.status_code, detail=exc.message, headers=headers)


def _attach(request: Request, result: GuardResult) -> Principal:
    request.state.authz = RequestAuthContext(
        principal=result.principal, granted=frozenset(result.granted), degraded=result.degraded
    )
    return result.principal


def get_principal(request: Request) -> Principal:
    ctx = getattr(request.state, "authz", None)
    if ctx is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return ctx.principal


def enforce_authz(request: Request, guard: AuthorizationGuard = Depends(get_guard)) -> None:
    """
    Global dependency: enforce decorator metadata on the matched endpoint.

    Runs after routing, so ``request.scope["endpoint"]`` is the route
    function. Endpoints without metadata are left alone.
    """

    endpoint = request.scope.get("endpoint")
    if endpoint is None:
        return
    auth_required = bool(getattr(endpoint, "__authz_auth_required__", False))
    all_perms = tuple(getattr(endpoint, "__authz_all_permissions__", ()))
    any_perms = tuple(getattr(endpoint, "__authz_any_permissions__", ()))
    if not (auth_required or all_perms or any_perms):
        return

    try:
        result = guard.check_all_permissions(request.headers, all_perms)
        if any_perms and not result.degraded:
            any_result = guard.check_any_permission(request.headers, any_perms)
            result = GuardResult(
                principal=result.principal,
                granted=result.granted + any_result.granted,
                degraded=any_result.degraded,
            )
    except AuthzError as exc:
        raise _http_error(exc) from exc
    _attach(request, result)


def require_auth() -> Callable[..., Principal]:
    def dependency(request: Request, guard: AuthorizationGuard = Depends(get_guard)) -> Principal:
        try:
            principal = guard.require_auth(request.headers)
        except AuthzError as exc:
            raise _http_error(exc) from exc
        return _attach(request, GuardResult(principal))

    return dependency


def require_permission(permission: str) -> Callable[..., Principal]:
    return require_all_permissions(permission)


def require_all_permissions(*permissions: str) -> Callable[..., Principal]:
    for p in permissions:
        PermissionID.parse(p)

    def dependency(request: Request, guard: AuthorizationGuard = Depends(get_guard)) -> Principal:
        try:
            result = guard.check_all_permissions(request.headers, permissions)
        except AuthzError as exc:
            raise _http_error(exc) from exc
        return _attach(request, result)

    return dependency


def require_any_permission(*permissions: str) -> Callable[..., Principal]:
    for p in permissions:
        PermissionID.parse(p)

    def dependency(request: Request, guard: AuthorizationGuard = Depends(get_guard)) -> Principal:
        try:
            result = guard.check_any_permission(request.headers, permissions)
        except AuthzError as exc:
            raise _http_error(exc) from exc
        return _attach(request, result)

    return dependency
