from __future__ import annotations

from collections.abc import Callable

from .permissions import PermissionID


def require_auth() -> Callable:
    """
    Decorator-style API.

    Implementation detail:
    - This decorator does NOT perform auth itself.
    - It attaches metadata that the global ``enforce_authz`` dependency reads
      after routing (during dependency resolution).
    """

    def decorator(fn: Callable) -> Callable:
        setattr(fn, "__authz_auth_required__", True)
        return fn

    return decorator


def require_permission(permission: str) -> Callable:
    """Attach a required permission; stacking several means all are required."""
    return require_all_permissions(permission)


def require_all_permissions(*permissions: str) -> Callable:
    for p in permissions:
        PermissionID.parse(p)

    def decorator(fn: Callable) -> Callable:
        existing = tuple(getattr(fn, "__authz_all_permissions__", ()))
        setattr(fn, "__authz_all_permissions__", existing + tuple(p for p in permissions if p not in existing))
        setattr(fn, "__authz_auth_required__", True)
        return fn

    return decorator


def require_any_permission(*permissions: str) -> Callable:
    """Attach a group of permissions of which at least one is required."""
    for p in permissions:
        PermissionID.parse(p)

    def decorator(fn: Callable) -> Callable:
        setattr(fn, "__authz_any_permissions__", tuple(permissions))
        setattr(fn, "__authz_auth_required__", True)
        return fn

    return decorator
