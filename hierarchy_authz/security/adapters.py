"""
Named permission checks for domain modules.

Each adapter is a thin wrapper that fixes the permission identifiers a
module cares about, so route code reads ``scheduler.require_task_management(h)``
instead of repeating permission strings.
"""

from __future__ import annotations

from collections.abc import Mapping

from hierarchy_authz.token.principal import Principal

from .guard import AuthorizationGuard

SUPER_ADMIN_PERMISSION = "system:admin:full"
PERMISSIONS_ADMIN_PERMISSION = "system:permissions:manage"

Headers = Mapping[str, str]


class ModuleAdapter:
    def __init__(self, guard: AuthorizationGuard) -> None:
        self.guard = guard

    def require_auth(self, headers: Headers) -> Principal:
        return self.guard.require_auth(headers)

    def require_permission(self, headers: Headers, permission: str) -> Principal:
        return self.guard.require_permission(headers, permission)

    def require_super_admin(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, SUPER_ADMIN_PERMISSION)


class SitemapAdapter(ModuleAdapter):
    def require_sitemap_view(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "sitemap:routes:view")

    def require_sitemap_admin(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "sitemap:admin:full")

    def require_sitemap_navigation(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "sitemap:navigation:customize")


class SchedulerAdapter(ModuleAdapter):
    TASK_WRITE = (
        "scheduler:tasks:create",
        "scheduler:tasks:update",
        "scheduler:tasks:delete",
        "scheduler:tasks:execute",
        "scheduler:tasks:control",
        "scheduler:system:manage",
    )

    def require_scheduler_management(self, headers: Headers) -> Principal:
        return self.guard.require_any_permission(headers, ("scheduler:tasks:read", *self.TASK_WRITE))

    def require_task_management(self, headers: Headers) -> Principal:
        return self.guard.require_any_permission(headers, self.TASK_WRITE)


class DiscordAdapter(ModuleAdapter):
    def require_discord_admin(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "discord:admin:full")

    def require_discord_management(self, headers: Headers) -> Principal:
        return self.guard.require_any_permission(
            headers, ("discord:admin:full", "discord:guilds:manage", "discord:sync:manage")
        )


class GroupsAdapter(ModuleAdapter):
    def require_group_management(self, headers: Headers) -> Principal:
        return self.guard.require_any_permission(headers, ("groups:management:full", "groups:memberships:manage"))

    def require_group_permissions(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "groups:permissions:manage")


class UsersAdapter(ModuleAdapter):
    def require_user_management(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "users:management:full")

    def require_profile_access(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "users:profiles:view")

    def require_user_access(self, headers: Headers, target_user_id: str) -> Principal:
        """Users may always read their own record; anyone else needs user management."""
        principal = self.guard.require_auth(headers)
        if principal.user_id == str(target_user_id):
            return principal
        return self.require_user_management(headers)


class CorporationAdapter(ModuleAdapter):
    def require_member_tracking_access(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "corporation:membertracking:view")


class SiteSettingsAdapter(ModuleAdapter):
    def require_site_settings_view(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "site_settings:settings:view")

    def require_site_settings_admin(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "site_settings:settings:manage")


class MapAdapter(ModuleAdapter):
    def require_map_management(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, "map:management:full")

    def require_signature_management(self, headers: Headers) -> Principal:
        return self.guard.require_any_permission(headers, ("map:signatures:manage", "map:management:full"))

    def require_wormhole_management(self, headers: Headers) -> Principal:
        return self.guard.require_any_permission(headers, ("map:wormholes:manage", "map:management:full"))


class PermissionsAdapter(ModuleAdapter):
    def require_permission_admin(self, headers: Headers) -> Principal:
        return self.guard.require_permission(headers, PERMISSIONS_ADMIN_PERMISSION)
