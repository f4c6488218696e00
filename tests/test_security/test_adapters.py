"""Tests for the domain adapters."""

import pytest

from hierarchy_authz.security.adapters import (
    DiscordAdapter,
    GroupsAdapter,
    MapAdapter,
    ModuleAdapter,
    SchedulerAdapter,
    SitemapAdapter,
    UsersAdapter,
)
from hierarchy_authz.security.errors import AuthorizationError
from hierarchy_authz.security.guard import AuthorizationGuard
from hierarchy_authz.security.hierarchy import CharacterRecord
from hierarchy_authz.token.validator import TokenValidator


@pytest.fixture
def guard(token_config, evaluator):
    return AuthorizationGuard(TokenValidator(token_config), evaluator)


def test_sitemap_view(guard, admin, bearer):
    admin.grant_policy("admin", "user", "u1", "sitemap:routes", "view")
    sitemap = SitemapAdapter(guard)
    assert sitemap.require_sitemap_view(bearer("u1")).user_id == "u1"
    with pytest.raises(AuthorizationError):
        sitemap.require_sitemap_admin(bearer("u1"))


def test_scheduler_read_only_user(guard, admin, bearer):
    admin.grant_policy("admin", "user", "u1", "scheduler:tasks", "read")
    scheduler = SchedulerAdapter(guard)
    assert scheduler.require_scheduler_management(bearer("u1")).user_id == "u1"
    with pytest.raises(AuthorizationError):
        scheduler.require_task_management(bearer("u1"))


def test_scheduler_any_write_permission(guard, admin, bearer):
    admin.grant_policy("admin", "user", "u1", "scheduler:tasks", "execute")
    assert SchedulerAdapter(guard).require_task_management(bearer("u1")).user_id == "u1"


def test_map_management_implies_signatures(guard, admin, bearer):
    admin.grant_policy("admin", "corporation", "1000", "map:management", "full")
    admin.sync_hierarchy("admin", "u1", [CharacterRecord(100, "Main", 1000, None, True)])
    map_adapter = MapAdapter(guard)
    assert map_adapter.require_signature_management(bearer("u1")).user_id == "u1"
    assert map_adapter.require_wormhole_management(bearer("u1")).user_id == "u1"


def test_user_access_self_or_manager(guard, admin, bearer):
    users = UsersAdapter(guard)
    assert users.require_user_access(bearer("u1"), "u1").user_id == "u1"
    with pytest.raises(AuthorizationError):
        users.require_user_access(bearer("u1"), "u2")
    admin.grant_policy("admin", "user", "u1", "users:management", "full")
    assert users.require_user_access(bearer("u1"), "u2").user_id == "u1"


def test_super_admin_and_role_based_adapters(guard, admin, bearer):
    admin.grant_policy("admin", "role", "super_admin", "system:admin", "full")
    admin.grant_policy("admin", "role", "super_admin", "discord:admin", "full")
    admin.assign_role("admin", "super_admin", "user", "root")
    assert ModuleAdapter(guard).require_super_admin(bearer("root")).user_id == "root"
    assert DiscordAdapter(guard).require_discord_management(bearer("root")).user_id == "root"
    with pytest.raises(AuthorizationError):
        GroupsAdapter(guard).require_group_permissions(bearer("root"))
