"""HTTP tests for the administrative API, the session routes and health."""

import pytest
from fastapi.testclient import TestClient

from hierarchy_authz.main import create_app
from hierarchy_authz.models.authz import CharacterHierarchy
from hierarchy_authz.security.errors import SubsystemUnavailable
from hierarchy_authz.security.factory import build_stack
from hierarchy_authz.settings import Settings

BASE = "/admin/permissions"


@pytest.fixture
def stack(tables, token_config, rule_engine):
    stack = build_stack(
        Settings(profile="development", expiry_sweep_seconds=0),
        tables,
        token_config=token_config,
        rule_engine=rule_engine,
        seed=True,
    )
    stack.admin.assign_role("system", "admin", "user", "1")
    return stack


@pytest.fixture
def client(stack):
    with TestClient(create_app(stack)) as c:
        yield c


@pytest.fixture
def as_admin(bearer):
    return bearer("1", 100)


@pytest.fixture
def as_member(bearer):
    return bearer("2", 200)


def test_health_is_public(client):
    assert client.get("/health").json() == {"status": "ok"}
    ready = client.get("/health/ready").json()
    assert ready["checks"]["database"] == "ok"
    assert ready["checks"]["circuit"] == "disabled"


def test_me_requires_credential(client):
    resp = client.get("/me")
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"


def test_me_returns_principal(client, bearer, make_token):
    resp = client.get("/me", headers=bearer("2", 200))
    assert resp.status_code == 200
    body = resp.json()
    assert body["principal"]["user_id"] == "2"
    assert body["principal"]["primary_character_id"] == 200
    assert body["degraded"] is False

    cookie_resp = client.get("/me", headers={"Cookie": f"auth_token={make_token('3')}"})
    assert cookie_resp.json()["principal"]["request_type"] == "cookie"


def test_me_permissions(client, stack, bearer):
    stack.admin.grant_policy("1", "character", "200", "map:signatures", "manage")
    resp = client.get(
        "/me/permissions",
        params=[("permission", "map:signatures:manage"), ("permission", "map:management:full")],
        headers=bearer("2", 200),
    )
    assert resp.json()["permissions"] == {"map:signatures:manage": True, "map:management:full": False}


def test_admin_api_requires_manage_permission(client, as_member):
    resp = client.get(f"{BASE}/policies", headers=as_member)
    assert resp.status_code == 403
    assert "system:permissions:manage" in resp.json()["detail"]
    assert client.get(f"{BASE}/policies").status_code == 401


def test_grant_list_and_revoke_policy(client, as_admin):
    body = {"subject_type": "corporation", "subject_id": "1000", "permission": "scheduler:tasks:read", "reason": "ops"}
    created = client.post(f"{BASE}/policies", json=body, headers=as_admin)
    assert created.status_code == 201
    policy = created.json()["policy"]
    assert (policy["resource"], policy["action"], policy["created_by"]) == ("scheduler:tasks", "read", "1")

    again = client.post(f"{BASE}/policies", json=body, headers=as_admin)
    assert again.status_code == 200
    assert again.json()["outcome"] == "exists"

    listing = client.get(f"{BASE}/policies", params={"subject_type": "corporation"}, headers=as_admin).json()
    assert listing["total"] == 1

    deleted = client.delete(f"{BASE}/policies/{policy['id']}", headers=as_admin).json()
    assert deleted["outcome"] == "revoked"
    missing = client.delete(f"{BASE}/policies/{policy['id']}", headers=as_admin).json()
    assert missing == {"success": False, "message": "Policy not found", "outcome": "not_found"}


def test_revoke_policy_by_identity(client, as_admin):
    body = {"subject_type": "alliance", "subject_id": "500", "resource": "map:signatures", "action": "manage", "effect": "deny"}
    client.post(f"{BASE}/policies", json=body, headers=as_admin)
    resp = client.post(f"{BASE}/policies/revoke", json=body, headers=as_admin)
    assert resp.json()["success"] is True


def test_invalid_bodies_are_400(client, as_admin):
    missing = client.post(f"{BASE}/policies", json={"subject_type": "user", "subject_id": "9"}, headers=as_admin)
    assert missing.status_code == 400
    assert missing.json()["success"] is False

    malformed = client.post(
        f"{BASE}/policies", json={"subject_type": "user", "subject_id": "9", "permission": "oops"}, headers=as_admin
    )
    assert malformed.status_code == 400

    bad_role = client.post(f"{BASE}/roles", json={"role_name": "no spaces", "subject_id": "9"}, headers=as_admin)
    assert bad_role.status_code == 400
    assert bad_role.json()["error"] == "ValidationError"


def test_roles_endpoints(client, as_admin):
    assigned = client.post(f"{BASE}/roles", json={"role_name": "member", "subject_id": "7"}, headers=as_admin)
    assert assigned.status_code == 201
    assignment_id = assigned.json()["assignment"]["id"]

    bulk = client.post(
        f"{BASE}/roles/bulk", json={"role_name": "member", "user_ids": ["7", "8", "bad:id"]}, headers=as_admin
    ).json()
    assert bulk["successful"] == ["8"]
    assert bulk["skipped"] == ["7"]
    assert bulk["failed"][0]["item"] == "bad:id"

    assert client.get(f"{BASE}/users/7/roles", headers=as_admin).json()["roles"] == ["member"]
    listing = client.get(f"{BASE}/roles", params={"role_name": "member"}, headers=as_admin).json()
    assert listing["total"] == 2

    policies = client.get(f"{BASE}/roles/member/policies", headers=as_admin).json()["policies"]
    assert {(p["resource"], p["action"]) for p in policies} >= {("sitemap:routes", "view")}

    revoked = client.delete(f"{BASE}/roles/{assignment_id}", headers=as_admin).json()
    assert revoked["outcome"] == "revoked"
    revoked = client.post(f"{BASE}/roles/revoke", json={"role_name": "member", "subject_id": "8"}, headers=as_admin)
    assert revoked.json()["success"] is True


def test_hierarchy_sync_drives_checks(client, as_admin):
    sync = client.put(
        f"{BASE}/users/2/hierarchy",
        json={
            "characters": [
                {"character_id": 200, "character_name": "Pilot", "corporation_id": 1000, "alliance_id": 500, "is_primary": True},
                {"character_id": 201, "character_name": "Alt", "corporation_id": 1000, "is_primary": True},
            ]
        },
        headers=as_admin,
    ).json()
    assert sync["synced"] == [200]
    assert sync["failed"] == [{"item": "201", "error": "more than one primary character"}]

    hierarchy = client.get(f"{BASE}/users/2/hierarchy", headers=as_admin).json()["hierarchy"]
    assert hierarchy["corporation_ids"] == [1000]
    assert hierarchy["alliance_ids"] == [500]

    client.post(
        f"{BASE}/policies",
        json={"subject_type": "alliance", "subject_id": "500", "permission": "corporation:membertracking:view"},
        headers=as_admin,
    )
    check = client.post(
        f"{BASE}/check", json={"user_id": "2", "permission": "corporation:membertracking:view"}, headers=as_admin
    ).json()
    assert check["decision"]["allowed"] is True
    assert check["decision"]["granted_by"] == "alliance:500"

    batch = client.post(
        f"{BASE}/check/batch",
        json={"user_id": "2", "permissions": ["corporation:membertracking:view", "system:admin:full"]},
        headers=as_admin,
    ).json()
    assert {p: d["allowed"] for p, d in batch["decisions"].items()} == {
        "corporation:membertracking:view": True,
        "system:admin:full": False,
    }

    effective = client.get(f"{BASE}/users/2/effective", headers=as_admin).json()
    assert "corporation:membertracking:view" in effective["allowed"]


def test_audit_records_performer(client, as_admin):
    client.post(f"{BASE}/roles", json={"role_name": "member", "subject_id": "7"}, headers=as_admin)
    entries = client.get(f"{BASE}/audit", params={"operation": "grant", "performed_by": "1"}, headers=as_admin).json()
    assert entries["total"] == 1
    assert entries["entries"][0]["role_name"] == "member"


def test_cache_endpoints(client, as_admin):
    warm = client.post(
        f"{BASE}/cache/warmup", json={"user_id": "2", "permissions": ["a:b:c", "d:e:f"]}, headers=as_admin
    ).json()
    assert warm["warmed"] == 2
    stats = client.get(f"{BASE}/cache/stats", headers=as_admin).json()["stats"]
    assert stats["decision_entries"] >= 2

    cleared = client.post(f"{BASE}/cache/invalidate", headers=as_admin).json()
    assert cleared["success"] is True
    assert cleared["removed"] >= 2


def test_maintenance_expire(client, as_admin):
    resp = client.post(f"{BASE}/maintenance/expire", headers=as_admin).json()
    assert resp["expired"] == {"policies": 0, "roles": 0}


def test_engine_outage_degrades_to_auth_only(client, stack, bearer, monkeypatch):
    def down(*args, **kwargs):
        raise SubsystemUnavailable("rule engine", "connection refused")

    stack.cache.invalidate_all()
    monkeypatch.setattr(stack.evaluator, "evaluate", down)
    resp = client.get(f"{BASE}/cache/stats", headers=bearer("2", 200))
    assert resp.status_code == 200


def test_corrupt_hierarchy_keeps_admin_api_closed(client, stack, bearer):
    with stack.session_factory() as db:
        db.add_all(
            [
                CharacterHierarchy(user_id="2", character_id=200, character_name="Main", corporation_id=2000, is_primary=True),
                CharacterHierarchy(user_id="2", character_id=201, character_name="Twin", corporation_id=2000, is_primary=True),
            ]
        )
        db.commit()
    stack.cache.invalidate_all()

    resp = client.get(f"{BASE}/cache/stats", headers=bearer("2", 200))
    assert resp.status_code == 500
    assert "primary characters" in resp.json()["detail"]
