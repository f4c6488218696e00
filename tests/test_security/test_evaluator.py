"""Tests for permission evaluation across the subject hierarchy."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from hierarchy_authz.security.audit import AuditLog
from hierarchy_authz.security.cache import AuthzCache
from hierarchy_authz.security.errors import SubsystemUnavailable
from hierarchy_authz.security.evaluator import PermissionEvaluator
from hierarchy_authz.security.hierarchy import CharacterRecord
from hierarchy_authz.token.principal import Principal

MAIN = CharacterRecord(100, "Main", corporation_id=1000, alliance_id=500, is_primary=True)
ALT = CharacterRecord(101, "Alt", corporation_id=2000, alliance_id=None)


@pytest.fixture
def user(admin):
    admin.sync_hierarchy("admin", "u1", [MAIN, ALT])
    return Principal(user_id="u1", primary_character_id=100, request_type="bearer")


def test_corporation_grant_reaches_user(user, evaluator, rule_engine):
    rule_engine.add_policy("corporation:1000", "scheduler:tasks", "read", "global", "allow")
    decision = evaluator.check(user, "scheduler:tasks:read")
    assert decision.allowed
    assert decision.granted_by == "corporation:1000"
    assert decision.reason == "granted via corporation:1000"


def test_alliance_and_alt_character_grants(user, evaluator, rule_engine):
    rule_engine.add_policy("alliance:500", "map:signatures", "manage", "global", "allow")
    rule_engine.add_policy("character:101", "map:wormholes", "manage", "global", "allow")
    assert evaluator.check(user, "map:signatures:manage").granted_by == "alliance:500"
    assert evaluator.check(user, "map:wormholes:manage").granted_by == "character:101"


def test_no_policy_denies(user, evaluator):
    decision = evaluator.check(user, "secret:ops:execute")
    assert not decision.allowed
    assert decision.granted_by is None
    assert decision.reason == "no matching policy"


def test_higher_priority_grant_wins_over_lower_deny(user, evaluator, rule_engine):
    rule_engine.add_policy("user:u1", "groups:management", "full", "global", "allow")
    rule_engine.add_policy("corporation:1000", "groups:management", "full", "global", "deny")
    assert evaluator.check(user, "groups:management:full").granted_by == "user:u1"


def test_character_deny_beats_corporation_allow(user, evaluator, rule_engine):
    rule_engine.add_policy("character:100", "groups:management", "full", "global", "deny")
    rule_engine.add_policy("corporation:1000", "groups:management", "full", "global", "allow")
    decision = evaluator.check(user, "groups:management:full")
    assert not decision.allowed
    assert decision.denied_by == "character:100"


def test_role_assigned_to_corporation(user, evaluator, admin):
    admin.grant_policy("admin", "role", "member", "sitemap:routes", "view")
    admin.assign_role("admin", "member", "corporation", "1000")
    assert evaluator.check(user, "sitemap:routes:view").granted_by == "corporation:1000"


def test_empty_hierarchy_uses_token_character(evaluator, rule_engine):
    rule_engine.add_policy("character:777", "a:b", "c", "global", "allow")
    principal = Principal(user_id="new-user", primary_character_id=777, request_type="bearer")
    subjects = [str(s) for s in evaluator.subjects_for(principal)]
    assert subjects == ["user:new-user", "character:777"]
    assert evaluator.check(principal, "a:b:c").allowed


def test_decision_is_cached(user, evaluator, rule_engine, cache):
    rule_engine.add_policy("user:u1", "a:b", "c", "global", "allow")
    assert not evaluator.check(user, "a:b:c").cached
    rule_engine.remove_policy("user:u1", "a:b", "c", "global", "allow")
    second = evaluator.check(user, "a:b:c")
    assert second.allowed and second.cached
    cache.invalidate_decisions()
    assert not evaluator.check(user, "a:b:c").allowed


def test_cache_outage_falls_back_to_direct_evaluation(rule_engine, resolver):
    store = MagicMock()
    store.get.side_effect = SubsystemUnavailable("cache", "down")
    store.set.side_effect = SubsystemUnavailable("cache", "down")
    evaluator = PermissionEvaluator(rule_engine, resolver, AuthzCache(store))
    rule_engine.add_policy("user:u9", "a:b", "c", "global", "allow")
    assert evaluator.check(Principal.internal("u9"), "a:b:c").allowed


def test_engine_outage_propagates(resolver, cache):
    engine = MagicMock()
    engine.enforce.side_effect = SubsystemUnavailable("rule engine", "down")
    evaluator = PermissionEvaluator(engine, resolver, cache)
    with pytest.raises(SubsystemUnavailable):
        evaluator.check(Principal.internal("u1"), "a:b:c")


def test_batch_check_and_warmup(user, evaluator, rule_engine, cache):
    rule_engine.add_policy("user:u1", "a:b", "c", "global", "allow")
    results = evaluator.batch_check(user, ["a:b:c", "a:b:d"])
    assert {p: d.allowed for p, d in results.items()} == {"a:b:c": True, "a:b:d": False}

    cache.invalidate_decisions()
    assert evaluator.warmup("u1", ["a:b:c", "a:b:d"]) == 2
    assert cache.stats()["decision_entries"] == 2


def test_decisions_audited_when_enabled(rule_engine, resolver):
    sink = MagicMock()
    evaluator = PermissionEvaluator(rule_engine, resolver, None, AuditLog(sink, record_decisions=True))
    evaluator.check(Principal.internal("u1"), "a:b:c")
    event = sink.write.call_args.args[0]
    assert event.operation == "check"
    assert event.result == "denied"
    assert event.resource == "a:b"


def test_expired_policy_denies_without_background_sweep(user, evaluator, admin, rule_engine, wall_clock, cache):
    admin.grant_policy("admin", "user", "u1", "secret:ops", "execute", expires_at=wall_clock.now + timedelta(hours=1))
    assert evaluator.check(user, "secret:ops:execute").allowed
    assert cache.get_decision("u1", "secret:ops", "execute") is True

    wall_clock.advance(hours=2)
    decision = evaluator.check(user, "secret:ops:execute")
    assert not decision.allowed
    assert not decision.cached
    assert not rule_engine.has_policy("user:u1", "secret:ops", "execute", "global", "allow")


def test_expired_role_denies_without_background_sweep(user, evaluator, admin, wall_clock):
    admin.grant_policy("admin", "role", "fc", "map:management", "full")
    admin.assign_role("admin", "fc", "corporation", "1000", expires_at=wall_clock.now + timedelta(minutes=5))
    assert evaluator.check(user, "map:management:full").allowed

    wall_clock.advance(minutes=6)
    assert not evaluator.check(user, "map:management:full").allowed
    assert admin.get_subject_roles("corporation", "1000") == []
