"""Tests for hierarchy resolution."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from hierarchy_authz.security.cache import AuthzCache
from hierarchy_authz.security.errors import HierarchyIntegrityError, ResolutionError, SubsystemUnavailable
from hierarchy_authz.security.hierarchy import (
    CharacterRecord,
    HierarchyContext,
    HierarchyResolver,
    SqlCharacterDirectory,
    build_context,
)


class _Directory:
    def __init__(self, records):
        self.records = records
        self.calls = 0

    def get_characters_for_user(self, user_id):
        self.calls += 1
        return list(self.records)


MAIN = CharacterRecord(100, "Main", corporation_id=1000, alliance_id=500, is_primary=True)
ALT = CharacterRecord(101, "Alt", corporation_id=1000, alliance_id=500)
SOLO = CharacterRecord(102, "Solo", corporation_id=3000, alliance_id=None)


def test_build_context_primary_first_and_deduped():
    ctx = build_context("u1", [ALT, SOLO, MAIN])
    assert ctx.primary_character_id == 100
    assert ctx.character_ids == (100, 101, 102)
    assert ctx.corporation_ids == (1000, 3000)
    assert ctx.alliance_ids == (500,)


def test_build_context_no_characters_is_valid_and_empty():
    ctx = build_context("u1", [])
    assert ctx.is_empty
    assert ctx.primary_character_id is None
    assert ctx.corporation_ids == ()
    assert ctx.alliance_ids == ()


def test_build_context_two_primaries_is_integrity_fault():
    twin = CharacterRecord(103, "Twin", corporation_id=1000, is_primary=True)
    with pytest.raises(HierarchyIntegrityError):
        build_context("u1", [MAIN, twin])


def test_build_context_without_primary_uses_first_by_name(caplog):
    ctx = build_context("u1", [SOLO, ALT])
    assert ctx.primary_character_id == 101
    assert "No primary character flagged" in caplog.text


def test_build_context_without_primary_when_required():
    with pytest.raises(HierarchyIntegrityError):
        build_context("u1", [SOLO, ALT], require_explicit_primary=True)


def test_context_dict_roundtrip():
    ctx = build_context("u1", [MAIN, ALT])
    assert HierarchyContext.from_dict(ctx.to_dict()) == ctx


def test_resolver_reads_through_cache(cache):
    directory = _Directory([MAIN, ALT])
    resolver = HierarchyResolver(directory, cache)
    first = resolver.resolve("u1")
    second = resolver.resolve("u1")
    assert first == second
    assert directory.calls == 1


def test_resolver_hierarchy_entry_expires(cache, clock):
    directory = _Directory([MAIN])
    resolver = HierarchyResolver(directory, cache)
    resolver.resolve("u1")
    clock.advance(cache.config.hierarchy_ttl_seconds)
    resolver.resolve("u1")
    assert directory.calls == 2


def test_resolver_tolerates_cache_outage():
    store = MagicMock()
    store.get.side_effect = SubsystemUnavailable("cache", "down")
    store.set.side_effect = SubsystemUnavailable("cache", "down")
    directory = _Directory([MAIN])
    ctx = HierarchyResolver(directory, AuthzCache(store)).resolve("u1")
    assert ctx.primary_character_id == 100


def test_sql_directory_reads_synced_rows(admin, session_factory):
    admin.sync_hierarchy("admin", "u1", [ALT, MAIN])
    records = SqlCharacterDirectory(session_factory).get_characters_for_user("u1")
    assert [r.character_id for r in records] == [101, 100]
    assert records[1].is_primary


def test_sql_directory_failure_is_resolution_error():
    factory = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("gone")))
    with pytest.raises(ResolutionError):
        SqlCharacterDirectory(factory).get_characters_for_user("u1")
