"""
Pytest fixtures for the test suite.

Database-backed tests share one in-memory SQLite database per test through a
StaticPool, so the session factory, the audit sink and the character
directory all see the same tables. The rule engine is an in-memory Casbin
enforcer over the bundled model.
"""
from __future__ import annotations

import time
from datetime import timedelta

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from hierarchy_authz.db.base import utcnow
from hierarchy_authz.db.session import build_session_factory
from hierarchy_authz.security.admin import PolicyAdminService
from hierarchy_authz.security.audit import AuditLog, SqlAuditSink
from hierarchy_authz.security.cache import AuthzCache, InMemoryCacheStore
from hierarchy_authz.security.engine import CasbinRuleEngine, create_enforcer
from hierarchy_authz.security.evaluator import PermissionEvaluator
from hierarchy_authz.security.expiry import ExpiryWatch
from hierarchy_authz.security.hierarchy import HierarchyResolver, SqlCharacterDirectory
from hierarchy_authz.token.config import TokenConfig

TEST_DB_URL = "sqlite://"
TEST_SECRET = "test-secret-that-is-long-enough-for-hs256"


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WallClock:
    """Naive-UTC datetime clock for grant expiry; starts at the real current time."""

    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite engine for each test."""
    return create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )


@pytest.fixture
def tables(engine):
    """Create all ORM tables on the test engine."""
    from hierarchy_authz.db.init_db import init_db

    init_db(engine)
    return engine


@pytest.fixture
def session_factory(tables):
    return build_session_factory(tables)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return AuthzCache(InMemoryCacheStore(clock=clock))


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def expiry(wall_clock):
    return ExpiryWatch(now=wall_clock)


@pytest.fixture
def rule_engine():
    return CasbinRuleEngine(create_enforcer())


@pytest.fixture
def audit(session_factory):
    return AuditLog(SqlAuditSink(session_factory), record_decisions=False)


@pytest.fixture
def resolver(session_factory, cache):
    return HierarchyResolver(SqlCharacterDirectory(session_factory), cache)


@pytest.fixture
def evaluator(rule_engine, resolver, cache, audit, expiry):
    return PermissionEvaluator(rule_engine, resolver, cache, audit, expiry=expiry)


@pytest.fixture
def admin(session_factory, rule_engine, evaluator, resolver, audit, cache, expiry):
    return PolicyAdminService(session_factory, rule_engine, evaluator, resolver, audit, cache, expiry=expiry)


@pytest.fixture
def token_config():
    return TokenConfig(secret=TEST_SECRET, jwks_uri=None, issuer=None, audience=None)


@pytest.fixture
def make_token():
    """Sign an HS256 token; pass ``exp_in`` to control expiry and extra claims as kwargs."""

    def _make(user_id="1", character_id=None, exp_in=300, secret=TEST_SECRET, **claims):
        payload = {"user_id": user_id, "exp": int(time.time()) + exp_in, **claims}
        if character_id is not None:
            payload["character_id"] = character_id
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make


@pytest.fixture
def bearer(make_token):
    def _headers(user_id="1", character_id=None, **claims):
        return {"Authorization": f"Bearer {make_token(user_id, character_id, **claims)}"}

    return _headers
