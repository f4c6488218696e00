"""
Assemble the authorization pipeline under a named profile.

development: verbose guard traces, no circuit breaker, in-process cache,
             decision auditing on, default roles seeded from YAML.
production:  quiet traces, circuit breaker on, Redis cache, decision
             auditing off, nothing seeded.

Either profile can be tuned through ``Settings``; explicit collaborators
passed to ``build_stack`` win over both.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from hierarchy_authz.db.session import build_session_factory
from hierarchy_authz.settings import Settings
from hierarchy_authz.token.config import TokenConfig
from hierarchy_authz.token.validator import TokenValidator

from .adapters import ModuleAdapter
from .admin import PolicyAdminService
from .audit import AuditLog, SqlAuditSink
from .cache import AuthzCache, CacheConfig, CacheStore, InMemoryCacheStore, RedisCacheStore
from .engine import CasbinRuleEngine, RuleEngine, create_sql_enforcer
from .evaluator import PermissionEvaluator
from .expiry import ExpiryWatch
from .guard import AuthorizationGuard, GuardOptions
from .hierarchy import CharacterDirectory, HierarchyResolver, SqlCharacterDirectory
from .maintenance import ExpirySweeper
from .seed import apply_policy_seed, load_policy_seed

logger = logging.getLogger(__name__)

A = TypeVar("A", bound=ModuleAdapter)


def development_options() -> GuardOptions:
    return GuardOptions().with_debug_logging()


def production_options() -> GuardOptions:
    return GuardOptions().with_circuit_breaker()


def guard_options_for(settings: Settings) -> GuardOptions:
    options = production_options() if settings.profile == "production" else development_options()
    options = options.with_fallback(settings.fallback_to_auth_only)
    if settings.debug_logging is not None:
        options = options.with_debug_logging(settings.debug_logging)
    circuit = options.circuit_breaker if settings.circuit_breaker_enabled is None else settings.circuit_breaker_enabled
    return options.with_circuit_breaker(
        circuit,
        failure_threshold=settings.circuit_failure_threshold,
        reset_timeout_seconds=settings.circuit_reset_seconds,
    )


def cache_config_for(settings: Settings) -> CacheConfig:
    return CacheConfig(
        decision_ttl_seconds=settings.decision_ttl_seconds,
        hierarchy_ttl_seconds=settings.hierarchy_ttl_seconds,
        key_prefix=settings.cache_key_prefix,
    )


@dataclass(frozen=True)
class AuthzStack:
    settings: Settings
    session_factory: sessionmaker[Session]
    validator: TokenValidator
    cache: AuthzCache
    engine: RuleEngine
    resolver: HierarchyResolver
    evaluator: PermissionEvaluator
    audit: AuditLog
    admin: PolicyAdminService
    guard: AuthorizationGuard
    sweeper: ExpirySweeper
    expiry: ExpiryWatch

    def adapter(self, adapter_cls: type[A]) -> A:
        return adapter_cls(self.guard)


def build_stack(
    settings: Settings,
    db_engine: Engine,
    *,
    token_config: TokenConfig | None = None,
    cache_store: CacheStore | None = None,
    rule_engine: RuleEngine | None = None,
    directory: CharacterDirectory | None = None,
    options: GuardOptions | None = None,
    seed: bool | None = None,
) -> AuthzStack:
    production = settings.profile == "production"
    session_factory = build_session_factory(db_engine)

    if cache_store is None:
        cache_store = (
            RedisCacheStore.from_url(settings.redis_url, settings.redis_timeout_seconds)
            if production
            else InMemoryCacheStore()
        )
    cache = AuthzCache(cache_store, cache_config_for(settings))

    if rule_engine is None:
        rule_engine = CasbinRuleEngine(create_sql_enforcer(db_engine))

    record_decisions = (not production) if settings.audit_decisions is None else settings.audit_decisions
    audit = AuditLog(SqlAuditSink(session_factory), record_decisions=record_decisions)

    resolver = HierarchyResolver(
        directory or SqlCharacterDirectory(session_factory),
        cache,
        require_explicit_primary=settings.require_explicit_primary,
    )
    expiry = ExpiryWatch()
    evaluator = PermissionEvaluator(rule_engine, resolver, cache, audit, expiry=expiry)
    admin = PolicyAdminService(session_factory, rule_engine, evaluator, resolver, audit, cache, expiry=expiry)

    options = options or guard_options_for(settings)
    validator = TokenValidator(token_config)
    guard = AuthorizationGuard(validator, evaluator, options)

    stack = AuthzStack(
        settings=settings,
        session_factory=session_factory,
        validator=validator,
        cache=cache,
        engine=rule_engine,
        resolver=resolver,
        evaluator=evaluator,
        audit=audit,
        admin=admin,
        guard=guard,
        sweeper=ExpirySweeper(admin, settings.expiry_sweep_seconds),
        expiry=expiry,
    )

    # Revokes what expired while the service was down and primes the watch with the next pending expiry.
    admin.expire_stale_grants()

    should_seed = (not production) if seed is None else seed
    if should_seed:
        seed_path = settings.resolved_policy_seed_path()
        if seed_path.exists():
            apply_policy_seed(load_policy_seed(seed_path), admin)
        else:
            logger.info("No policy seed file at %s; skipping", seed_path)

    logger.info(
        "Authorization stack ready profile=%s cache=%s circuit_breaker=%s fallback=%s",
        settings.profile,
        type(cache_store).__name__,
        options.circuit_breaker,
        options.fallback_to_auth_only,
    )
    return stack
