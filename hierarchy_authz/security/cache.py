"""
Decision and hierarchy caches.

Background for newcomers:
    Two kinds of entries share one key-value store:

    * ``<prefix>perm:<sha256(user:resource:action)>`` holds a cached allow/deny
      decision for one user. Short TTL (5 minutes by default).
    * ``<prefix>hier:<user_id>`` holds the user's resolved character
      hierarchy. Longer TTL (15 minutes); hierarchies change rarely.

    Invalidation is deliberately coarse. Any policy, role or hierarchy change
    drops *every* decision entry, because there is no index from subjects to
    the decision keys that depend on them. A hierarchy sync additionally drops
    that user's hierarchy entry.

    Entries are never served at or after their expiry. The in-memory store
    checks expiry on every read; Redis enforces it server-side.
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from typing import Any, Protocol

import redis
from redis.exceptions import RedisError

from .errors import SubsystemUnavailable

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    """Key-value store with per-key TTL and glob-style key enumeration."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: float) -> None: ...

    def delete(self, *keys: str) -> int: ...

    def keys(self, pattern: str) -> list[str]: ...


class InMemoryCacheStore:
    """Process-local store for development and tests. Thread-safe."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def keys(self, pattern: str) -> list[str]:
        now = self._clock()
        with self._lock:
            return [k for k, (_, exp) in self._entries.items() if now < exp and fnmatch.fnmatchcase(k, pattern)]


class RedisCacheStore:
    """Shared store backed by a ``redis.Redis`` client (which is itself thread-safe)."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 2.0) -> RedisCacheStore:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(key)
        except RedisError as exc:
            raise SubsystemUnavailable("cache", f"get failed: {exc}") from exc

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        try:
            self._client.set(key, value, px=max(1, int(ttl_seconds * 1000)))
        except RedisError as exc:
            raise SubsystemUnavailable("cache", f"set failed: {exc}") from exc

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self._client.delete(*keys))
        except RedisError as exc:
            raise SubsystemUnavailable("cache", f"delete failed: {exc}") from exc

    def keys(self, pattern: str) -> list[str]:
        try:
            return list(self._client.scan_iter(match=pattern, count=500))
        except RedisError as exc:
            raise SubsystemUnavailable("cache", f"scan failed: {exc}") from exc


@dataclass(frozen=True)
class CacheConfig:
    decision_ttl_seconds: float = 300.0
    hierarchy_ttl_seconds: float = 900.0
    key_prefix: str = "authz:"
    decisions_enabled: bool = True
    hierarchy_enabled: bool = True


class AuthzCache:
    """Typed access to decision and hierarchy entries on top of a ``CacheStore``."""

    def __init__(self, store: CacheStore, config: CacheConfig | None = None) -> None:
        self._store = store
        self._config = config or CacheConfig()

    @property
    def config(self) -> CacheConfig:
        return self._config

    def decision_key(self, user_id: str, resource: str, action: str) -> str:
        digest = hashlib.sha256(f"{user_id}:{resource}:{action}".encode("utf-8")).hexdigest()
        return f"{self._config.key_prefix}perm:{digest}"

    def hierarchy_key(self, user_id: str) -> str:
        return f"{self._config.key_prefix}hier:{user_id}"

    # ---- decisions ---------------------------------------------------------------

    def get_decision(self, user_id: str, resource: str, action: str) -> bool | None:
        if not self._config.decisions_enabled:
            return None
        raw = self._store.get(self.decision_key(user_id, resource, action))
        if raw is None:
            return None
        try:
            return bool(json.loads(raw)["allowed"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable decision entry user_id=%s", user_id)
            return None

    def set_decision(self, user_id: str, resource: str, action: str, allowed: bool) -> None:
        if not self._config.decisions_enabled:
            return
        value = json.dumps({"allowed": allowed, "cached_at": time.time()})
        self._store.set(self.decision_key(user_id, resource, action), value, self._config.decision_ttl_seconds)

    # ---- hierarchies -------------------------------------------------------------

    def get_hierarchy(self, user_id: str) -> dict[str, Any] | None:
        if not self._config.hierarchy_enabled:
            return None
        raw = self._store.get(self.hierarchy_key(user_id))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable hierarchy entry user_id=%s", user_id)
            return None

    def set_hierarchy(self, user_id: str, payload: dict[str, Any]) -> None:
        if not self._config.hierarchy_enabled:
            return
        self._store.set(self.hierarchy_key(user_id), json.dumps(payload), self._config.hierarchy_ttl_seconds)

    # ---- invalidation ------------------------------------------------------------

    def _delete_matching(self, pattern: str) -> int:
        keys = self._store.keys(pattern)
        return self._store.delete(*keys) if keys else 0

    def invalidate_decisions(self) -> int:
        removed = self._delete_matching(f"{self._config.key_prefix}perm:*")
        logger.debug("Decision cache invalidated removed=%d", removed)
        return removed

    def invalidate_user(self, user_id: str) -> int:
        """Drop one user's hierarchy and, since decisions are not indexed by user, every decision."""
        removed = self._store.delete(self.hierarchy_key(user_id))
        return removed + self.invalidate_decisions()

    def invalidate_users(self, user_ids: Iterable[str]) -> int:
        keys = [self.hierarchy_key(u) for u in user_ids]
        removed = self._store.delete(*keys) if keys else 0
        return removed + self.invalidate_decisions()

    def invalidate_all(self) -> int:
        removed = self._delete_matching(f"{self._config.key_prefix}*")
        logger.info("Authorization cache cleared removed=%d", removed)
        return removed

    def stats(self) -> dict[str, Any]:
        prefix = self._config.key_prefix
        return {
            "decision_entries": len(self._store.keys(f"{prefix}perm:*")),
            "hierarchy_entries": len(self._store.keys(f"{prefix}hier:*")),
            "config": asdict(self._config),
        }
