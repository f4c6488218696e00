"""
JWKS fetch and cache with TTL. No per-request fetches.

Background for newcomers:
    When tokens are signed with RS256 the identity provider keeps the private
    key and publishes the matching public keys at a JWKS endpoint. We fetch
    that key set once, cache it for ``ttl_seconds`` and look keys up by the
    ``kid`` (Key ID) carried in each token header.

    Providers rotate signing keys. If a token names a ``kid`` we have not
    seen, the cache is force-refreshed once before the token is rejected.

    A failed fetch is an outage of the key provider, not a bad token, so it
    is raised as ``SubsystemUnavailable`` rather than an authentication error.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import requests
from jwt import PyJWK

from hierarchy_authz.security.errors import SubsystemUnavailable

logger = logging.getLogger(__name__)


class JWKSCache:
    """
    In-memory, thread-safe cache of a JWKS document with TTL.

    On an unknown ``kid`` the cache is refreshed once to pick up rotated keys.
    """

    def __init__(
        self,
        jwks_uri: str,
        ttl_seconds: int,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._uri = jwks_uri
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, Any] | None = None
        self._fetched_at: float = 0.0

    def _fetch(self) -> dict[str, Any]:
        try:
            resp = requests.get(self._uri, timeout=self._timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("JWKS fetch failed uri=%s error=%s", self._uri, type(exc).__name__)
            raise SubsystemUnavailable("key provider", str(exc)) from exc

    def _refresh(self) -> dict[str, Any]:
        """Force-refresh the cache regardless of TTL."""
        data = self._fetch()
        with self._lock:
            self._data = data
            self._fetched_at = self._clock()
        logger.debug("JWKS cache refreshed uri=%s", self._uri)
        return data

    def _ensure_fresh(self) -> dict[str, Any]:
        """Return cached data, refreshing only when TTL has elapsed."""
        with self._lock:
            data = self._data
            stale = data is None or (self._clock() - self._fetched_at) >= self._ttl
        if stale:
            return self._refresh()
        return data

    def _find_key(self, kid: str, data: dict[str, Any]) -> PyJWK | None:
        for key_dict in data.get("keys") or []:
            if key_dict.get("kid") == kid:
                return PyJWK.from_dict(key_dict)
        return None

    def get_signing_key(self, kid: str) -> PyJWK | None:
        """Return the JWK for ``kid``, refreshing once for possible key rotation."""
        key = self._find_key(kid, self._ensure_fresh())
        if key is not None:
            return key

        logger.info("kid not in cached JWKS; refreshing for possible key rotation")
        return self._find_key(kid, self._refresh())
