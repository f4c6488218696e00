"""Token configuration from environment variables. No hardcoded secrets."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv(key: str, default: str | None = None) -> str | None:
    return os.environ.get(key, default)


def _getenv_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class TokenConfig:
    """
    Credential verification settings.

    One of these is required:
        AUTHZ_JWT_SECRET: Shared secret for HS256-signed tokens.
        AUTHZ_JWKS_URI: JWKS endpoint for RS256-signed tokens.

    Optional:
        AUTHZ_JWT_ISSUER: Expected ``iss``; not checked when unset.
        AUTHZ_JWT_AUDIENCE: Expected ``aud``; not checked when unset.
        AUTHZ_AUTH_COOKIE: Cookie consulted when no bearer header is sent (default ``auth_token``).
        AUTHZ_CLOCK_SKEW_SECONDS: Seconds of tolerance for exp/nbf (default 60).
        AUTHZ_JWKS_CACHE_TTL_SECONDS: How long to cache JWKS (default 3600).
    """

    secret: str | None
    jwks_uri: str | None
    issuer: str | None
    audience: str | None
    cookie_name: str = "auth_token"
    clock_skew_seconds: int = 60
    jwks_cache_ttl_seconds: int = 3600
    header_name: str = "Authorization"
    bearer_prefix: str = "Bearer"

    @property
    def algorithms(self) -> list[str]:
        return ["RS256"] if self.jwks_uri else ["HS256"]

    @classmethod
    def from_environ(cls) -> TokenConfig:
        secret = _strip_or_none(_getenv("AUTHZ_JWT_SECRET"))
        jwks_uri = _strip_or_none(_getenv("AUTHZ_JWKS_URI"))
        if not secret and not jwks_uri:
            raise _config_error("AUTHZ_JWT_SECRET or AUTHZ_JWKS_URI must be set")
        return cls(
            secret=secret,
            jwks_uri=jwks_uri,
            issuer=_strip_or_none(_getenv("AUTHZ_JWT_ISSUER")),
            audience=_strip_or_none(_getenv("AUTHZ_JWT_AUDIENCE")),
            cookie_name=_strip_or_none(_getenv("AUTHZ_AUTH_COOKIE")) or "auth_token",
            clock_skew_seconds=_getenv_int("AUTHZ_CLOCK_SKEW_SECONDS", 60),
            jwks_cache_ttl_seconds=_getenv_int("AUTHZ_JWKS_CACHE_TTL_SECONDS", 3600),
        )


def _strip_or_none(s: str | None) -> str | None:
    if s is None:
        return None
    t = s.strip()
    return t if t else None


def _config_error(msg: str) -> Exception:
    return ValueError(msg)
