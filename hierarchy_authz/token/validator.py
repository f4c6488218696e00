"""
Validate a signed JWT credential and build a ``Principal``.

Background for newcomers:
    Requests carry the credential either as ``Authorization: Bearer <token>``
    or, for browser sessions, in a named cookie. ``extract_credential`` is the
    single place that decides which one is used: the header wins, and the
    cookie is only consulted when the header yields no token.

    Before any claim is trusted the token's signature, expiry (``exp``/``nbf``)
    and, when configured, issuer (``iss``) and audience (``aud``) are checked.
    Tokens must carry a ``user_id`` claim; ``character_id``,
    ``character_name`` and ``scopes`` are optional.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from http.cookies import CookieError, SimpleCookie
from typing import Any

import jwt

from hierarchy_authz.security.errors import AuthenticationError

from .config import TokenConfig
from .jwks_cache import JWKSCache
from .principal import Principal, RequestType

logger = logging.getLogger(__name__)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def _cookie(headers: Mapping[str, str], cookie_name: str) -> str | None:
    raw = _header(headers, "Cookie")
    if not raw:
        return None
    jar = SimpleCookie()
    try:
        jar.load(raw)
    except CookieError:
        logger.debug("Unparseable Cookie header ignored")
        return None
    morsel = jar.get(cookie_name)
    return morsel.value if morsel is not None else None


def extract_credential(headers: Mapping[str, str], config: TokenConfig) -> tuple[str, RequestType] | None:
    """
    Return ``(token, source)`` from the request headers, or None.

    Precedence: ``Authorization: Bearer <token>`` first, then the configured
    cookie. The first non-empty source wins; an Authorization header with a
    different scheme or an empty token falls through to the cookie. The scheme
    is matched case-insensitively.
    """

    raw = _header(headers, config.header_name)
    prefix = f"{config.bearer_prefix} "
    if raw and raw[: len(prefix)].lower() == prefix.lower():
        token = raw[len(prefix) :].strip()
        if token:
            return token, "bearer"

    token = (_cookie(headers, config.cookie_name) or "").strip()
    if token:
        return token, "cookie"
    return None


def _get_kid(token: str) -> str | None:
    """Read ``kid`` from the JWT header without validating the token."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError:
        return None
    return header.get("kid") if isinstance(header, dict) else None


def _extract_principal(payload: dict[str, Any], request_type: RequestType) -> Principal:
    user_id = payload.get("user_id")
    if user_id is None or user_id == "":
        raise AuthenticationError(AuthenticationError.INVALID, "Invalid credential: missing user_id")
    user_id = str(int(user_id)) if isinstance(user_id, (int, float)) else str(user_id)

    character_id = payload.get("character_id")
    try:
        character_id = int(character_id) if character_id not in (None, "") else None
    except (TypeError, ValueError):
        raise AuthenticationError(AuthenticationError.INVALID, "Invalid credential: character_id") from None

    scopes = payload.get("scopes") or ""
    if isinstance(scopes, list):
        scopes = " ".join(str(s) for s in scopes)

    name = payload.get("character_name")
    return Principal(
        user_id=user_id,
        primary_character_id=character_id,
        request_type=request_type,
        raw_scopes=str(scopes),
        character_name=str(name) if name is not None else None,
    )


class TokenValidator:
    """
    Stateless credential verifier; safe to share across requests.

    HS256 with a shared secret, or RS256 with keys from a cached JWKS endpoint.
    """

    def __init__(self, config: TokenConfig | None = None) -> None:
        self._config = config or TokenConfig.from_environ()
        self._jwks = (
            JWKSCache(self._config.jwks_uri, self._config.jwks_cache_ttl_seconds) if self._config.jwks_uri else None
        )

    @property
    def config(self) -> TokenConfig:
        return self._config

    def authenticate(self, headers: Mapping[str, str]) -> Principal:
        """Extract the credential from ``headers`` and validate it."""
        found = extract_credential(headers, self._config)
        if found is None:
            raise AuthenticationError(AuthenticationError.NO_CREDENTIAL)
        token, request_type = found
        return self.validate(token, request_type)

    def _verification_key(self, token: str) -> Any:
        if self._jwks is None:
            return self._config.secret

        kid = _get_kid(token)
        if not kid:
            logger.debug("Token missing or invalid kid")
            raise AuthenticationError(AuthenticationError.INVALID, "Invalid credential: missing key id")
        signing_key = self._jwks.get_signing_key(kid)
        if signing_key is None:
            logger.debug("No signing key found for kid")
            raise AuthenticationError(AuthenticationError.INVALID, "Invalid credential: unknown signing key")
        return signing_key.key

    def validate(self, token: str, request_type: RequestType = "bearer") -> Principal:
        """
        Verify ``token`` and return the principal it identifies.

        Raises AuthenticationError (reason ``invalid`` or ``expired``) when any
        check fails. The token itself is never logged.
        """
        key = self._verification_key(token)
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=self._config.algorithms,
                audience=self._config.audience,
                issuer=self._config.issuer,
                leeway=self._config.clock_skew_seconds,
                options={
                    "require": ["exp"],
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": self._config.issuer is not None,
                    "verify_aud": self._config.audience is not None,
                },
            )
        except jwt.ExpiredSignatureError as e:
            logger.info("Token expired")
            raise AuthenticationError(AuthenticationError.EXPIRED) from e
        except jwt.InvalidIssuerError as e:
            logger.info("Token invalid issuer")
            raise AuthenticationError(AuthenticationError.INVALID, "Invalid credential: issuer") from e
        except jwt.InvalidAudienceError as e:
            logger.info("Token invalid audience")
            raise AuthenticationError(AuthenticationError.INVALID, "Invalid credential: audience") from e
        except jwt.InvalidTokenError as e:
            logger.info("Token invalid: %s", type(e).__name__)
            raise AuthenticationError(AuthenticationError.INVALID) from e

        return _extract_principal(payload, request_type)
