"""Tests for token validation and principal extraction."""

import time
from unittest.mock import patch

import jwt
import pytest
from jwt.api_jwk import PyJWK

from hierarchy_authz.security.errors import AuthenticationError, SubsystemUnavailable
from hierarchy_authz.token.config import TokenConfig
from hierarchy_authz.token.validator import TokenValidator, _extract_principal

SECRET = "another-test-secret-long-enough-for-hs256"


def _hs_config(**overrides):
    values = dict(secret=SECRET, jwks_uri=None, issuer=None, audience=None)
    values.update(overrides)
    return TokenConfig(**values)


def _hs_token(payload, secret=SECRET):
    return jwt.encode(payload, secret, algorithm="HS256")


def test_extract_principal():
    payload = {
        "user_id": 42,
        "character_id": "9001",
        "character_name": "Pilot One",
        "scopes": ["esi-skills.read_skills.v1", "esi-wallet.read_character_wallet.v1"],
    }
    p = _extract_principal(payload, "cookie")
    assert p.user_id == "42"
    assert p.primary_character_id == 9001
    assert p.character_name == "Pilot One"
    assert p.request_type == "cookie"
    assert p.scopes == ("esi-skills.read_skills.v1", "esi-wallet.read_character_wallet.v1")


def test_extract_principal_optional_claims():
    p = _extract_principal({"user_id": "7"}, "bearer")
    assert p.primary_character_id is None
    assert p.character_name is None
    assert p.scopes == ()


def test_extract_principal_requires_user_id():
    with pytest.raises(AuthenticationError) as exc:
        _extract_principal({"character_id": 1}, "bearer")
    assert exc.value.reason == AuthenticationError.INVALID


def test_extract_principal_rejects_bad_character_id():
    with pytest.raises(AuthenticationError):
        _extract_principal({"user_id": "1", "character_id": "abc"}, "bearer")


def test_valid_hs256_token():
    token = _hs_token({"user_id": "1", "character_id": 100, "exp": int(time.time()) + 300})
    p = TokenValidator(_hs_config()).validate(token)
    assert p.user_id == "1"
    assert p.primary_character_id == 100
    assert p.request_type == "bearer"


def test_authenticate_without_credential():
    with pytest.raises(AuthenticationError) as exc:
        TokenValidator(_hs_config()).authenticate({})
    assert exc.value.reason == AuthenticationError.NO_CREDENTIAL
    assert exc.value.status_code == 401


def test_authenticate_from_cookie():
    token = _hs_token({"user_id": "5", "exp": int(time.time()) + 300})
    p = TokenValidator(_hs_config()).authenticate({"Cookie": f"auth_token={token}"})
    assert p.user_id == "5"
    assert p.request_type == "cookie"


def test_expired_token():
    token = _hs_token({"user_id": "1", "exp": int(time.time()) - 600})
    with pytest.raises(AuthenticationError) as exc:
        TokenValidator(_hs_config()).validate(token)
    assert exc.value.reason == AuthenticationError.EXPIRED


def test_expiry_within_clock_skew_is_accepted():
    token = _hs_token({"user_id": "1", "exp": int(time.time()) - 10})
    assert TokenValidator(_hs_config(clock_skew_seconds=60)).validate(token).user_id == "1"


def test_token_without_exp_is_rejected():
    token = _hs_token({"user_id": "1"})
    with pytest.raises(AuthenticationError) as exc:
        TokenValidator(_hs_config()).validate(token)
    assert exc.value.reason == AuthenticationError.INVALID


def test_wrong_signature():
    token = _hs_token({"user_id": "1", "exp": int(time.time()) + 300}, secret="a-different-secret-also-long-enough")
    with pytest.raises(AuthenticationError) as exc:
        TokenValidator(_hs_config()).validate(token)
    assert exc.value.reason == AuthenticationError.INVALID


def test_garbage_token():
    with pytest.raises(AuthenticationError):
        TokenValidator(_hs_config()).validate("not-a-jwt")


def test_issuer_and_audience_checked_when_configured():
    validator = TokenValidator(_hs_config(issuer="https://auth.example.com", audience="authz"))
    good = _hs_token(
        {"user_id": "1", "iss": "https://auth.example.com", "aud": "authz", "exp": int(time.time()) + 300}
    )
    assert validator.validate(good).user_id == "1"

    wrong_iss = _hs_token({"user_id": "1", "iss": "https://evil.example.com", "aud": "authz", "exp": int(time.time()) + 300})
    with pytest.raises(AuthenticationError, match="issuer"):
        validator.validate(wrong_iss)

    wrong_aud = _hs_token(
        {"user_id": "1", "iss": "https://auth.example.com", "aud": "other", "exp": int(time.time()) + 300}
    )
    with pytest.raises(AuthenticationError, match="audience"):
        validator.validate(wrong_aud)


def _rsa_jwk(kid):
    from cryptography.hazmat.primitives.asymmetric import rsa
    from jwt.algorithms import RSAAlgorithm

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    jwk["kid"] = kid
    return private_key, jwk


def _rs_config():
    return TokenConfig(secret=None, jwks_uri="https://idp.example.com/jwks", issuer=None, audience=None)


def test_rs256_token_roundtrip():
    private_key, jwk = _rsa_jwk("test-key-1")
    token = jwt.encode(
        {"user_id": "u-1", "character_id": 55, "exp": int(time.time()) + 3600},
        private_key,
        algorithm="RS256",
        headers={"kid": "test-key-1"},
    )

    with patch("hierarchy_authz.token.validator.JWKSCache") as mock_cache:
        mock_cache.return_value.get_signing_key.return_value = PyJWK.from_dict(jwk)
        validator = TokenValidator(_rs_config())
        p = validator.validate(token)
    mock_cache.return_value.get_signing_key.assert_called_once_with("test-key-1")
    assert p.user_id == "u-1"
    assert p.primary_character_id == 55


def test_rs256_unknown_key_is_invalid():
    private_key, _ = _rsa_jwk("rotated-away")
    token = jwt.encode(
        {"user_id": "u-1", "exp": int(time.time()) + 3600}, private_key, algorithm="RS256", headers={"kid": "rotated-away"}
    )
    with patch("hierarchy_authz.token.validator.JWKSCache") as mock_cache:
        mock_cache.return_value.get_signing_key.return_value = None
        with pytest.raises(AuthenticationError) as exc:
            TokenValidator(_rs_config()).validate(token)
    assert exc.value.reason == AuthenticationError.INVALID


def test_rs256_missing_kid_is_invalid():
    token = jwt.encode({"user_id": "u", "exp": int(time.time()) + 300}, "x" * 32, algorithm="HS256", headers={})
    with patch("hierarchy_authz.token.validator.JWKSCache"):
        with pytest.raises(AuthenticationError):
            TokenValidator(_rs_config()).validate(token)


def test_rs256_key_provider_outage_is_not_an_auth_failure():
    private_key, _ = _rsa_jwk("k1")
    token = jwt.encode({"user_id": "u-1", "exp": int(time.time()) + 3600}, private_key, algorithm="RS256", headers={"kid": "k1"})
    with patch("hierarchy_authz.token.validator.JWKSCache") as mock_cache:
        mock_cache.return_value.get_signing_key.side_effect = SubsystemUnavailable("key provider", "timeout")
        with pytest.raises(SubsystemUnavailable):
            TokenValidator(_rs_config()).validate(token)
