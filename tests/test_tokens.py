# tests/test_tokens.py

import time

import jwt
import pytest

from chatrelay.core.tokens import (
    ISSUER,
    SECURITY_FIX_TIMESTAMP,
    SECURITY_VERSION,
    JWTConfigurationError,
    generate_jwt,
    verify_jwt,
)

SECRET = "test-auth-secret"


def _decode(token, audience):
    return jwt.decode(token, SECRET, algorithms=["HS256"], audience=audience)


def test_agent_context_token_defaults():
    token = generate_jwt({"id": "u1"}, token_type="agent-context", secret=SECRET)
    claims = _decode(token, "agent-context")

    assert claims["exp"] - claims["iat"] == 30 * 60
    assert claims["aud"] == "agent-context"
    assert "tokenName" not in claims


def test_all_claims_present():
    user = {"id": "u1", "email": "ada@example.com", "name": "Ada", "image": "https://example.com/a.png"}
    claims = _decode(generate_jwt(user, token_type="whatsapp-gateway", secret=SECRET), "whatsapp-gateway")

    assert claims["userId"] == "u1"
    assert claims["sub"] == "u1"
    assert claims["email"] == "ada@example.com"
    assert claims["name"] == "Ada"
    assert claims["picture"] == "https://example.com/a.png"
    assert claims["nbf"] == SECURITY_FIX_TIMESTAMP
    assert claims["iss"] == ISSUER
    assert claims["tokenType"] == "whatsapp-gateway"
    assert claims["securityVersion"] == SECURITY_VERSION
    assert claims["jti"]


def test_nbf_is_fixed_not_now():
    claims = _decode(generate_jwt({"id": "u1"}, token_type="api-token", secret=SECRET), "api-token")
    assert claims["nbf"] == SECURITY_FIX_TIMESTAMP
    assert claims["nbf"] < claims["iat"]


@pytest.mark.parametrize(
    "token_type, minutes",
    [
        ("whatsapp-gateway", 60),
        ("telegram-gateway", 60),
        ("extension-token", 60 * 24 * 30),
        ("api-token", 60 * 24 * 90),
        ("something-else", 60),
    ],
)
def test_expiry_table(token_type, minutes):
    claims = _decode(generate_jwt({"id": "u1"}, token_type=token_type, secret=SECRET), token_type)
    assert claims["exp"] - claims["iat"] == minutes * 60


def test_explicit_expiry_name_and_audience():
    token = generate_jwt(
        {"id": "u1"},
        token_type="api-token",
        expiry_minutes=5,
        token_name="CI key",
        audience="telegram",
        secret=SECRET,
    )
    claims = _decode(token, "telegram")
    assert claims["exp"] - claims["iat"] == 300
    assert claims["tokenName"] == "CI key"


def test_jti_is_unique():
    first = _decode(generate_jwt({"id": "u1"}, token_type="api-token", secret=SECRET), "api-token")
    second = _decode(generate_jwt({"id": "u1"}, token_type="api-token", secret=SECRET), "api-token")
    assert first["jti"] != second["jti"]


def test_accepts_objects_with_attributes(seeded, session):
    from chatrelay.models import User

    user = session.get(User, seeded["user_id"])
    claims = _decode(generate_jwt(user, token_type="api-token", secret=SECRET), "api-token")
    assert claims["email"] == "ada@example.com"


def test_secret_is_read_lazily(monkeypatch):
    monkeypatch.delenv("AUTH_SECRET", raising=False)
    with pytest.raises(JWTConfigurationError):
        generate_jwt({"id": "u1"}, token_type="api-token")

    monkeypatch.setenv("AUTH_SECRET", "late-secret")
    token = generate_jwt({"id": "u1"}, token_type="api-token")
    assert jwt.decode(token, "late-secret", algorithms=["HS256"], audience="api-token")["sub"] == "u1"


def test_user_without_id_is_rejected():
    with pytest.raises(ValueError):
        generate_jwt({"email": "x@example.com"}, token_type="api-token", secret=SECRET)


def test_verify_roundtrip():
    token = generate_jwt({"id": "u1"}, token_type="telegram-gateway", secret=SECRET)
    assert verify_jwt(token, "telegram-gateway", secret=SECRET)["userId"] == "u1"


def test_verify_rejects_wrong_audience():
    token = generate_jwt({"id": "u1"}, token_type="telegram-gateway", secret=SECRET)
    with pytest.raises(jwt.InvalidAudienceError):
        verify_jwt(token, "whatsapp-gateway", secret=SECRET)


def test_verify_rejects_tokens_from_before_the_security_fix():
    now = int(time.time())
    stale = jwt.encode(
        {
            "sub": "u1",
            "userId": "u1",
            "iat": now,
            "exp": now + 3600,
            "nbf": SECURITY_FIX_TIMESTAMP - 1,
            "jti": "old",
            "aud": "api-token",
            "iss": ISSUER,
        },
        SECRET,
        algorithm="HS256",
    )
    with pytest.raises(jwt.ImmatureSignatureError):
        verify_jwt(stale, "api-token", secret=SECRET)


def test_verify_rejects_expired():
    token = generate_jwt({"id": "u1"}, token_type="api-token", expiry_minutes=1, secret=SECRET, now=time.time() - 120)
    with pytest.raises(jwt.ExpiredSignatureError):
        verify_jwt(token, "api-token", secret=SECRET)
