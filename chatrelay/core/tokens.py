# chatrelay/core/tokens.py

"""
JWT signing for gateway, agent and API tokens.

Tokens are stateless: nothing is stored server-side. Every token carries
``nbf = SECURITY_FIX_TIMESTAMP`` and verification refuses anything whose
``nbf`` is older, so moving that constant forward revokes every token
issued before the move, whatever its expiry.
"""

import logging
import os
import time
import uuid
from typing import Any, Dict, Mapping, Optional, Union

import jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ISSUER = "todo-app"

# 2025-01-15T00:00:00Z
SECURITY_FIX_TIMESTAMP = 1736899200
SECURITY_VERSION = 2

DEFAULT_EXPIRY_MINUTES = 60

EXPIRY_MINUTES = {
    "agent-context": 30,
    "whatsapp-gateway": 60,
    "telegram-gateway": 60,
    "extension-token": 60 * 24 * 30,
    "api-token": 60 * 24 * 90,
}


class JWTConfigurationError(RuntimeError):
    """The signing secret is not configured"""


def _resolve_secret(secret: Optional[str]) -> str:
    # Read on every call, secrets may arrive after import
    secret = secret or os.getenv("AUTH_SECRET")
    if not secret:
        raise JWTConfigurationError("AUTH_SECRET is not configured, cannot sign tokens")
    return secret


def _field(user: Union[Mapping[str, Any], Any], name: str) -> Any:
    if isinstance(user, Mapping):
        return user.get(name)
    return getattr(user, name, None)


def generate_jwt(
    user: Union[Mapping[str, Any], Any],
    token_type: str,
    expiry_minutes: Optional[int] = None,
    token_name: Optional[str] = None,
    audience: Optional[str] = None,
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> str:
    """Sign a token for ``user`` (a mapping or an object with ``id``)."""
    key = _resolve_secret(secret)

    user_id = _field(user, "id")
    if not user_id:
        raise ValueError("Cannot issue a token for a user without an id")

    if expiry_minutes is None:
        expiry_minutes = EXPIRY_MINUTES.get(token_type, DEFAULT_EXPIRY_MINUTES)

    issued_at = int(now if now is not None else time.time())
    claims: Dict[str, Any] = {
        "userId": user_id,
        "sub": user_id,
        "email": _field(user, "email"),
        "name": _field(user, "name"),
        "picture": _field(user, "image"),
        "iat": issued_at,
        "exp": issued_at + expiry_minutes * 60,
        "nbf": SECURITY_FIX_TIMESTAMP,
        "jti": str(uuid.uuid4()),
        "tokenType": token_type,
        "aud": audience or token_type,
        "iss": ISSUER,
        "securityVersion": SECURITY_VERSION,
    }
    if token_name:
        claims["tokenName"] = token_name

    token = jwt.encode(claims, key, algorithm=ALGORITHM)
    logger.debug(f"Issued {token_type} token {claims['jti']} for user {user_id}")
    return token


def verify_jwt(token: str, audience: str, secret: Optional[str] = None) -> Dict[str, Any]:
    """Decode and validate a token, raising jwt.InvalidTokenError on any failure."""
    key = _resolve_secret(secret)
    claims = jwt.decode(
        token,
        key,
        algorithms=[ALGORITHM],
        audience=audience,
        issuer=ISSUER,
        options={"require": ["exp", "iat", "nbf", "sub", "jti"]},
    )
    # PyJWT only checks nbf against now; also refuse tokens minted before the fix
    if claims["nbf"] < SECURITY_FIX_TIMESTAMP:
        raise jwt.ImmatureSignatureError("Token predates the current security fix")
    return claims
