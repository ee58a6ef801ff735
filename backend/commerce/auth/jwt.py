"""Bearer token verification.

The identity service mints HS256 access tokens whose ``sub`` is the user's
UUID; this service only checks them. ``create_access_token`` exists for local
tooling and tests.
"""

import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from commerce.config import settings

ACCESS_TOKEN_TYPE = "access"


class TokenTypeError(JWTError):
    """Signature is valid but the token is not an access token."""


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Mint an access token the way the identity service does.

    Args:
        data: Claims. Must include ``sub`` (user UUID as string).
        expires_delta: Lifetime; defaults to ``jwt_access_token_expire_minutes``.
    """
    claims = dict(data)
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    claims.update({"iat": issued_at, "exp": issued_at + lifetime, "type": ACCESS_TOKEN_TYPE})
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Verify signature and expiry. Raises ``jose.JWTError`` on failure."""
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


def access_token_subject(token: str) -> uuid.UUID:
    """Verify an access token and return the user id it was issued for.

    Raises:
        TokenTypeError: The token verifies but is some other kind of token.
        jose.JWTError: Bad signature, expired, or ``sub`` is not a UUID.
    """
    claims = decode_token(token)
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise TokenTypeError("Invalid token type")
    try:
        return uuid.UUID(str(claims["sub"]))
    except (KeyError, ValueError) as e:
        raise JWTError("Token subject is not a user id") from e
