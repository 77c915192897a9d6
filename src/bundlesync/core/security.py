"""JWT primitives for operator endpoints.

Operators (trainers' reviewers and managers) authenticate with short-lived
bearer tokens. The webhook endpoint does not use JWT; it is authenticated by
the platform's HMAC signature instead.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.bundlesync.config import get_settings

OPERATOR_ROLES = frozenset({"manager", "reviewer"})
ACCESS_TOKEN_TYPE = "access"


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Sign an operator token.

    ``data`` carries ``sub`` (operator id) and ``role``; expiry, issue time
    and token type are added here.
    """
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {**data, "iat": issued_at, "exp": issued_at + lifetime, "type": ACCESS_TOKEN_TYPE}
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any] | None:
    """Claims of a correctly signed, unexpired token, or None."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def verify_token(token: str, token_type: str = ACCESS_TOKEN_TYPE) -> dict[str, Any]:
    """Decode a bearer token and require its type and subject.

    Raises:
        HTTPException(401): Bad signature, expired, wrong type or no subject.
    """
    claims = decode_token(token)
    if claims is None or claims.get("type") != token_type or not claims.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims
