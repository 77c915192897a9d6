"""Operator authentication tests.

Tests JWT creation and verification and the get_current_operator
dependency that guards the bundle and sync endpoints.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException
from jose import jwt
from starlette.requests import Request

from src.bundlesync.api.deps import get_current_operator
from src.bundlesync.config import get_settings
from src.bundlesync.core.security import create_access_token, decode_token, verify_token


def _request(authorization: str | None = None) -> Request:
    headers = []
    if authorization is not None:
        headers.append((b"authorization", authorization.encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


# ── Token Tests ───────────────────────────────────────────────────────────────


def test_access_token_claims():
    """Access tokens carry sub, role, type and expiry."""
    token = create_access_token({"sub": "op-1", "role": "manager"})

    settings = get_settings()
    payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    assert payload["sub"] == "op-1"
    assert payload["role"] == "manager"
    assert payload["type"] == "access"
    assert payload["exp"] > payload["iat"]


def test_verify_token_roundtrip():
    token = create_access_token({"sub": "op-1", "role": "reviewer"})
    assert verify_token(token)["role"] == "reviewer"


def test_expired_token_rejected():
    token = create_access_token({"sub": "op-1", "role": "manager"}, timedelta(seconds=-5))
    with pytest.raises(HTTPException) as exc_info:
        verify_token(token)
    assert exc_info.value.status_code == 401


def test_wrong_token_type_rejected():
    token = create_access_token({"sub": "op-1", "role": "manager"})
    with pytest.raises(HTTPException):
        verify_token(token, token_type="refresh")


def test_token_signed_with_other_key_rejected():
    settings = get_settings()
    forged = jwt.encode(
        {"sub": "op-1", "role": "manager", "type": "access"},
        "not-the-secret",
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(HTTPException) as exc_info:
        verify_token(forged)
    assert exc_info.value.status_code == 401


def test_decode_token_returns_none_for_garbage():
    assert decode_token("not.a.jwt") is None


def test_token_without_subject_rejected():
    token = create_access_token({"role": "manager"})
    with pytest.raises(HTTPException):
        verify_token(token)


# ── Operator Dependency Tests ────────────────────────────────────────────────


async def test_operator_from_bearer_token():
    token = create_access_token({"sub": "op-7", "role": "reviewer"})
    operator = await get_current_operator(_request(f"Bearer {token}"))
    assert operator.id == "op-7"
    assert operator.role == "reviewer"


async def test_missing_authorization_header():
    with pytest.raises(HTTPException) as exc_info:
        await get_current_operator(_request())
    assert exc_info.value.status_code == 401
    assert exc_info.value.headers["WWW-Authenticate"] == "Bearer"


async def test_non_bearer_scheme():
    with pytest.raises(HTTPException) as exc_info:
        await get_current_operator(_request("Basic b3A6cGFzcw=="))
    assert exc_info.value.status_code == 401


async def test_role_without_sync_access():
    """Only manager and reviewer roles pass."""
    token = create_access_token({"sub": "trainer-1", "role": "trainer"})
    with pytest.raises(HTTPException) as exc_info:
        await get_current_operator(_request(f"Bearer {token}"))
    assert exc_info.value.status_code == 403
