"""FastAPI dependencies for operator authentication."""

from __future__ import annotations

from fastapi import HTTPException, Request, status
from pydantic import BaseModel

from src.bundlesync.core.security import OPERATOR_ROLES, verify_token


class Operator(BaseModel):
    """Authenticated caller of the operator endpoints."""

    id: str
    role: str


async def get_current_operator(request: Request) -> Operator:
    """Extract the operator from a Bearer JWT.

    Raises:
        HTTPException(401): If no valid token is provided.
        HTTPException(403): If the token's role may not operate sync.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(auth_header[7:], token_type="access")
    role = payload.get("role", "")
    if role not in OPERATOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{role}' cannot manage bundle sync",
        )
    return Operator(id=payload["sub"], role=role)
