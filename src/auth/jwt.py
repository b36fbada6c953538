"""Simple JWT authentication helpers."""
from __future__ import annotations

from typing import Any, Dict

import jwt
from fastapi import Header, HTTPException, status

from src.core.config import settings


def require_auth(authorization: str = Header(...)) -> Dict[str, Any]:
    """Validate a bearer token and return the billing account it is scoped to."""

    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )

    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALG],
        )
    except jwt.InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc

    account_id = str(payload.get("account_id") or "").strip()
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account missing in token",
        )

    return {"account_id": account_id, "claims": payload}
