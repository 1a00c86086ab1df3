from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from forumai.core.config import get_settings
from forumai.services.runtime import Collaborators, get_collaborators


def get_runtime() -> Collaborators:
    # Overridden in tests with fake collaborators via app.dependency_overrides.
    return get_collaborators()


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    expected = get_settings().admin_api_token
    if not expected:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "unauthorized", "message": "Missing or invalid admin token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
