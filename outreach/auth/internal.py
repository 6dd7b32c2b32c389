"""
internal.py
-----------
Purpose:
    Shared-secret guard for the internal outreach trigger routes.

Notes:
    - Callers send the secret in `X-Internal-Token`.
    - Routes refuse to serve (503) until INTERNAL_API_TOKEN is configured.
"""

import hmac

from fastapi import Header, HTTPException, status

from outreach.config import settings

INTERNAL_TOKEN_HEADER = "X-Internal-Token"


def verify_internal_token(token: str | None) -> None:
    expected = settings.INTERNAL_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API token is not configured",
        )
    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token",
        )


def internal_auth_dependency(
    x_internal_token: str | None = Header(default=None, alias=INTERNAL_TOKEN_HEADER),
) -> None:
    verify_internal_token(x_internal_token)
