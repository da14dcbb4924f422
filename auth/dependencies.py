"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens travel in the Authorization: Bearer <token> header only. There
is no cookie path: every client of this service is an API client.

bearer_token() is the soft extractor (returns None when the header is
missing or not a Bearer credential). get_current_claims() validates the token
through the AuthService on app.state and lets AuthError propagate -- the
application exception handler turns it into a generic 401.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import TokenClaims
from auth.service import AuthService


def bearer_token(request: Request) -> str | None:
    """Return the raw token from an Authorization: Bearer header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_bearer_token(request: Request) -> str:
    """Like bearer_token(), but raises HTTP 401 when no token is present."""
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


def get_current_claims(request: Request) -> TokenClaims:
    """Require a valid, unrevoked access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    token = require_bearer_token(request)
    service: AuthService = request.app.state.auth_service
    return service.validate_access(token)
