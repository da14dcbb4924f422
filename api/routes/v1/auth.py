"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register   -- create an account (password policy enforced)
  POST /api/v1/auth/login      -- password login; returns an access/refresh pair
  POST /api/v1/auth/refresh    -- exchange a refresh token for a new pair
  POST /api/v1/auth/logout     -- revoke the presented access token
  GET  /api/v1/auth/me         -- identity of the presented access token

Security:
  [C1] AuthService.authenticate() equalizes timing for unknown usernames --
       never inline the account lookup + password check here.
  [E1] AuthError propagates to the application exception handler, which
       collapses every credential rejection into one generic 401 so the
       response never reveals whether the username exists or is locked.
  [M5] Cache-Control: no-store on every response that carries tokens.

Handlers that do bcrypt or database work are plain `def` so FastAPI runs
them in the threadpool instead of blocking the event loop.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import client_key
from api.models import (
    AccountCreatedResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
)
from auth.dependencies import get_current_claims, require_bearer_token
from auth.models import Account, TokenClaims, TokenPair
from auth.service import AuthService
from auth.store import AccountStore
from auth.tokens import hash_password

logger = logging.getLogger("authgate.api")

# Auth policy:
# - POST /api/v1/auth/register: public
# - POST /api/v1/auth/login:    public
# - POST /api/v1/auth/refresh:  public -- the refresh token is the credential
# - POST /api/v1/auth/logout:   requires Bearer access token
# - GET  /api/v1/auth/me:       requires Bearer access token (get_current_claims)
router = APIRouter()


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AccountCreatedResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> AccountCreatedResponse:
    """Create an active account. Duplicate username or email -> 409."""
    accounts: AccountStore = request.app.state.accounts
    account = Account(
        username=body.username,
        email=str(body.email),
        password_hash=hash_password(body.password),
    )
    try:
        account_id = accounts.create_account(account)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that username or email already exists."},
        ) from exc

    logger.info("Account registered: username=%s", body.username)
    return AccountCreatedResponse(
        id=account_id,
        username=account.username,
        email=account.email,
        status=account.status.value,
    )


@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a token pair [C1][E1]."""
    service: AuthService = request.app.state.auth_service
    pair = service.authenticate(body.username, body.password, client_key(request))
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Validate a refresh token and issue a new pair for the same account."""
    service: AuthService = request.app.state.auth_service
    pair = service.refresh(body.refresh_token)
    return _token_response(pair)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, token: str = Depends(require_bearer_token)) -> MessageResponse:
    """Revoke the presented access token until its natural expiry."""
    service: AuthService = request.app.state.auth_service
    service.invalidate(token)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(claims: TokenClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity carried by the current access token."""
    return MeResponse(
        account_id=claims.subject_id,
        username=claims.username,
        expires_at=claims.expires_at.isoformat(),
    )
