"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /auth/register        -- create a ROLE_USER account; issues no tokens
  POST /auth/login           -- password login; returns access + refresh tokens
  POST /auth/refresh-token   -- exchange a refresh token for a new access token
  POST /auth/logout          -- revoke one refresh token
  GET  /auth/me              -- identity from the bearer access token

Security:
  POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  Wrong username and wrong password produce the same 401 body.
  Every refresh-token rejection (unknown, expired, used) produces the same 401 body.
  Cache-Control: no-store on every response that carries a token.

Handlers that hash or verify passwords are plain `def` so FastAPI runs them
in its thread pool; bcrypt would otherwise stall the event loop.

Domain errors (auth.errors.AuthError) propagate out of the handlers and are
rendered by the exception handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import Credentials, MeResponse, MessageResponse, RefreshRequest, TokenResponse
from auth.dependencies import get_current_claims
from auth.models import AccessClaims, TokenPair
from auth.service import SessionService

# Auth policy:
# - POST /auth/register:       public
# - POST /auth/login:          public, rate limited
# - POST /auth/refresh-token:  public -- the refresh token is the credential
# - POST /auth/logout:         public -- the refresh token is the credential
# - GET  /auth/me:             requires a bearer access token
router = APIRouter()


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse.from_pair(pair).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/register", response_model=MessageResponse)
def register(request: Request, body: Credentials) -> MessageResponse:
    """Create an account with the default role.

    Returns 400 "Username already exists" on a collision. Registration does
    not log the user in.
    """
    service: SessionService = request.app.state.session_service
    service.register(body.username, body.password)
    return MessageResponse(message="User registered successfully")


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: Credentials) -> JSONResponse:
    """Authenticate with username and password; return a token pair."""
    service: SessionService = request.app.state.session_service
    return _token_response(service.login(body.username, body.password))


@router.post("/auth/refresh-token", response_model=TokenResponse)
def refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access token (and, with rotation, a new refresh token)."""
    service: SessionService = request.app.state.session_service
    return _token_response(service.refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: RefreshRequest) -> MessageResponse:
    """Revoke the presented refresh token. Always 200, whether or not it was active."""
    service: SessionService = request.app.state.session_service
    service.logout(body.refresh_token)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
async def me(claims: AccessClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity carried by the caller's access token."""
    return MeResponse(username=claims.subject, role=claims.role)
