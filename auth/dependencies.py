"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as `Authorization: Bearer <token>`. Verification is the
stateless AccessTokenCodec check: no store round-trip per request.

get_current_claims() raises HTTP 401 if the request is unauthenticated.
require_role() builds a dependency that additionally raises HTTP 403.

Downstream routes (employee and department endpoints) depend on these; the
SessionService lives on app.state.session_service.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. Nothing else in auth/ does.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import InvalidAccessToken
from auth.models import AccessClaims, Role


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/employees")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...

    An expired token gets its own error code so clients know to call
    /auth/refresh-token instead of sending the user back to the login form.
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": InvalidAccessToken.code, "message": InvalidAccessToken.message},
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return request.app.state.session_service.authenticate(token)
    except InvalidAccessToken as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": exc.message},
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        ) from exc


def require_role(*roles: Role) -> Callable[[Request], AccessClaims]:
    """Build a dependency that requires one of `roles`.

    Use as a FastAPI dependency:
        @router.delete("/employees/{id}")
        def route(claims: AccessClaims = Depends(require_role(Role.ADMIN))): ...
    """
    allowed = frozenset(roles)

    def dependency(request: Request) -> AccessClaims:
        claims = get_current_claims(request)
        if claims.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient role for this operation."},
            )
        return claims

    return dependency
