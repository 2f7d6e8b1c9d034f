"""
auth/errors.py -- Exception taxonomy for the auth subsystem.

Every error carries the HTTP status, a machine-readable code, and a message
that is safe to show a client. api/main.py renders all of them through one
exception handler.

Specific reasons (expired vs. forged vs. already used) exist so the service
can log them. They are deliberately collapsed to a single client-facing
code by their parent classes to avoid username enumeration and token
oracles.
"""

from __future__ import annotations


class AuthError(Exception):
    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class DuplicateUsername(AuthError):
    status_code = 400
    code = "duplicate_username"
    message = "Username already exists"


class InvalidCredentials(AuthError):
    """Unknown username or wrong password -- never distinguished."""

    status_code = 401
    code = "bad_credentials"
    message = "Invalid username or password."


class InvalidRefreshToken(AuthError):
    status_code = 401
    code = "invalid_refresh_token"
    message = "Invalid refresh token."


class RefreshTokenNotFound(InvalidRefreshToken):
    pass


class RefreshTokenExpired(InvalidRefreshToken):
    pass


class RefreshTokenAlreadyUsed(InvalidRefreshToken):
    pass


class InvalidAccessToken(AuthError):
    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class AccessTokenExpired(InvalidAccessToken):
    code = "token_expired"
    message = "Access token has expired."


class InternalFailure(AuthError):
    """Store or crypto unavailable. The cause is logged, never returned."""

    status_code = 500
    code = "internal_error"
    message = "An unexpected error occurred."
