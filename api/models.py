"""
API request and response models for the payroll auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Token payloads use camelCase on the wire (accessToken, refreshToken) to match
the existing payroll clients; Python attribute names stay snake_case.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Role, TokenPair

# bcrypt only reads the first 72 bytes of a password and bcrypt>=4.1 rejects
# longer input outright.
MAX_PASSWORD_BYTES = 72


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class Credentials(BaseModel):
    """Request body for POST /auth/register and POST /auth/login.

    Both fields are taken exactly as sent: usernames are case- and
    whitespace-sensitive, and a username that is only whitespace is rejected.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_BYTES)

    @field_validator("username")
    @classmethod
    def reject_blank_username(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("username must not be blank")
        return value

    @field_validator("password")
    @classmethod
    def check_password_bytes(cls, value: str) -> str:
        """max_length counts characters; bcrypt's limit is in UTF-8 bytes."""
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        return value


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh-token and POST /auth/logout."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    refresh_token: str = Field(min_length=1, max_length=512)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Response body for a successful login or refresh."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class MeResponse(BaseModel):
    """Identity carried by the caller's access token."""

    model_config = ConfigDict(frozen=True)

    username: str
    role: Role


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
