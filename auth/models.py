"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores and the session service do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of roles a user can hold.

    The string values are what gets persisted and embedded in access tokens,
    so they must never be renamed.
    """

    ADMIN = "ROLE_ADMIN"
    USER = "ROLE_USER"


DEFAULT_ROLE = Role.USER


@dataclass
class User:
    """An identity record owned by UserStore.

    username is case-sensitive and unique. hashed_password is a bcrypt digest;
    the plaintext never reaches this object.
    """

    username: str
    hashed_password: str
    role: Role = DEFAULT_ROLE
    id: int | None = None
    created_at: str | None = None


@dataclass
class RefreshToken:
    """A persisted refresh token record.

    Only token_hash (SHA-256 of the raw value) is stored. The raw token is
    set on the instance returned by RefreshTokenStore.create() and is
    unrecoverable afterwards.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    consumed: bool = False
    id: int | None = None
    created_at: datetime | None = None
    token: str | None = None  # raw value, creation-time only


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims carried by an access token."""

    subject: str
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds
