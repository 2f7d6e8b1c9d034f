"""
auth/tokens.py -- Access token signing and verification.

Security design decisions:
  JWT: python-jose with HS256. The algorithm is fixed at construction and
       passed to jwt.decode() as the only accepted value, so a token whose
       header claims "none" or RS256 is rejected before any claim is read.

  Claims: sub (username), role, iat, exp. Timestamps are JWT NumericDate
       values: integer seconds when `now` falls on a whole second, otherwise
       fractional seconds at microsecond precision, so exp is exactly
       iat + ttl. Expiry is checked against the caller-supplied
       `now` rather than the wall clock inside jose, which keeps verify()
       deterministic and testable.

  Secret: injected at construction from core.config.get_settings(). The
       codec is built once at startup and never mutated.

Access tokens are stateless: nothing is stored, and a token stays valid
until exp even if the user's role changes. Keep the lifetime short.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import AccessTokenExpired, InvalidAccessToken
from auth.models import AccessClaims, Role

ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("sub", "role", "iat", "exp")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MICROSECOND = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_micros(moment: datetime) -> int:
    """Microseconds since the epoch, computed without float rounding."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // _ONE_MICROSECOND


def _numeric_date(micros: int) -> int | float:
    """Encode as a JWT NumericDate: an int on whole seconds, else fractional."""
    seconds, remainder = divmod(micros, 1_000_000)
    return seconds if remainder == 0 else micros / 1_000_000


def _claim_micros(value: object) -> int | None:
    """Decode a NumericDate claim back to whole microseconds, or None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, int):
        return value * 1_000_000
    if not math.isfinite(value):
        return None
    return round(value * 1_000_000)


class AccessTokenCodec:
    """Stateless signer/verifier for short-lived bearer tokens.

    Usage:
        codec = AccessTokenCodec(settings.secret_key, ttl_seconds=900)
        token = codec.issue("alice", Role.USER)
        claims = codec.verify(token)
    """

    def __init__(self, secret_key: str, ttl_seconds: int = 900) -> None:
        if not secret_key:
            raise ValueError("AccessTokenCodec requires a non-empty secret key.")
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds

    def issue(self, subject: str, role: Role, now: datetime | None = None) -> str:
        """Sign a token for `subject` valid from `now` until now + ttl_seconds."""
        issued_at = _to_micros(now or _utcnow())
        payload = {
            "sub": subject,
            "role": Role(role).value,
            "iat": _numeric_date(issued_at),
            "exp": _numeric_date(issued_at + self.ttl_seconds * 1_000_000),
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def verify(self, token: str, now: datetime | None = None) -> AccessClaims:
        """Verify the signature, then the claims. Returns AccessClaims.

        Raises:
            AccessTokenExpired:  signature valid but now > exp.
            InvalidAccessToken:  bad signature, wrong algorithm, malformed
                                 token, or missing/invalid claims.
        """
        try:
            # Signature is checked by jose before the payload is returned.
            # Expiry is checked below against `now`.
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidAccessToken() from exc

        if any(payload.get(claim) is None for claim in _REQUIRED_CLAIMS):
            raise InvalidAccessToken()
        exp = _claim_micros(payload["exp"])
        iat = _claim_micros(payload["iat"])
        if exp is None or iat is None or not isinstance(payload["sub"], str):
            raise InvalidAccessToken()
        try:
            role = Role(payload["role"])
            issued_at = _EPOCH + timedelta(microseconds=iat)
            expires_at = _EPOCH + timedelta(microseconds=exp)
        except (ValueError, OverflowError) as exc:
            raise InvalidAccessToken() from exc

        if _to_micros(now or _utcnow()) > exp:
            raise AccessTokenExpired()

        return AccessClaims(
            subject=payload["sub"],
            role=role,
            issued_at=issued_at,
            expires_at=expires_at,
        )
