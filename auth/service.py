"""
auth/service.py -- Register, login, refresh, and logout flows.

SessionService composes the credential store, password hasher, access token
codec, and refresh token store. It owns the policy decisions:

  - Unknown username and wrong password are the same InvalidCredentials, and
    both run exactly one bcrypt verification (timing equalization).
  - Every refresh-token rejection reason collapses to InvalidRefreshToken at
    the HTTP layer. The specific reason is logged here, never returned.
  - A refreshed access token carries the user's current role, re-read from
    the store rather than copied from the previous token.
  - Store failures surface as InternalFailure with the cause logged.

Methods are synchronous. bcrypt is CPU-bound by design; route handlers call
these from FastAPI's thread pool so hashing never blocks the event loop.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InternalFailure, InvalidCredentials, InvalidRefreshToken
from auth.models import DEFAULT_ROLE, AccessClaims, TokenPair, User
from auth.passwords import PasswordHasher
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import AccessTokenCodec

logger = logging.getLogger("payroll.auth")


class SessionService:
    """Session orchestrator for the three public auth flows.

    Args:
        users:           Credential store.
        refresh_tokens:  Refresh token store.
        hasher:          Password hasher.
        codec:           Access token codec (holds the signing secret).
        rotate_refresh_tokens: Consume the presented refresh token on every
                         refresh and hand back a new one. When False, the
                         presented token is returned and stays valid until
                         it expires.
        max_refresh_tokens_per_user: Active refresh tokens kept per user
                         after login; older ones are revoked. 0 = no cap.
    """

    def __init__(
        self,
        users: UserStore,
        refresh_tokens: RefreshTokenStore,
        hasher: PasswordHasher,
        codec: AccessTokenCodec,
        rotate_refresh_tokens: bool = True,
        max_refresh_tokens_per_user: int = 5,
    ) -> None:
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.hasher = hasher
        self.codec = codec
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.max_refresh_tokens_per_user = max_refresh_tokens_per_user

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def register(self, username: str, password: str) -> User:
        """Create a user with the default role. Issues no tokens.

        Raises DuplicateUsername if the username is taken.
        """
        try:
            user = self.users.create_user(
                User(username=username, hashed_password=self.hasher.hash(password), role=DEFAULT_ROLE)
            )
        except SQLAlchemyError as exc:
            logger.exception("Registration failed: credential store error")
            raise InternalFailure() from exc
        logger.info("User registered: %s", username)
        return user

    def login(self, username: str, password: str, now: datetime | None = None) -> TokenPair:
        """Verify credentials and mint an access + refresh token pair.

        Raises InvalidCredentials for an unknown username or a wrong password.
        """
        now = now or datetime.now(timezone.utc)
        try:
            user = self.users.get_by_username(username)
            if user is None:
                # Equalize timing -- do NOT return before running bcrypt.
                self.hasher.burn(password)
                logger.warning("Login failed for %s", username)
                raise InvalidCredentials()
            if not self.hasher.verify(password, user.hashed_password):
                logger.warning("Login failed for %s", username)
                raise InvalidCredentials()

            access_token = self.codec.issue(user.username, user.role, now)
            refresh = self.refresh_tokens.create(user.id, now)
            if self.max_refresh_tokens_per_user > 0:
                revoked = self.refresh_tokens.revoke_excess(user.id, self.max_refresh_tokens_per_user, now)
                if revoked:
                    logger.info("Revoked %d stale refresh token(s) for %s", revoked, username)
        except SQLAlchemyError as exc:
            logger.exception("Login failed: store error")
            raise InternalFailure() from exc

        logger.info("Login succeeded for %s", username)
        return TokenPair(access_token=access_token, refresh_token=refresh.token, expires_in=self.codec.ttl_seconds)

    def refresh(self, raw_token: str, now: datetime | None = None) -> TokenPair:
        """Exchange a refresh token for a new access token.

        Raises InvalidRefreshToken (or a subclass naming the reason) when the
        token is unknown, expired, already used, or its owner is gone.
        """
        now = now or datetime.now(timezone.utc)
        try:
            try:
                user_id = self.refresh_tokens.verify_and_consume(raw_token, now, consume=self.rotate_refresh_tokens)
            except InvalidRefreshToken as exc:
                logger.warning("Refresh rejected: %s", type(exc).__name__)
                raise

            user = self.users.get_by_id(user_id)
            if user is None:
                logger.warning("Refresh rejected: owner %s no longer exists", user_id)
                raise InvalidRefreshToken()

            access_token = self.codec.issue(user.username, user.role, now)
            if self.rotate_refresh_tokens:
                next_refresh = self.refresh_tokens.create(user.id, now).token
            else:
                next_refresh = raw_token
        except SQLAlchemyError as exc:
            logger.exception("Refresh failed: store error")
            raise InternalFailure() from exc

        logger.info("Access token refreshed for %s", user.username)
        return TokenPair(access_token=access_token, refresh_token=next_refresh, expires_in=self.codec.ttl_seconds)

    def logout(self, raw_token: str) -> bool:
        """Revoke a single refresh token. Unknown or already-revoked tokens are ignored.

        Outstanding access tokens stay valid until they expire.
        """
        try:
            revoked = self.refresh_tokens.revoke(raw_token)
        except SQLAlchemyError as exc:
            logger.exception("Logout failed: store error")
            raise InternalFailure() from exc
        if revoked:
            logger.info("Refresh token revoked on logout")
        return revoked

    def authenticate(self, access_token: str, now: datetime | None = None) -> AccessClaims:
        """Verify a bearer access token for a protected route.

        No store round-trip: validity is signature + expiry only.
        """
        return self.codec.verify(access_token, now)

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        removed = self.refresh_tokens.purge_expired(now)
        if removed:
            logger.info("Purged %d expired/consumed refresh token(s)", removed)
        return removed


def build_session_service(settings, db_url: str | None = None) -> SessionService:
    """Wire a SessionService from Settings. Used by the app lifespan and the CLI."""
    users = UserStore(db_url=db_url or settings.database_url)
    return SessionService(
        users=users,
        refresh_tokens=RefreshTokenStore(users.engine, ttl_seconds=settings.refresh_token_expire_seconds),
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        codec=AccessTokenCodec(settings.secret_key, ttl_seconds=settings.access_token_expire_seconds),
        rotate_refresh_tokens=settings.refresh_token_rotation,
        max_refresh_tokens_per_user=settings.max_refresh_tokens_per_user,
    )
