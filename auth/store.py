"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore and RefreshTokenStore are the repositories; _row_to_user /
_row_to_refresh_token are the mappers. Service and route code never touches
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens are stored as SHA-256(raw_token). The raw value has 256 bits
  of entropy, so a plain digest is enough: a leaked table cannot be replayed.

Concurrency:
  Username uniqueness is a UNIQUE constraint -- registration is a single
  INSERT and the loser of a race gets IntegrityError, which create_user()
  turns into DuplicateUsername.

  verify_and_consume() runs in one transaction and flips the consumed flag
  with a compare-and-swap UPDATE (WHERE consumed = 0). When two refreshes
  race on the same token exactly one sees rowcount == 1.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision, so
lexicographic order in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    DuplicateUsername,
    RefreshTokenAlreadyUsed,
    RefreshTokenExpired,
    RefreshTokenNotFound,
)
from auth.models import RefreshToken, Role, User

logger = logging.getLogger("payroll.auth")

# Attempts at generating a unique refresh token before giving up.
_TOKEN_CREATE_ATTEMPTS = 3

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default=Role.USER.value),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    # No ON DELETE CASCADE in either direction: dropping a token never touches users.
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Connection pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _iso(moment: datetime) -> str:
    return _as_utc(moment).isoformat(timespec="microseconds")


def hash_refresh_token(raw_token: str) -> str:
    """Return the SHA-256 hex digest under which a refresh token is stored."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records (the credential store).

    Usage:
        store = UserStore(settings.database_url)
        store.create_user(User(username="alice", hashed_password=hasher.hash("pw123")))
        user = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and created_at filled in.

        Raises DuplicateUsername if the username is taken, including when a
        concurrent registration inserted it first.
        """
        created_at = _iso(_utcnow())
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        hashed_password=user.hashed_password,
                        role=Role(user.role).value,
                        created_at=created_at,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateUsername() from exc
        return User(
            id=result.inserted_primary_key[0],
            username=user.username,
            hashed_password=user.hashed_password,
            role=Role(user.role),
            created_at=created_at,
        )

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_role(self, user_id: int, role: Role) -> bool:
        """Change a user's role. Returns True if a row was updated.

        Access tokens already issued keep the old role until they expire;
        the next refresh picks up the new one.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(role=Role(role).value))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


class RefreshTokenStore:
    """Repository for RefreshToken records.

    Shares the UserStore engine so tokens and users live in the same database
    and the user_id foreign key can be enforced.
    """

    def __init__(self, engine: Engine, ttl_seconds: int = 7 * 24 * 3600) -> None:
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        _metadata.create_all(self.engine)

    def create(self, user_id: int, now: datetime | None = None) -> RefreshToken:
        """Generate, persist, and return a new refresh token for user_id.

        The returned instance is the only place the raw token ever appears.
        A UNIQUE collision on token_hash (2^-256 odds) triggers regeneration.
        """
        now = _as_utc(now or _utcnow())
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        attempt = 0
        while True:
            attempt += 1
            raw_token = secrets.token_urlsafe(32)
            token_hash = hash_refresh_token(raw_token)
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        _refresh_tokens.insert().values(
                            token_hash=token_hash,
                            user_id=user_id,
                            expires_at=_iso(expires_at),
                            consumed=0,
                            created_at=_iso(now),
                        )
                    )
            except IntegrityError:
                if attempt >= _TOKEN_CREATE_ATTEMPTS:
                    raise
                logger.warning("Refresh token insert collided (attempt %d), regenerating", attempt)
                continue
            return RefreshToken(
                id=result.inserted_primary_key[0],
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
                consumed=False,
                created_at=now,
                token=raw_token,
            )

    def get_by_token(self, raw_token: str) -> RefreshToken | None:
        """Look up a token record by its raw value. Returns None if not found.

        Inspection helper for operators and tests; the refresh flow goes
        through verify_and_consume(), which reads and consumes atomically.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == hash_refresh_token(raw_token))
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def verify_and_consume(self, raw_token: str, now: datetime | None = None, consume: bool = True) -> int:
        """Validate a refresh token and return the owning user id.

        With consume=True the token is flipped to consumed by a single
        conditional UPDATE (unconsumed and unexpired), so exactly one caller
        can ever exchange it. With consume=False it stays usable until it
        expires.

        Raises:
            RefreshTokenNotFound:     no record for this token.
            RefreshTokenExpired:      now > expires_at.
            RefreshTokenAlreadyUsed:  consumed/revoked, or lost a concurrent race.
        """
        now = _as_utc(now or _utcnow())
        token_hash = hash_refresh_token(raw_token)
        swapped = False
        with self.engine.begin() as conn:
            if consume:
                result = conn.execute(
                    _refresh_tokens.update()
                    .where(
                        (_refresh_tokens.c.token_hash == token_hash)
                        & (_refresh_tokens.c.consumed == 0)
                        & (_refresh_tokens.c.expires_at >= _iso(now))
                    )
                    .values(consumed=1)
                )
                swapped = result.rowcount == 1
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
            if row is None:
                raise RefreshTokenNotFound()
            record = _row_to_refresh_token(row)
            if swapped:
                return record.user_id
            # Diagnose why the swap did not happen (or check, when not consuming).
            if now > record.expires_at:
                raise RefreshTokenExpired()
            if record.consumed:
                raise RefreshTokenAlreadyUsed()
            if consume:
                # Unconsumed and unexpired now, yet the UPDATE matched nothing.
                raise RefreshTokenAlreadyUsed()
        return record.user_id

    def revoke(self, raw_token: str) -> bool:
        """Mark a single token consumed. Returns True if an active token was revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == hash_refresh_token(raw_token)) & (_refresh_tokens.c.consumed == 0)
                )
                .values(consumed=1)
            )
        return result.rowcount > 0

    def list_active(self, user_id: int, now: datetime | None = None) -> list[RefreshToken]:
        """Return a user's unexpired, unconsumed tokens, newest first."""
        now = now or _utcnow()
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.consumed == 0)
                    & (_refresh_tokens.c.expires_at >= _iso(now))
                )
                .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def revoke_excess(self, user_id: int, keep: int, now: datetime | None = None) -> int:
        """Revoke all but the `keep` newest active tokens for a user.

        Returns the number of tokens revoked. keep <= 0 is a no-op.
        """
        if keep <= 0:
            return 0
        excess = [t.id for t in self.list_active(user_id, now)[keep:]]
        if not excess:
            return 0
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(_refresh_tokens.c.id.in_(excess) & (_refresh_tokens.c.consumed == 0))
                .values(consumed=1)
            )
        return result.rowcount

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired and consumed tokens. Returns the number of rows removed.

        Users are never touched.
        """
        now = now or _utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.expires_at < _iso(now)) | (_refresh_tokens.c.consumed == 1)
                )
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=datetime.fromisoformat(row.expires_at),
        consumed=bool(row.consumed),
        created_at=datetime.fromisoformat(row.created_at),
    )
