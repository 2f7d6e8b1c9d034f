"""Unit tests for auth/store.py -- UserStore and RefreshTokenStore.

Covers:
- Username uniqueness (sequential and under concurrent inserts)
- Case-sensitive username lookup
- Refresh token creation: entropy, hashing at rest, expiry
- verify_and_consume(): not found / expired / already used, single-use CAS
  under concurrent consumers, reuse when consume=False
- revoke(), list_active(), revoke_excess(), purge_expired()
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import (
    DuplicateUsername,
    InvalidRefreshToken,
    RefreshTokenAlreadyUsed,
    RefreshTokenExpired,
    RefreshTokenNotFound,
)
from auth.models import Role, User
from auth.store import RefreshTokenStore, UserStore, hash_refresh_token

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
TTL = 3600

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def users():
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def tokens(users):
    return RefreshTokenStore(users.engine, ttl_seconds=TTL)


@pytest.fixture
def alice(users) -> User:
    return users.create_user(User(username="alice", hashed_password="$2b$04$fakehash"))


@pytest.fixture
def file_stores(tmp_path):
    """File-backed stores for tests that need real concurrent connections."""
    s = UserStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s, RefreshTokenStore(s.engine, ttl_seconds=TTL)
    s.close()


# ---------------------------------------------------------------------------
# UserStore
# ---------------------------------------------------------------------------


class TestUserStore:
    def test_database_url_is_required(self):
        with pytest.raises(TypeError):
            UserStore()

    def test_create_assigns_id_and_default_role(self, users):
        created = users.create_user(User(username="bob", hashed_password="h"))
        assert created.id is not None
        assert created.role is Role.USER
        assert created.created_at

    def test_lookup_by_username_and_id(self, users, alice):
        assert users.get_by_username("alice") == alice
        assert users.get_by_id(alice.id) == alice

    def test_lookup_miss_returns_none(self, users):
        assert users.get_by_username("nobody") is None
        assert users.get_by_id(12345) is None

    def test_username_is_case_sensitive(self, users, alice):
        assert users.get_by_username("Alice") is None
        users.create_user(User(username="Alice", hashed_password="h"))
        assert users.get_by_username("Alice").id != alice.id

    def test_duplicate_username_rejected(self, users, alice):
        with pytest.raises(DuplicateUsername):
            users.create_user(User(username="alice", hashed_password="other"))
        assert users.get_by_username("alice").hashed_password == alice.hashed_password

    def test_update_role(self, users, alice):
        assert users.update_role(alice.id, Role.ADMIN) is True
        assert users.get_by_id(alice.id).role is Role.ADMIN
        assert users.update_role(99999, Role.ADMIN) is False

    def test_concurrent_registration_exactly_one_wins(self, file_stores):
        user_store, _ = file_stores

        def attempt(i: int) -> str:
            try:
                user_store.create_user(User(username="race", hashed_password=f"h{i}"))
                return "won"
            except DuplicateUsername:
                return "duplicate"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(16)))

        assert outcomes.count("won") == 1
        assert outcomes.count("duplicate") == 15


# ---------------------------------------------------------------------------
# RefreshTokenStore
# ---------------------------------------------------------------------------


class TestRefreshTokenCreate:
    def test_create_returns_raw_token_once(self, tokens, alice):
        created = tokens.create(alice.id, T0)
        assert created.token
        assert created.user_id == alice.id
        assert created.expires_at == T0 + timedelta(seconds=TTL)
        assert created.consumed is False

        stored = tokens.get_by_token(created.token)
        assert stored.token is None
        assert stored.token_hash == hash_refresh_token(created.token)
        assert stored.token_hash != created.token

    def test_token_has_at_least_128_bits(self, tokens, alice):
        # token_urlsafe(32) -> 43 base64url chars = 256 bits
        assert len(tokens.create(alice.id, T0).token) >= 43

    def test_tokens_are_unique(self, tokens, alice):
        issued = {tokens.create(alice.id, T0).token for _ in range(50)}
        assert len(issued) == 50

    def test_unknown_user_rejected_by_foreign_key(self, tokens):
        from sqlalchemy.exc import IntegrityError

        with pytest.raises(IntegrityError):
            tokens.create(424242, T0)


class TestVerifyAndConsume:
    def test_returns_owner_id(self, tokens, alice):
        created = tokens.create(alice.id, T0)
        assert tokens.verify_and_consume(created.token, T0 + timedelta(seconds=1)) == alice.id

    def test_never_issued_token_not_found(self, tokens, alice):
        tokens.create(alice.id, T0)
        with pytest.raises(RefreshTokenNotFound):
            tokens.verify_and_consume("never-issued", T0)

    def test_tampered_token_not_found(self, tokens, alice):
        raw = tokens.create(alice.id, T0).token
        tampered = raw[:-1] + ("a" if raw[-1] != "a" else "b")
        with pytest.raises(RefreshTokenNotFound):
            tokens.verify_and_consume(tampered, T0)

    def test_valid_at_exact_expiry(self, tokens, alice):
        raw = tokens.create(alice.id, T0).token
        assert tokens.verify_and_consume(raw, T0 + timedelta(seconds=TTL)) == alice.id

    def test_expired(self, tokens, alice):
        raw = tokens.create(alice.id, T0).token
        with pytest.raises(RefreshTokenExpired):
            tokens.verify_and_consume(raw, T0 + timedelta(seconds=TTL, microseconds=1))

    def test_single_use(self, tokens, alice):
        raw = tokens.create(alice.id, T0).token
        tokens.verify_and_consume(raw, T0)
        assert tokens.get_by_token(raw).consumed is True
        with pytest.raises(RefreshTokenAlreadyUsed):
            tokens.verify_and_consume(raw, T0)

    def test_reusable_without_consume(self, tokens, alice):
        raw = tokens.create(alice.id, T0).token
        for _ in range(3):
            assert tokens.verify_and_consume(raw, T0, consume=False) == alice.id
        assert tokens.get_by_token(raw).consumed is False

    def test_expired_without_consume(self, tokens, alice):
        raw = tokens.create(alice.id, T0).token
        with pytest.raises(RefreshTokenExpired):
            tokens.verify_and_consume(raw, T0 + timedelta(seconds=TTL + 1), consume=False)

    def test_all_reasons_share_one_parent(self):
        for exc in (RefreshTokenNotFound, RefreshTokenExpired, RefreshTokenAlreadyUsed):
            assert issubclass(exc, InvalidRefreshToken)
            assert exc.code == InvalidRefreshToken.code

    def test_concurrent_consume_exactly_one_succeeds(self, file_stores):
        user_store, token_store = file_stores
        owner = user_store.create_user(User(username="carol", hashed_password="h"))
        raw = token_store.create(owner.id, T0).token

        def attempt(_: int) -> str:
            try:
                token_store.verify_and_consume(raw, T0)
                return "ok"
            except RefreshTokenAlreadyUsed:
                return "used"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(16)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("used") == 15


class TestRevocation:
    def test_revoke_single_token(self, tokens, alice):
        keep = tokens.create(alice.id, T0).token
        drop = tokens.create(alice.id, T0).token
        assert tokens.revoke(drop) is True
        assert tokens.revoke(drop) is False
        with pytest.raises(RefreshTokenAlreadyUsed):
            tokens.verify_and_consume(drop, T0)
        assert tokens.verify_and_consume(keep, T0) == alice.id

    def test_revoke_unknown_is_noop(self, tokens):
        assert tokens.revoke("no-such-token") is False

    def test_list_active_newest_first(self, tokens, alice):
        older = tokens.create(alice.id, T0).token
        newer = tokens.create(alice.id, T0 + timedelta(seconds=10)).token
        active = tokens.list_active(alice.id, T0 + timedelta(seconds=10))
        assert [t.token_hash for t in active] == [hash_refresh_token(newer), hash_refresh_token(older)]

    def test_list_active_skips_expired_and_consumed(self, tokens, alice):
        stale = tokens.create(alice.id, T0 - timedelta(seconds=TTL + 5)).token
        used = tokens.create(alice.id, T0).token
        tokens.revoke(used)
        live = tokens.create(alice.id, T0).token
        hashes = [t.token_hash for t in tokens.list_active(alice.id, T0)]
        assert hashes == [hash_refresh_token(live)]
        assert hash_refresh_token(stale) not in hashes

    def test_revoke_excess_keeps_newest(self, tokens, alice):
        raws = [tokens.create(alice.id, T0 + timedelta(seconds=i)).token for i in range(5)]
        now = T0 + timedelta(seconds=5)
        assert tokens.revoke_excess(alice.id, keep=2, now=now) == 3
        active = {t.token_hash for t in tokens.list_active(alice.id, now)}
        assert active == {hash_refresh_token(raws[3]), hash_refresh_token(raws[4])}

    def test_revoke_excess_zero_is_noop(self, tokens, alice):
        for i in range(3):
            tokens.create(alice.id, T0)
        assert tokens.revoke_excess(alice.id, keep=0, now=T0) == 0
        assert len(tokens.list_active(alice.id, T0)) == 3

    def test_revoke_excess_is_per_user(self, users, tokens, alice):
        bob = users.create_user(User(username="bob", hashed_password="h"))
        tokens.create(bob.id, T0)
        tokens.create(alice.id, T0)
        tokens.create(alice.id, T0)
        tokens.revoke_excess(alice.id, keep=1, now=T0)
        assert len(tokens.list_active(bob.id, T0)) == 1


class TestPurge:
    def test_purge_removes_expired_and_consumed_only(self, users, tokens, alice):
        expired = tokens.create(alice.id, T0 - timedelta(seconds=TTL + 1)).token
        used = tokens.create(alice.id, T0).token
        tokens.revoke(used)
        live = tokens.create(alice.id, T0).token

        assert tokens.purge_expired(T0) == 2
        assert tokens.get_by_token(expired) is None
        assert tokens.get_by_token(used) is None
        assert tokens.get_by_token(live) is not None

    def test_purge_never_deletes_users(self, users, tokens, alice):
        tokens.create(alice.id, T0 - timedelta(days=30))
        tokens.purge_expired(T0)
        assert users.get_by_id(alice.id) == alice
