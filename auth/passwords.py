"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

bcrypt.gensalt() produces a new random salt on every call, so hashing the
same password twice yields two different digests. checkpw() compares in
constant time.

Passwords longer than 72 bytes are rejected by bcrypt 4.x. The API layer
caps input at 72 UTF-8 bytes (api/models.py) so hash() never sees one.
"""

from __future__ import annotations

import bcrypt

_DUMMY_PASSWORD = "payroll_timing_dummy"


class PasswordHasher:
    """One-way salted password hashing with a tunable bcrypt cost factor.

    Each round doubles the work. 12 is the production default; tests use 4
    (the bcrypt minimum) to stay fast.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once so the first login attempt is not measurably slower
        # than subsequent ones.
        self._dummy_hash = self.hash(_DUMMY_PASSWORD)

    def hash(self, plain: str) -> str:
        """Return a bcrypt digest of the plaintext password."""
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext matches the digest.

        A malformed digest fails closed: bcrypt raises ValueError on a bad
        salt, and that is reported as a plain mismatch.
        """
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    def burn(self, plain: str) -> None:
        """Run one verification against the dummy hash and discard the result.

        Called when the username does not exist, so the response time of a
        login against an unknown user matches that of a wrong password.
        """
        self.verify(plain, self._dummy_hash)
