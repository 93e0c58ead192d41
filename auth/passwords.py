"""
auth/passwords.py -- Password hashing (bcrypt, direct usage, no passlib wrapper).

Bcrypt is the right choice for low-entropy secrets because its cost factor
makes brute-force expensive. The cost is fixed at 10 rounds. checkpw()
compares in constant time, so verification does not leak how much of the
hash matched.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
and later reject with an explicit error.

Plaintext passwords are never logged or persisted by anything in this module.
"""

from __future__ import annotations

import bcrypt

BCRYPT_ROUNDS = 10
# bcrypt only reads this many bytes of input; 5.x raises on anything longer.
MAX_PASSWORD_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:MAX_PASSWORD_BYTES]


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Input is cut to its first 72 UTF-8 bytes, the part bcrypt actually uses.
    AuthService rejects longer passwords at signup, so the cut only matters
    for callers that skip it.
    """
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash: treat as a mismatch rather than a 500.
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Login calls verify_password() against this hash
# when the email is unknown, so response time does not reveal whether an
# account exists.
DUMMY_HASH: str = hash_password("outr_timing_dummy")
