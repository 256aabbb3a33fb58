"""Password hashing for stored user records (bcrypt)."""

from __future__ import annotations

import hmac

import bcrypt

__all__ = ["hash_password", "verify_password"]

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
# bcrypt only reads the first 72 bytes; newer releases reject longer input.
_MAX_PASSWORD_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_MAX_PASSWORD_BYTES]


def hash_password(password: str, *, rounds: int = 12) -> str:
    """Return a salted bcrypt hash of *password*."""
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds)).decode("ascii")


def verify_password(password: str, stored: str | None) -> bool:
    """Check *password* against a stored hash.

    Legacy rows written by older clients hold the password verbatim; those
    are compared directly.
    """
    if not stored:
        return False
    if not stored.startswith(_BCRYPT_PREFIXES):
        return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))
    try:
        return bcrypt.checkpw(_encode(password), stored.encode("ascii"))
    except ValueError:
        return False
