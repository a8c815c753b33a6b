"""Password hashing helpers (argon2 via pwdlib)."""

from __future__ import annotations

from pwdlib import PasswordHash

_password_hash = PasswordHash.recommended()


def hash_password(password: str) -> str:
    """Hash ``password`` with the recommended (argon2) hasher."""
    if not isinstance(password, str) or not password.strip():
        raise ValueError("Password must not be empty")
    return _password_hash.hash(password)


def verify_password(password: str, hashed: str | None) -> bool:
    """Return ``True`` if ``password`` matches ``hashed``; unknown hash formats never match."""
    if not password or not hashed:
        return False
    try:
        return bool(_password_hash.verify(password, hashed))
    except Exception:
        return False


__all__ = ["hash_password", "verify_password"]
