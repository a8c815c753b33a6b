"""
Identity domain constants and simple helpers.

Why:
- Centralize allowed roles and the role → ledger mapping to avoid drift between
  the synchronizer, the web layer and the CLI tools.
- Canonicalize wallet addresses once at every ingress so stores never need
  case-insensitive pattern matching.
"""

from __future__ import annotations

import re

from .errors import ValidationError

DEFAULT_ADMIN = "DEFAULT_ADMIN"
PLATFORM_ADMIN = "PLATFORM_ADMIN"
FUNDS_MANAGER = "FUNDS_MANAGER"
AUTHOR = "AUTHOR"
USER = "USER"

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({DEFAULT_ADMIN, PLATFORM_ADMIN, FUNDS_MANAGER, AUTHOR, USER})
DEFAULT_ROLE = USER

# Symbolic role -> contract view method returning the role hash.
# Must stay in lockstep with the deployed access-control contract.
LEDGER_ROLE_METHODS: dict[str, str] = {
    PLATFORM_ADMIN: "PLATFORM_ADMIN_ROLE",
    FUNDS_MANAGER: "FUNDS_MANAGER_ROLE",
    AUTHOR: "AUTHOR_ROLE",
}
GRANTABLE_ROLES = frozenset(LEDGER_ROLE_METHODS)

# Used by reconciliation when a wallet holds several ledger roles at once.
ROLE_PRECEDENCE = (PLATFORM_ADMIN, FUNDS_MANAGER, AUTHOR)

_WALLET_RE = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_wallet(value: object) -> str:
    """Return the canonical (lower-case, trimmed) form of a wallet address.

    Raises ValidationError(`invalid_wallet`) when the value is not a 20-byte
    hex address with `0x` prefix.
    """
    if not isinstance(value, str):
        raise ValidationError("invalid_wallet", "Wallet address must be a string.")
    canonical = value.strip().lower()
    if not _WALLET_RE.match(canonical):
        raise ValidationError("invalid_wallet", "Wallet address must be 0x followed by 40 hex characters.")
    return canonical


def normalize_email(value: object) -> str:
    if not isinstance(value, str):
        raise ValidationError("invalid_email", "Email must be a string.")
    email = value.strip().lower()
    local, _, domain = email.rpartition("@")
    if not local or not domain or "." not in domain:
        raise ValidationError("invalid_email", "Email address is malformed.")
    return email


def require_grantable_role(role: object) -> str:
    """Return `role` if it is mirrored on the ledger, else raise `invalid_role`."""
    if not isinstance(role, str) or role not in GRANTABLE_ROLES:
        raise ValidationError("invalid_role", "Invalid role specified.")
    return role


__all__ = [
    "ALLOWED_ROLES",
    "AUTHOR",
    "DEFAULT_ADMIN",
    "DEFAULT_ROLE",
    "FUNDS_MANAGER",
    "GRANTABLE_ROLES",
    "LEDGER_ROLE_METHODS",
    "PLATFORM_ADMIN",
    "ROLE_PRECEDENCE",
    "USER",
    "normalize_email",
    "normalize_wallet",
    "require_grantable_role",
]
