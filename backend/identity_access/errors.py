"""
Error taxonomy for the identity_access bounded context.

Design:
    Every failure raised by the synchronizer, the gate or the account service
    derives from `RoleSyncError`, which carries a short machine-readable
    `code`, a human-readable `detail` and the HTTP status the web adapter
    should use. Adapters (Postgres, web3) translate driver exceptions into
    `PersistenceError` / `LedgerError` at their boundary.
"""

from __future__ import annotations


class RoleSyncError(Exception):
    """Base class for all domain failures."""

    status_code = 500
    default_code = "internal_error"

    def __init__(self, code: str | None = None, detail: str | None = None):
        self.code = code or self.default_code
        self.detail = detail or self.code
        super().__init__(self.detail)


# ----------------------------- 400 ------------------------------------------


class ValidationError(RoleSyncError):
    """Missing or malformed input."""

    status_code = 400
    default_code = "missing_fields"


# ----------------------------- 404 ------------------------------------------


class NotFoundError(RoleSyncError):
    status_code = 404
    default_code = "not_found"


class UserNotFound(NotFoundError):
    default_code = "user_not_found"


class NoRequestFound(NotFoundError):
    default_code = "no_request_found"


# ----------------------------- conflicts ------------------------------------


class ConflictError(RoleSyncError):
    status_code = 400
    default_code = "conflict"


class AlreadyGranted(ConflictError):
    default_code = "already_granted"


class NotGranted(ConflictError):
    default_code = "not_granted"


class RoleMismatch(ConflictError):
    default_code = "role_mismatch"


class DuplicateRequest(ConflictError):
    default_code = "duplicate_request"


class ConcurrentUpdate(ConflictError):
    """Another synchronization for the same wallet won the race."""

    default_code = "concurrent_update"


class DuplicateAccount(ConflictError):
    status_code = 409
    default_code = "duplicate_account"


# ----------------------------- 401/403 --------------------------------------


class AuthorizationError(RoleSyncError):
    status_code = 403
    default_code = "forbidden"


class Unauthenticated(AuthorizationError):
    status_code = 401
    default_code = "unauthenticated"


class Forbidden(AuthorizationError):
    default_code = "forbidden"


class InvalidToken(AuthorizationError):
    default_code = "invalid_token"


# ----------------------------- 500 ------------------------------------------


class LedgerError(RoleSyncError):
    """Ledger submission failed; nothing was written to the directory."""

    default_code = "ledger_error"


class TransactionFailed(LedgerError):
    default_code = "transaction_failed"


class TransactionUnconfirmed(TransactionFailed):
    """Broadcast, but no receipt arrived in time; it may still be mined."""

    default_code = "transaction_unconfirmed"

    def __init__(self, code: str | None = None, detail: str | None = None, *, tx_hash: str | None = None):
        super().__init__(code, detail)
        self.tx_hash = tx_hash



class PersistenceError(RoleSyncError):
    """Directory/queue/audit write failed."""

    default_code = "persistence_error"


__all__ = [
    "AlreadyGranted",
    "AuthorizationError",
    "ConcurrentUpdate",
    "ConflictError",
    "DuplicateAccount",
    "DuplicateRequest",
    "Forbidden",
    "InvalidToken",
    "LedgerError",
    "NoRequestFound",
    "NotFoundError",
    "NotGranted",
    "PersistenceError",
    "RoleMismatch",
    "RoleSyncError",
    "TransactionFailed",
    "TransactionUnconfirmed",
    "Unauthenticated",
    "UserNotFound",
    "ValidationError",
]
