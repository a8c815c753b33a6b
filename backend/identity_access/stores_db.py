"""
Postgres adapters for the user directory, author request queue and audit log.

Why: The in-memory stores are not durable and do not scale across instances.
These adapters persist the same protocols in Postgres (schema in
`backend/migrations/0001_roles.sql`) so several API workers share one
directory.

Behavior:
- Every statement runs on a short-lived autocommit connection; single-row
  updates are atomic, and the role update is a compare-and-swap
  (`update ... where role = <expected> returning`).
- Driver errors are translated into `PersistenceError`; unique violations on
  email/wallet become `DuplicateAccount`, on the request queue
  `DuplicateRequest`. Raw driver messages are never surfaced (they may echo
  parameters).

Note: This module uses psycopg3. It is imported only when enabled via
`ROLES_BACKEND=db`. Tests run against the in-memory stores or a fake driver.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import logging
import os
from typing import Callable, Iterator, List, Optional

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .audit import RoleGrantAudit
from .author_requests import AuthorRequest
from .directory import UserRecord
from .domain import ALLOWED_ROLES, DEFAULT_ROLE
from .errors import DuplicateAccount, DuplicateRequest, PersistenceError, RoleSyncError, ValidationError

LOG = logging.getLogger("librety.identity_access.db")

UNIQUE_VIOLATION = "23505"

_USER_COLUMNS = "id::text, email, wallet_address, role, password_hash, created_at"


def _iso(value) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value) if value is not None else ""


def _row_to_user(row) -> UserRecord:
    return UserRecord(
        id=str(row[0]),
        email=row[1],
        wallet_address=row[2],
        role=row[3],
        password_hash=row[4],
        created_at=_iso(row[5]),
    )


def _row_to_request(row) -> AuthorRequest:
    return AuthorRequest(wallet_address=row[0], requested_at=_iso(row[1]), status=row[2])


def _constraint_name(exc: Exception) -> str:
    diag = getattr(exc, "diag", None)
    return str(getattr(diag, "constraint_name", "") or "")


class _PgStore:
    """Shared connection handling for the Postgres adapters."""

    def __init__(self, dsn: str | None = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for the Postgres role stores")
        self._dsn = dsn or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for the Postgres role stores")

    @contextmanager
    def _cursor(self, *, on_unique: Optional[Callable[[Exception], RoleSyncError]] = None) -> Iterator:
        try:
            with psycopg.connect(self._dsn, autocommit=True) as conn:
                with conn.cursor() as cur:
                    yield cur
        except psycopg.Error as exc:
            if on_unique is not None and getattr(exc, "sqlstate", None) == UNIQUE_VIOLATION:
                raise on_unique(exc) from exc
            LOG.warning("%s: database error %s", self.__class__.__name__, exc.__class__.__name__)
            raise PersistenceError("persistence_error", "Database operation failed.") from exc


class DBUserDirectory(_PgStore):
    """Postgres-backed `UserDirectoryProtocol` on table `public.users`."""

    def create_user(
        self,
        *,
        email: str,
        wallet_address: str,
        password_hash: Optional[str],
        role: str = DEFAULT_ROLE,
    ) -> UserRecord:
        if role not in ALLOWED_ROLES:
            raise ValidationError("invalid_role", "Invalid role specified.")

        def _duplicate(exc: Exception) -> RoleSyncError:
            if "email" in _constraint_name(exc):
                return DuplicateAccount("duplicate_email", "An account with this email already exists.")
            return DuplicateAccount("duplicate_wallet", "An account with this wallet address already exists.")

        with self._cursor(on_unique=_duplicate) as cur:
            cur.execute(
                "insert into public.users (email, wallet_address, role, password_hash) "
                f"values (%s, %s, %s, %s) returning {_USER_COLUMNS}",
                (email, wallet_address, role, password_hash),
            )
            row = cur.fetchone()
        if not row:
            raise PersistenceError("persistence_error", "User insert returned no row.")
        return _row_to_user(row)

    def get_by_wallet(self, wallet_address: str) -> Optional[UserRecord]:
        with self._cursor() as cur:
            cur.execute(f"select {_USER_COLUMNS} from public.users where wallet_address = %s", (wallet_address,))
            row = cur.fetchone()
        return _row_to_user(row) if row else None

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        with self._cursor() as cur:
            cur.execute(f"select {_USER_COLUMNS} from public.users where email = %s", (email,))
            row = cur.fetchone()
        return _row_to_user(row) if row else None

    def set_role_if(self, wallet_address: str, *, expected: str, new: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "update public.users set role = %s where wallet_address = %s and role = %s returning wallet_address",
                (new, wallet_address, expected),
            )
            row = cur.fetchone()
        return bool(row)

    def list_users(self, *, limit: int = 500, offset: int = 0) -> List[UserRecord]:
        with self._cursor() as cur:
            cur.execute(
                f"select {_USER_COLUMNS} from public.users order by created_at, id limit %s offset %s",
                (int(limit), int(offset)),
            )
            rows = cur.fetchall() or []
        return [_row_to_user(r) for r in rows]


class DBAuthorRequestQueue(_PgStore):
    """Postgres-backed `AuthorRequestQueueProtocol` on table `public.author_requests`."""

    def create(self, wallet_address: str) -> AuthorRequest:
        def _duplicate(exc: Exception) -> RoleSyncError:
            return DuplicateRequest("duplicate_request", "Request already submitted.")

        with self._cursor(on_unique=_duplicate) as cur:
            cur.execute(
                "insert into public.author_requests (wallet_address) values (%s) "
                "returning wallet_address, requested_at, status",
                (wallet_address,),
            )
            row = cur.fetchone()
        if not row:
            raise PersistenceError("persistence_error", "Author request insert returned no row.")
        return _row_to_request(row)

    def get(self, wallet_address: str) -> Optional[AuthorRequest]:
        with self._cursor() as cur:
            cur.execute(
                "select wallet_address, requested_at, status from public.author_requests where wallet_address = %s",
                (wallet_address,),
            )
            row = cur.fetchone()
        return _row_to_request(row) if row else None

    def delete(self, wallet_address: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "delete from public.author_requests where wallet_address = %s returning wallet_address",
                (wallet_address,),
            )
            row = cur.fetchone()
        return bool(row)

    def list_pending(self, *, limit: int = 100, offset: int = 0) -> List[AuthorRequest]:
        with self._cursor() as cur:
            cur.execute(
                "select wallet_address, requested_at, status from public.author_requests "
                "where status = 'PENDING' order by requested_at limit %s offset %s",
                (int(limit), int(offset)),
            )
            rows = cur.fetchall() or []
        return [_row_to_request(r) for r in rows]


class DBAuditLog(_PgStore):
    """Append-only audit sink on table `public.role_grant_audit`."""

    def record(self, entry: RoleGrantAudit) -> None:
        with self._cursor() as cur:
            cur.execute(
                "insert into public.role_grant_audit "
                "(actor_wallet, action, role, target_wallet, outcome, error, created_at) "
                "values (%s, %s, %s, %s, %s, %s, %s)",
                (
                    entry.actor_wallet,
                    entry.action,
                    entry.role,
                    entry.target_wallet,
                    entry.outcome,
                    entry.error,
                    entry.timestamp,
                ),
            )


__all__ = ["DBAuditLog", "DBAuthorRequestQueue", "DBUserDirectory", "HAVE_PSYCOPG"]
