"""
Role Synchronizer: keeps the directory role consistent with ledger membership.

Intent:
    Orchestrate grant / revoke / author-approval flows across two stores:
    the ledger (authoritative, transactional) and the user directory (mirror).
    Preconditions are checked against both, the ledger transaction is submitted
    and confirmed, and only then is the directory updated.

Behavior:
    - The directory write is never issued before a successful receipt.
    - A failed or reverted transaction raises TransactionFailed and leaves the
      directory untouched.
    - A directory failure after ledger success is retried (idempotently) and,
      if it persists, raised as PersistenceError and audited as
      `reconcile_required`; `reconciliation.Reconciler` repairs the drift.
    - A transaction broadcast without a receipt (TransactionUnconfirmed) may
      still be mined, so it is also audited as `reconcile_required`.
    - Operations on the same wallet are serialized by a non-blocking advisory
      lock; directory writes are compare-and-swap on the prior role.
    - Every grant/revoke/approve attempt with a well-formed wallet leaves
      exactly one audit entry, including lock and role rejections.

Permissions:
    The acting identity comes from the Access Control Gate. grant/revoke need
    DEFAULT_ADMIN, approve/revoke author need PLATFORM_ADMIN, requesting the
    author role needs USER.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from threading import Lock
from typing import Callable, Iterator, List, Optional, Set

from .audit import (
    OUTCOME_FAILED,
    OUTCOME_RECONCILE_REQUIRED,
    OUTCOME_SUCCESS,
    AuditSinkProtocol,
    RoleGrantAudit,
    safe_record,
)
from .author_requests import AuthorRequest, AuthorRequestQueueProtocol
from .directory import UserDirectoryProtocol, UserRecord
from .domain import (
    AUTHOR,
    DEFAULT_ADMIN,
    PLATFORM_ADMIN,
    USER,
    normalize_wallet,
    require_grantable_role,
)
from .errors import (
    AlreadyGranted,
    ConcurrentUpdate,
    Forbidden,
    NoRequestFound,
    NotGranted,
    PersistenceError,
    RoleMismatch,
    RoleSyncError,
    TransactionFailed,
    TransactionUnconfirmed,
    UserNotFound,
)
from .gate import Identity, authorize
from .ledger import LedgerClientProtocol, LedgerReceipt, RoleIdCache

LOG = logging.getLogger("librety.identity_access.sync")


class WalletLocks:
    """Per-wallet advisory locks; a busy wallet rejects the second caller.

    Acquisition never blocks, so only wallets with an operation in flight are
    tracked and a released wallet leaves no entry behind.
    """

    def __init__(self) -> None:
        self._busy: Set[str] = set()
        self._guard = Lock()

    def __contains__(self, wallet: object) -> bool:
        with self._guard:
            return wallet in self._busy

    @contextmanager
    def hold(self, wallet: str) -> Iterator[None]:
        with self._guard:
            if wallet in self._busy:
                raise ConcurrentUpdate("sync_in_progress", f"Another role change for {wallet} is in progress.")
            self._busy.add(wallet)
        try:
            yield
        finally:
            with self._guard:
                self._busy.discard(wallet)


@dataclass(frozen=True)
class SyncResult:
    action: str
    wallet_address: str
    role: str
    message: str
    tx_hash: Optional[str] = None


def _role_label(role: object) -> Optional[str]:
    return role if isinstance(role, str) and role else None


@dataclass
class _Attempt:
    actor: Identity
    action: str
    role: Optional[str]
    wallet: str
    # True once the ledger may have changed (receipt or unconfirmed broadcast).
    ledger_committed: bool = False
    tx_hash: Optional[str] = None


class RoleSynchronizer:
    """Coordinates role changes between the ledger and the user directory.

    Parameters
    ----------
    ledger:
        Injected ledger client (web3-backed in production, in-memory in tests).
    directory, requests, audit:
        User directory, author request queue and audit sink.
    role_ids:
        Role identifier cache; built from `ledger` when omitted.
    persist_retries:
        Attempts for the directory write after ledger confirmation.
    locks:
        Shared per-wallet locks (also used by the reconciliation sweep).
    """

    def __init__(
        self,
        *,
        ledger: LedgerClientProtocol,
        directory: UserDirectoryProtocol,
        requests: AuthorRequestQueueProtocol,
        audit: AuditSinkProtocol,
        role_ids: Optional[RoleIdCache] = None,
        persist_retries: int = 3,
        locks: Optional[WalletLocks] = None,
    ) -> None:
        self._ledger = ledger
        self._directory = directory
        self._requests = requests
        self._audit = audit
        self._role_ids = role_ids or RoleIdCache(ledger)
        self._persist_retries = max(1, int(persist_retries))
        self._locks = locks if locks is not None else WalletLocks()

    # ----------------------------- public operations ------------------------

    def grant(self, actor: Identity, wallet_address: str, role: str) -> SyncResult:
        """Grant `role` on the ledger, then mirror it into the directory."""
        authorize(actor, DEFAULT_ADMIN)
        wallet = normalize_wallet(wallet_address)
        attempt = _Attempt(actor=actor, action="grant_role", role=_role_label(role), wallet=wallet)
        with self._audited(attempt), self._locks.hold(wallet):
            role = require_grantable_role(role)
            user = self._require_user(wallet)
            role_id = self._role_ids.get(role)
            if self._ledger.has_role(role_id, wallet):
                raise AlreadyGranted(
                    "already_granted", f"Role '{role}' already granted to wallet address {wallet}"
                )
            self._submit(attempt, self._ledger.grant_role, role_id)
            self._commit_role(attempt, expected=user.role, new=role)
        LOG.info("Role %s granted to %s (tx=%s)", role, wallet, attempt.tx_hash)
        return SyncResult(
            action=attempt.action,
            wallet_address=wallet,
            role=role,
            message=f"Role '{role}' granted to user with wallet address {wallet}",
            tx_hash=attempt.tx_hash,
        )

    def revoke(self, actor: Identity, wallet_address: str, role: str) -> SyncResult:
        """Revoke `role` on the ledger, then reset the directory role to USER."""
        authorize(actor, DEFAULT_ADMIN)
        return self._revoke(actor, wallet_address, role)

    def revoke_author(self, actor: Identity, wallet_address: str) -> SyncResult:
        authorize(actor, PLATFORM_ADMIN)
        return self._revoke(actor, wallet_address, AUTHOR)

    def approve_author(self, actor: Identity, wallet_address: str) -> SyncResult:
        """Grant AUTHOR for a pending request and consume the request.

        The request is deleted last; if that delete fails the role stays
        granted and the orphaned request is only logged.
        """
        authorize(actor, PLATFORM_ADMIN)
        wallet = normalize_wallet(wallet_address)
        attempt = _Attempt(actor=actor, action="approve_author", role=AUTHOR, wallet=wallet)
        with self._audited(attempt), self._locks.hold(wallet):
            if self._requests.get(wallet) is None:
                raise NoRequestFound("no_request_found", "No author role request found for this wallet address.")
            user = self._require_user(wallet)
            role_id = self._role_ids.get(AUTHOR)
            if self._ledger.has_role(role_id, wallet):
                raise AlreadyGranted("already_granted", "User already has the AUTHOR role.")
            self._submit(attempt, self._ledger.grant_role, role_id)
            self._commit_role(attempt, expected=user.role, new=AUTHOR)
            self._drop_request(wallet)
        LOG.info("Author request approved for %s (tx=%s)", wallet, attempt.tx_hash)
        return SyncResult(
            action=attempt.action,
            wallet_address=wallet,
            role=AUTHOR,
            message=f"Author role successfully granted to {wallet}.",
            tx_hash=attempt.tx_hash,
        )

    def request_author_role(self, actor: Identity, wallet_address: str) -> AuthorRequest:
        """File a pending AUTHOR request for the caller's own wallet.

        The claim role may be stale, so the directory and the ledger are
        checked too: a wallet that already holds a role gets no request.
        """
        authorize(actor, USER)
        wallet = normalize_wallet(wallet_address)
        if wallet != actor.wallet_address:
            raise Forbidden("forbidden", "Author role can only be requested for your own wallet.")
        with self._locks.hold(wallet):
            user = self._require_user(wallet)
            if user.role != USER:
                raise AlreadyGranted("already_granted", f"User already has the role '{user.role}'.")
            if self._ledger.has_role(self._role_ids.get(AUTHOR), wallet):
                raise AlreadyGranted("already_granted", "User already has the AUTHOR role.")
            req = self._requests.create(wallet)
        LOG.info("Author role requested by %s", wallet)
        return req

    def list_author_requests(self, actor: Identity, *, limit: int = 100, offset: int = 0) -> List[AuthorRequest]:
        authorize(actor, {PLATFORM_ADMIN, DEFAULT_ADMIN})
        limit = max(1, min(200, int(limit)))
        offset = max(0, int(offset))
        return self._requests.list_pending(limit=limit, offset=offset)

    # ----------------------------- internals --------------------------------

    def _revoke(self, actor: Identity, wallet_address: str, role: str) -> SyncResult:
        wallet = normalize_wallet(wallet_address)
        attempt = _Attempt(actor=actor, action="revoke_role", role=_role_label(role), wallet=wallet)
        with self._audited(attempt), self._locks.hold(wallet):
            role = require_grantable_role(role)
            user = self._require_user(wallet)
            if user.role != role:
                raise RoleMismatch("role_mismatch", f"User does not have the role '{role}' to revoke.")
            role_id = self._role_ids.get(role)
            if not self._ledger.has_role(role_id, wallet):
                raise NotGranted("not_granted", f"User does not have the role '{role}' to revoke.")
            self._submit(attempt, self._ledger.revoke_role, role_id)
            self._commit_role(attempt, expected=role, new=USER)
        LOG.info("Role %s revoked from %s (tx=%s)", role, wallet, attempt.tx_hash)
        return SyncResult(
            action=attempt.action,
            wallet_address=wallet,
            role=role,
            message=f"Role '{role}' revoked from user with wallet address {wallet}",
            tx_hash=attempt.tx_hash,
        )

    def _require_user(self, wallet: str) -> UserRecord:
        user = self._directory.get_by_wallet(wallet)
        if user is None:
            raise UserNotFound("user_not_found", "User not found.")
        return user

    def _submit(self, attempt: _Attempt, send: Callable[[str, str], LedgerReceipt], role_id: str) -> None:
        try:
            receipt = send(role_id, attempt.wallet)
        except TransactionUnconfirmed as exc:
            # Broadcast without a receipt: the ledger may still change.
            attempt.ledger_committed = True
            attempt.tx_hash = exc.tx_hash
            raise
        except RoleSyncError:
            raise
        except Exception as exc:
            raise TransactionFailed("transaction_failed", "Failed to send transaction.") from exc
        if not receipt.status:
            raise TransactionFailed(
                "transaction_failed", f"Transaction failed. Role '{attempt.role}' was not changed."
            )
        attempt.ledger_committed = True
        attempt.tx_hash = receipt.tx_hash

    def _commit_role(self, attempt: _Attempt, *, expected: str, new: str) -> None:
        """Compare-and-swap the directory role after ledger confirmation.

        Retries are idempotent: a directory that already holds `new` counts as
        committed. A directory that holds neither `expected` nor `new` lost a
        race and is reported as ConcurrentUpdate.
        """
        for attempt_no in range(1, self._persist_retries + 1):
            try:
                if self._directory.set_role_if(attempt.wallet, expected=expected, new=new):
                    return
                current = self._directory.get_by_wallet(attempt.wallet)
            except PersistenceError as exc:
                LOG.warning(
                    "Directory write failed for %s (attempt %d/%d): %s",
                    attempt.wallet,
                    attempt_no,
                    self._persist_retries,
                    exc.code,
                )
                continue
            if current is not None and current.role == new:
                return
            raise ConcurrentUpdate(
                "concurrent_update",
                f"Directory role for {attempt.wallet} changed during synchronization.",
            )
        raise PersistenceError(
            "persistence_error",
            f"Ledger updated but directory write failed for {attempt.wallet}; reconciliation required.",
        )

    def _drop_request(self, wallet: str) -> None:
        try:
            self._requests.delete(wallet)
        except Exception as exc:
            LOG.warning("Orphaned author request left for %s: %s", wallet, exc.__class__.__name__)

    @contextmanager
    def _audited(self, attempt: _Attempt) -> Iterator[_Attempt]:
        try:
            yield attempt
        except Exception as exc:
            detail = exc.detail if isinstance(exc, RoleSyncError) else exc.__class__.__name__
            if attempt.ledger_committed:
                LOG.error(
                    "reconcile_required action=%s role=%s wallet=%s tx=%s err=%s",
                    attempt.action,
                    attempt.role,
                    attempt.wallet,
                    attempt.tx_hash,
                    detail,
                )
            outcome = OUTCOME_RECONCILE_REQUIRED if attempt.ledger_committed else OUTCOME_FAILED
            safe_record(self._audit, self._entry(attempt, outcome, detail))
            raise
        safe_record(self._audit, self._entry(attempt, OUTCOME_SUCCESS, None))

    @staticmethod
    def _entry(attempt: _Attempt, outcome: str, error: Optional[str]) -> RoleGrantAudit:
        return RoleGrantAudit(
            actor_wallet=attempt.actor.wallet_address,
            action=attempt.action,
            role=attempt.role,
            target_wallet=attempt.wallet,
            outcome=outcome,
            error=error,
        )


__all__ = ["RoleSynchronizer", "SyncResult", "WalletLocks"]
