"""
Reconciliation sweep: repair drift between ledger membership and directory roles.

Why:
    The synchronizer writes the directory only after a confirmed transaction.
    When that write fails for good the ledger is ahead of the directory and the
    attempt is audited as `reconcile_required`. This sweep walks the directory
    (or an explicit wallet list), derives the role the ledger implies, and
    compare-and-swaps the directory to match.

Behavior:
    - The ledger is authoritative. A wallet holding several mapped roles is
      mirrored by `ROLE_PRECEDENCE`; a wallet holding none mirrors as USER.
    - DEFAULT_ADMIN directory entries are not mirrored on the ledger and are
      skipped.
    - Every correction is logged at WARNING and audited with action
      `reconcile`. `dry_run` reports drift without writing.
    - Wallets locked by an in-flight synchronization are skipped, never waited on.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Iterable, Iterator, List, Optional

from .audit import OUTCOME_FAILED, OUTCOME_SUCCESS, AuditSinkProtocol, RoleGrantAudit, safe_record
from .directory import UserDirectoryProtocol, UserRecord
from .domain import DEFAULT_ADMIN, ROLE_PRECEDENCE, USER, normalize_wallet
from .errors import ConcurrentUpdate, RoleSyncError
from .ledger import LedgerClientProtocol, RoleIdCache
from .synchronizer import WalletLocks

LOG = logging.getLogger("librety.identity_access.reconcile")

SYSTEM_ACTOR = "system:reconcile"
PAGE_SIZE = 500


@dataclass(frozen=True)
class Correction:
    wallet_address: str
    directory_role: str
    ledger_role: str
    applied: bool


@dataclass
class ReconcileReport:
    checked: int = 0
    corrections: List[Correction] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)
    dry_run: bool = False

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "dryRun": self.dry_run,
            "corrections": [
                {
                    "walletAddress": c.wallet_address,
                    "directoryRole": c.directory_role,
                    "ledgerRole": c.ledger_role,
                    "applied": c.applied,
                }
                for c in self.corrections
            ],
            "missing": list(self.missing),
            "skipped": list(self.skipped),
            "errors": list(self.errors),
        }


class Reconciler:
    def __init__(
        self,
        *,
        ledger: LedgerClientProtocol,
        directory: UserDirectoryProtocol,
        audit: AuditSinkProtocol,
        role_ids: Optional[RoleIdCache] = None,
        locks: Optional[WalletLocks] = None,
    ) -> None:
        self._ledger = ledger
        self._directory = directory
        self._audit = audit
        self._role_ids = role_ids or RoleIdCache(ledger)
        self._locks = locks if locks is not None else WalletLocks()

    def ledger_role_for(self, wallet: str) -> str:
        """Directory role implied by the ledger for `wallet`."""
        for role in ROLE_PRECEDENCE:
            if self._ledger.has_role(self._role_ids.get(role), wallet):
                return role
        return USER

    def run(
        self,
        wallets: Optional[Iterable[str]] = None,
        *,
        dry_run: bool = False,
        actor_wallet: str = SYSTEM_ACTOR,
    ) -> ReconcileReport:
        report = ReconcileReport(dry_run=dry_run)
        if wallets is not None:
            wallets = [normalize_wallet(w) for w in wallets]
        for user, wallet in self._working_set(wallets, report):
            report.checked += 1
            if user.role == DEFAULT_ADMIN:
                continue
            try:
                self._reconcile_one(user, report, dry_run=dry_run, actor_wallet=actor_wallet)
            except ConcurrentUpdate:
                report.skipped.append(wallet)
            except RoleSyncError as exc:
                LOG.warning("Reconciliation failed for %s: %s", wallet, exc.code)
                report.errors.append({"walletAddress": wallet, "error": exc.code, "detail": exc.detail})
        LOG.info(
            "Reconciliation done checked=%d corrections=%d skipped=%d errors=%d dry_run=%s",
            report.checked,
            len(report.corrections),
            len(report.skipped),
            len(report.errors),
            dry_run,
        )
        return report

    def _working_set(self, wallets: Optional[Iterable[str]], report: ReconcileReport) -> Iterator[tuple]:
        if wallets is None:
            offset = 0
            while True:
                page = self._directory.list_users(limit=PAGE_SIZE, offset=offset)
                for user in page:
                    yield user, user.wallet_address
                if len(page) < PAGE_SIZE:
                    return
                offset += PAGE_SIZE
        for wallet in wallets:
            user = self._directory.get_by_wallet(wallet)
            if user is None:
                report.missing.append(wallet)
                continue
            yield user, wallet

    def _reconcile_one(self, user: UserRecord, report: ReconcileReport, *, dry_run: bool, actor_wallet: str) -> None:
        wallet = user.wallet_address
        with self._locks.hold(wallet):
            ledger_role = self.ledger_role_for(wallet)
            current = self._directory.get_by_wallet(wallet) or user
            if current.role == ledger_role:
                return
            if dry_run:
                report.corrections.append(Correction(wallet, current.role, ledger_role, applied=False))
                return
            applied = self._directory.set_role_if(wallet, expected=current.role, new=ledger_role)
            LOG.warning(
                "Role drift corrected wallet=%s directory=%s ledger=%s applied=%s",
                wallet,
                current.role,
                ledger_role,
                applied,
            )
            report.corrections.append(Correction(wallet, current.role, ledger_role, applied=applied))
            safe_record(
                self._audit,
                RoleGrantAudit(
                    actor_wallet=actor_wallet,
                    action="reconcile",
                    role=ledger_role,
                    target_wallet=wallet,
                    outcome=OUTCOME_SUCCESS if applied else OUTCOME_FAILED,
                    error=None if applied else "concurrent_update",
                ),
            )


__all__ = ["Correction", "ReconcileReport", "Reconciler", "SYSTEM_ACTOR"]
