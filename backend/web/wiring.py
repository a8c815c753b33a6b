"""
Service wiring for the web adapter.

Why:
    Routes need one shared set of services (synchronizer, reconciler, account
    service, gate) built from configuration. Keeping construction here lets
    tests swap the whole set with in-memory doubles via `set_services` without
    touching module globals in each router.

Behavior:
    - `ROLES_BACKEND=db` selects the Postgres stores; otherwise in-memory.
    - `LEDGER_BACKEND=web3` selects the JSON-RPC ledger client; otherwise the
      in-memory ledger.
    - The synchronizer and the reconciler share one role-identifier cache and
      one set of per-wallet locks.
    - When DEFAULT_ADMIN_WALLET/EMAIL are set, the default admin directory
      entry is ensured at build time.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from backend.identity_access.accounts import AccountService, bootstrap_default_admin
from backend.identity_access.audit import AuditSinkProtocol, InMemoryAuditLog
from backend.identity_access.author_requests import AuthorRequestQueueProtocol, InMemoryAuthorRequestQueue
from backend.identity_access.directory import InMemoryUserDirectory, UserDirectoryProtocol
from backend.identity_access.errors import RoleSyncError
from backend.identity_access.gate import AccessGate
from backend.identity_access.ledger import InMemoryLedger, LedgerClientProtocol, RoleIdCache, Web3LedgerClient
from backend.identity_access.reconciliation import Reconciler
from backend.identity_access.synchronizer import RoleSynchronizer, WalletLocks
from backend.identity_access.tokens import TokenSettings

from .config import AppConfig, load_config

LOG = logging.getLogger("librety.web.wiring")


@dataclass
class Services:
    directory: UserDirectoryProtocol
    requests: AuthorRequestQueueProtocol
    audit: AuditSinkProtocol
    ledger: LedgerClientProtocol
    synchronizer: RoleSynchronizer
    reconciler: Reconciler
    accounts: AccountService
    gate: AccessGate
    tokens: TokenSettings


def assemble(
    *,
    directory: UserDirectoryProtocol,
    requests: AuthorRequestQueueProtocol,
    audit: AuditSinkProtocol,
    ledger: LedgerClientProtocol,
    tokens: TokenSettings,
    persist_retries: int = 3,
) -> Services:
    """Compose services around already-built stores and ledger client."""
    role_ids = RoleIdCache(ledger)
    locks = WalletLocks()
    return Services(
        directory=directory,
        requests=requests,
        audit=audit,
        ledger=ledger,
        synchronizer=RoleSynchronizer(
            ledger=ledger,
            directory=directory,
            requests=requests,
            audit=audit,
            role_ids=role_ids,
            persist_retries=persist_retries,
            locks=locks,
        ),
        reconciler=Reconciler(ledger=ledger, directory=directory, audit=audit, role_ids=role_ids, locks=locks),
        accounts=AccountService(directory=directory, tokens=tokens),
        gate=AccessGate(secret=tokens.access_secret),
        tokens=tokens,
    )


def build_memory_services(*, tokens: Optional[TokenSettings] = None, ledger: Optional[InMemoryLedger] = None) -> Services:
    return assemble(
        directory=InMemoryUserDirectory(),
        requests=InMemoryAuthorRequestQueue(),
        audit=InMemoryAuditLog(),
        ledger=ledger or InMemoryLedger(),
        tokens=tokens or TokenSettings(access_secret="DEV_ONLY_JWT_SECRET", refresh_secret="DEV_ONLY_REFRESH_SECRET"),
    )


def build_services(cfg: Optional[AppConfig] = None, *, bootstrap_admin: bool = True) -> Services:
    """Build services from configuration (environment by default)."""
    cfg = cfg or load_config()
    tokens = TokenSettings(
        access_secret=cfg.jwt_secret,
        refresh_secret=cfg.refresh_token_secret,
        access_ttl_seconds=cfg.access_token_ttl,
        refresh_ttl_seconds=cfg.refresh_token_ttl,
    )

    if cfg.roles_backend == "db":
        # Lazy import keeps psycopg optional for in-memory development.
        from backend.identity_access.stores_db import DBAuditLog, DBAuthorRequestQueue, DBUserDirectory

        directory = DBUserDirectory(cfg.database_url or None)
        requests = DBAuthorRequestQueue(cfg.database_url or None)
        audit = DBAuditLog(cfg.database_url or None)
    else:
        directory = InMemoryUserDirectory()
        requests = InMemoryAuthorRequestQueue()
        audit = InMemoryAuditLog()

    if cfg.ledger_backend == "web3":
        ledger = Web3LedgerClient.from_settings(
            rpc_url=cfg.ledger_rpc_url,
            contract_address=cfg.ledger_contract_address,
            abi_path=cfg.ledger_abi_path,
            admin_private_key=cfg.ledger_admin_private_key,
            receipt_timeout=cfg.ledger_receipt_timeout,
        )
    else:
        ledger = InMemoryLedger()

    services = assemble(
        directory=directory,
        requests=requests,
        audit=audit,
        ledger=ledger,
        tokens=tokens,
        persist_retries=cfg.persist_retries,
    )
    LOG.info("Services wired roles_backend=%s ledger_backend=%s", cfg.roles_backend, cfg.ledger_backend)

    if bootstrap_admin and cfg.default_admin_wallet and cfg.default_admin_email:
        try:
            bootstrap_default_admin(
                directory,
                wallet_address=cfg.default_admin_wallet,
                email=cfg.default_admin_email,
                password=cfg.default_admin_password or None,
            )
        except RoleSyncError as exc:
            LOG.error("Default admin bootstrap failed: %s", exc.code)
    return services


_SERVICES: Optional[Services] = None


def get_services() -> Services:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services()
    return _SERVICES


def set_services(services: Optional[Services]) -> None:
    """Allow tests to provide a service set; `None` rebuilds lazily from env."""
    global _SERVICES
    _SERVICES = services


__all__ = ["Services", "assemble", "build_memory_services", "build_services", "get_services", "set_services"]
