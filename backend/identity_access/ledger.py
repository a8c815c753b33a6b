"""
Ledger adapters for the on-chain role registry (access-control contract).

Why:
    The ledger is the authoritative store of role membership. The synchronizer
    only needs three capabilities: resolve a symbolic role to its on-chain
    identifier, read membership (`hasRole`) and submit a signed
    `grantRole`/`revokeRole` transaction and wait for its receipt. This module
    defines that port and two adapters:

    - `Web3LedgerClient`: talks to an EVM JSON-RPC node via web3.py and signs
      with the designated administrator key.
    - `InMemoryLedger`: deterministic dev/test double with fault injection.

Security:
    The admin private key is held only by the adapter instance. Never log it,
    and never log raw exception messages from the RPC layer (they may echo
    signed payloads).
"""
from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Protocol, Set, Tuple

import requests

from .domain import LEDGER_ROLE_METHODS
from .errors import LedgerError, TransactionFailed, TransactionUnconfirmed

try:  # pragma: no cover - optional dependency in dev
    from web3 import Web3
    HAVE_WEB3 = True
except Exception:  # pragma: no cover
    Web3 = None  # type: ignore
    HAVE_WEB3 = False

LOG = logging.getLogger("librety.identity_access.ledger")


@dataclass(frozen=True)
class LedgerReceipt:
    """Outcome of a mined transaction. `status` is False when it reverted."""

    status: bool
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


class LedgerClientProtocol(Protocol):
    def role_identifier(self, method_name: str) -> str:
        ...

    def has_role(self, role_id: str, wallet: str) -> bool:
        ...

    def grant_role(self, role_id: str, wallet: str) -> LedgerReceipt:
        ...

    def revoke_role(self, role_id: str, wallet: str) -> LedgerReceipt:
        ...


class RoleIdCache:
    """Process-lifetime cache of symbolic role -> ledger role identifier.

    Values are contract constants, so concurrent lazy population is harmless
    (last writer wins with an identical value). No expiry.
    """

    def __init__(self, ledger: LedgerClientProtocol, methods: Dict[str, str] | None = None):
        self._ledger = ledger
        self._methods = dict(methods or LEDGER_ROLE_METHODS)
        self._entries: Dict[str, str] = {}

    def get(self, role: str) -> str:
        cached = self._entries.get(role)
        if cached is not None:
            return cached
        method = self._methods.get(role)
        if method is None:
            raise LedgerError("role_identifier_unavailable", f"No ledger mapping for role {role}.")
        role_id = self._ledger.role_identifier(method)
        self._entries[role] = role_id
        return role_id


# ----------------------------- web3 adapter ---------------------------------


def load_abi(path: str | Path) -> list:
    """Load a contract ABI from a compiler artifact (`{"abi": [...]}`) or a bare list."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    abi = raw.get("abi") if isinstance(raw, dict) else raw
    if not isinstance(abi, list):
        raise ValueError(f"ABI file {path} does not contain an ABI array")
    return abi


class Web3LedgerClient:
    """Ledger client backed by web3.py.

    Parameters
    ----------
    web3:
        A connected `Web3` instance.
    contract:
        Contract handle exposing `hasRole`, `grantRole`, `revokeRole` and the
        role-hash view methods.
    admin_private_key:
        Key of the account holding the admin role on the contract; used to sign
        every role transaction.
    receipt_timeout:
        Seconds to wait for a receipt before treating the submission as failed.
    """

    def __init__(self, *, web3, contract, admin_private_key: str, receipt_timeout: int = 120) -> None:
        if not admin_private_key:
            raise RuntimeError("Ledger admin private key is required")
        self._w3 = web3
        self._contract = contract
        self._account = web3.eth.account.from_key(admin_private_key)
        self._receipt_timeout = receipt_timeout

    @classmethod
    def from_settings(
        cls,
        *,
        rpc_url: str,
        contract_address: str,
        abi_path: str,
        admin_private_key: str,
        receipt_timeout: int = 120,
    ) -> "Web3LedgerClient":
        if not HAVE_WEB3:
            raise RuntimeError("web3 is required for Web3LedgerClient")
        session = requests.Session()
        session.headers.update({"User-Agent": "librety-roles/0.1"})
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 10}, session=session))
        contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=load_abi(abi_path))
        return cls(web3=w3, contract=contract, admin_private_key=admin_private_key, receipt_timeout=receipt_timeout)

    @property
    def admin_address(self) -> str:
        return str(self._account.address)

    def _checksum(self, wallet: str) -> str:
        return self._w3.to_checksum_address(wallet)

    def role_identifier(self, method_name: str) -> str:
        method = getattr(self._contract.functions, method_name, None)
        if method is None:
            raise LedgerError("role_identifier_unavailable", f"Method {method_name} does not exist on contract.")
        try:
            value = method().call()
        except Exception as exc:
            LOG.warning("Role identifier fetch failed for %s: %s", method_name, exc.__class__.__name__)
            raise LedgerError("role_identifier_unavailable", f"Failed to fetch role hash for {method_name}.") from exc
        return value.hex() if isinstance(value, (bytes, bytearray)) else str(value)

    def has_role(self, role_id: str, wallet: str) -> bool:
        try:
            return bool(self._contract.functions.hasRole(role_id, self._checksum(wallet)).call())
        except Exception as exc:
            LOG.warning("hasRole call failed for %s: %s", wallet, exc.__class__.__name__)
            raise LedgerError("ledger_unavailable", "Could not read role membership from the ledger.") from exc

    def grant_role(self, role_id: str, wallet: str) -> LedgerReceipt:
        return self._transact(self._contract.functions.grantRole(role_id, self._checksum(wallet)), "grantRole")

    def revoke_role(self, role_id: str, wallet: str) -> LedgerReceipt:
        return self._transact(self._contract.functions.revokeRole(role_id, self._checksum(wallet)), "revokeRole")

    def _transact(self, fn, label: str) -> LedgerReceipt:
        """Estimate gas, sign with the admin key, broadcast and wait for the receipt.

        A failure before broadcast (gas estimation revert, RPC error) raises
        TransactionFailed. A missing receipt after broadcast raises
        TransactionUnconfirmed carrying the hash, since the transaction may
        still be mined. A mined-but-reverted transaction returns a receipt
        with status False.
        """
        sender = self._account.address
        try:
            gas = fn.estimate_gas({"from": sender})
            tx = fn.build_transaction(
                {
                    "from": sender,
                    "nonce": self._w3.eth.get_transaction_count(sender),
                    "gas": gas,
                    "gasPrice": self._w3.eth.gas_price,
                }
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            LOG.warning("%s submission failed: %s", label, exc.__class__.__name__)
            raise TransactionFailed("transaction_failed", f"Failed to send {label} transaction.") from exc
        tx_hex = tx_hash.hex() if isinstance(tx_hash, (bytes, bytearray)) else str(tx_hash)
        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except Exception as exc:
            LOG.error("%s tx=%s broadcast but unconfirmed: %s", label, tx_hex, exc.__class__.__name__)
            raise TransactionUnconfirmed(
                "transaction_unconfirmed",
                f"{label} transaction was broadcast but not confirmed in time.",
                tx_hash=tx_hex,
            ) from exc
        return LedgerReceipt(
            status=int(receipt.get("status", 0)) == 1,
            tx_hash=tx_hex,
            block_number=receipt.get("blockNumber"),
        )


# ----------------------------- in-memory adapter ----------------------------


@dataclass
class InMemoryLedger:
    """Deterministic ledger for development and tests.

    Fault injection:
        - `revert_next`: number of upcoming transactions mined with status False.
        - `submit_error`: exception raised on the next submission (then cleared).
        - `unconfirmed_next`: number of upcoming transactions that are applied
          but whose receipt never arrives (TransactionUnconfirmed).
    """

    methods: Set[str] = field(default_factory=lambda: set(LEDGER_ROLE_METHODS.values()))
    members: Set[Tuple[str, str]] = field(default_factory=set)
    revert_next: int = 0
    submit_error: Optional[Exception] = None
    unconfirmed_next: int = 0
    transactions: list = field(default_factory=list)

    def role_identifier(self, method_name: str) -> str:
        if method_name not in self.methods:
            raise LedgerError("role_identifier_unavailable", f"Method {method_name} does not exist on contract.")
        return "0x" + hashlib.sha256(method_name.encode("utf-8")).hexdigest()

    def has_role(self, role_id: str, wallet: str) -> bool:
        return (role_id, wallet.lower()) in self.members

    def grant_role(self, role_id: str, wallet: str) -> LedgerReceipt:
        return self._submit("grantRole", role_id, wallet.lower())

    def revoke_role(self, role_id: str, wallet: str) -> LedgerReceipt:
        return self._submit("revokeRole", role_id, wallet.lower())

    def _submit(self, label: str, role_id: str, wallet: str) -> LedgerReceipt:
        if self.submit_error is not None:
            exc, self.submit_error = self.submit_error, None
            raise TransactionFailed("transaction_failed", f"Failed to send {label} transaction.") from exc
        tx_hash = "0x" + hashlib.sha256(f"{label}:{role_id}:{wallet}:{len(self.transactions)}".encode()).hexdigest()
        key = (role_id, wallet)
        if self.revert_next > 0:
            self.revert_next -= 1
            ok = False
        elif label == "grantRole":
            ok = key not in self.members
            self.members.add(key)
        else:
            ok = key in self.members
            self.members.discard(key)
        self.transactions.append((label, role_id, wallet, ok))
        if self.unconfirmed_next > 0:
            self.unconfirmed_next -= 1
            raise TransactionUnconfirmed(
                "transaction_unconfirmed",
                f"{label} transaction was broadcast but not confirmed in time.",
                tx_hash=tx_hash,
            )
        return LedgerReceipt(status=ok, tx_hash=tx_hash, block_number=len(self.transactions))


__all__ = [
    "HAVE_WEB3",
    "InMemoryLedger",
    "LedgerClientProtocol",
    "LedgerReceipt",
    "RoleIdCache",
    "Web3LedgerClient",
    "load_abi",
]
