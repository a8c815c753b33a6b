"""
User directory: the off-chain record store mirroring identity and role.

Why:
    The synchronizer and the account service need a durable, key-unique user
    store with atomic single-record updates. This module holds the record type,
    the protocol both adapters satisfy, and the in-memory adapter used for
    development and tests. The Postgres adapter lives in `stores_db.py`.

Invariants:
    - Wallet addresses and emails are stored in canonical lower-case form;
      uniqueness is enforced on that form.
    - `set_role_if` is a compare-and-swap: the role only changes when the
      stored value still equals `expected`.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Protocol
from uuid import uuid4

from .domain import ALLOWED_ROLES, DEFAULT_ROLE
from .errors import DuplicateAccount, ValidationError


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    wallet_address: str
    role: str
    password_hash: Optional[str]
    created_at: str

    def public_view(self) -> dict:
        """Serializable view without the credential."""
        return {
            "id": self.id,
            "email": self.email,
            "walletAddress": self.wallet_address,
            "role": self.role,
            "createdAt": self.created_at,
        }


class UserDirectoryProtocol(Protocol):
    def create_user(
        self,
        *,
        email: str,
        wallet_address: str,
        password_hash: Optional[str],
        role: str = DEFAULT_ROLE,
    ) -> UserRecord:
        ...

    def get_by_wallet(self, wallet_address: str) -> Optional[UserRecord]:
        ...

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        ...

    def set_role_if(self, wallet_address: str, *, expected: str, new: str) -> bool:
        ...

    def list_users(self, *, limit: int = 500, offset: int = 0) -> List[UserRecord]:
        ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryUserDirectory:
    """Dictionary-backed directory keyed by canonical wallet."""

    def __init__(self) -> None:
        self._by_wallet: Dict[str, UserRecord] = {}
        self._wallet_by_email: Dict[str, str] = {}
        self._lock = Lock()

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
        with self._lock:
            if email in self._wallet_by_email:
                raise DuplicateAccount("duplicate_email", "An account with this email already exists.")
            if wallet_address in self._by_wallet:
                raise DuplicateAccount("duplicate_wallet", "An account with this wallet address already exists.")
            rec = UserRecord(
                id=str(uuid4()),
                email=email,
                wallet_address=wallet_address,
                role=role,
                password_hash=password_hash,
                created_at=_now_iso(),
            )
            self._by_wallet[wallet_address] = rec
            self._wallet_by_email[email] = wallet_address
        return rec

    def get_by_wallet(self, wallet_address: str) -> Optional[UserRecord]:
        return self._by_wallet.get(wallet_address)

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        wallet = self._wallet_by_email.get(email)
        return self._by_wallet.get(wallet) if wallet else None

    def set_role_if(self, wallet_address: str, *, expected: str, new: str) -> bool:
        with self._lock:
            rec = self._by_wallet.get(wallet_address)
            if rec is None or rec.role != expected:
                return False
            self._by_wallet[wallet_address] = replace(rec, role=new)
            return True

    def list_users(self, *, limit: int = 500, offset: int = 0) -> List[UserRecord]:
        ordered = sorted(self._by_wallet.values(), key=lambda r: r.created_at)
        return ordered[offset: offset + limit]


__all__ = ["InMemoryUserDirectory", "UserDirectoryProtocol", "UserRecord"]
