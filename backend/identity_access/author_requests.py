"""
Author request queue: pending petitions for the AUTHOR role.

At most one request exists per canonical wallet. Requests are created by
USER-role holders and deleted by the synchronizer once the role is granted.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Protocol

from .errors import DuplicateRequest


@dataclass(frozen=True)
class AuthorRequest:
    wallet_address: str
    requested_at: str
    status: str = "PENDING"

    def public_view(self) -> dict:
        return {"walletAddress": self.wallet_address, "requestedAt": self.requested_at, "status": self.status}


class AuthorRequestQueueProtocol(Protocol):
    def create(self, wallet_address: str) -> AuthorRequest:
        ...

    def get(self, wallet_address: str) -> Optional[AuthorRequest]:
        ...

    def delete(self, wallet_address: str) -> bool:
        ...

    def list_pending(self, *, limit: int = 100, offset: int = 0) -> List[AuthorRequest]:
        ...


class InMemoryAuthorRequestQueue:
    def __init__(self) -> None:
        self._data: Dict[str, AuthorRequest] = {}
        self._lock = Lock()

    def create(self, wallet_address: str) -> AuthorRequest:
        with self._lock:
            if wallet_address in self._data:
                raise DuplicateRequest("duplicate_request", "Request already submitted.")
            req = AuthorRequest(wallet_address=wallet_address, requested_at=datetime.now(timezone.utc).isoformat())
            self._data[wallet_address] = req
        return req

    def get(self, wallet_address: str) -> Optional[AuthorRequest]:
        return self._data.get(wallet_address)

    def delete(self, wallet_address: str) -> bool:
        with self._lock:
            return self._data.pop(wallet_address, None) is not None

    def list_pending(self, *, limit: int = 100, offset: int = 0) -> List[AuthorRequest]:
        pending = [r for r in self._data.values() if r.status == "PENDING"]
        pending.sort(key=lambda r: r.requested_at)
        return pending[offset: offset + limit]


__all__ = ["AuthorRequest", "AuthorRequestQueueProtocol", "InMemoryAuthorRequestQueue"]
