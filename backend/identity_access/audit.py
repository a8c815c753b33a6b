"""
Append-only audit sink for role synchronization attempts.

Every grant/revoke/approve attempt and every reconciliation correction leaves
one `RoleGrantAudit` entry. The sink is observability only; it is never read
back to decide role state.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from threading import Lock
from typing import List, Optional, Protocol

LOG = logging.getLogger("librety.identity_access.audit")

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_RECONCILE_REQUIRED = "reconcile_required"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class RoleGrantAudit:
    actor_wallet: str
    action: str
    role: Optional[str]
    target_wallet: Optional[str]
    outcome: str = OUTCOME_SUCCESS
    error: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)


class AuditSinkProtocol(Protocol):
    def record(self, entry: RoleGrantAudit) -> None:
        ...


class InMemoryAuditLog:
    def __init__(self) -> None:
        self._entries: List[RoleGrantAudit] = []
        self._lock = Lock()

    def record(self, entry: RoleGrantAudit) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> List[RoleGrantAudit]:
        with self._lock:
            return list(self._entries)


def safe_record(sink: AuditSinkProtocol, entry: RoleGrantAudit) -> None:
    """Record an audit entry; a failing sink is logged but never masks the outcome."""
    try:
        sink.record(entry)
    except Exception as exc:
        LOG.error(
            "Audit write failed action=%s target=%s outcome=%s err=%s",
            entry.action,
            entry.target_wallet,
            entry.outcome,
            exc.__class__.__name__,
        )


__all__ = [
    "AuditSinkProtocol",
    "InMemoryAuditLog",
    "OUTCOME_FAILED",
    "OUTCOME_RECONCILE_REQUIRED",
    "OUTCOME_SUCCESS",
    "RoleGrantAudit",
    "safe_record",
]
