"""
Role synchronizer behavior against in-memory ledger and directory doubles.

Covers ordering (ledger before directory), idempotent rejections, the author
request lifecycle, fault injection on the ledger and the directory, and the
per-wallet lock.
"""
from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest

from backend.identity_access.audit import (
    OUTCOME_FAILED,
    OUTCOME_RECONCILE_REQUIRED,
    OUTCOME_SUCCESS,
    InMemoryAuditLog,
)
from backend.identity_access.author_requests import InMemoryAuthorRequestQueue
from backend.identity_access.directory import InMemoryUserDirectory
from backend.identity_access.domain import (
    AUTHOR,
    DEFAULT_ADMIN,
    FUNDS_MANAGER,
    LEDGER_ROLE_METHODS,
    PLATFORM_ADMIN,
    USER,
)
from backend.identity_access.errors import (
    AlreadyGranted,
    ConcurrentUpdate,
    DuplicateRequest,
    Forbidden,
    LedgerError,
    NoRequestFound,
    NotGranted,
    PersistenceError,
    RoleMismatch,
    TransactionFailed,
    Unauthenticated,
    UserNotFound,
    ValidationError,
)
from backend.identity_access.ledger import InMemoryLedger, RoleIdCache
from backend.identity_access.synchronizer import RoleSynchronizer, WalletLocks

from utils.identity import identity_for, seed_user, wallet

TARGET = "0xabc" + "0" * 37


class FlakyDirectory(InMemoryUserDirectory):
    """Directory whose role writes fail `failures` times before succeeding."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.failures = failures
        self.write_attempts = 0

    def set_role_if(self, wallet_address, *, expected, new):
        self.write_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("persistence_error", "db down")
        return super().set_role_if(wallet_address, expected=expected, new=new)


class RacingDirectory(InMemoryUserDirectory):
    """Directory where another writer changes the role right before our CAS."""

    def __init__(self, racing_role: str) -> None:
        super().__init__()
        self.racing_role = racing_role

    def set_role_if(self, wallet_address, *, expected, new):
        super().set_role_if(wallet_address, expected=expected, new=self.racing_role)
        return super().set_role_if(wallet_address, expected=expected, new=new)


class BrokenDeleteQueue(InMemoryAuthorRequestQueue):
    def delete(self, wallet_address):
        raise PersistenceError("persistence_error", "queue down")


class BrokenAudit:
    def record(self, entry):
        raise RuntimeError("audit sink down")


def _env(*, directory=None, requests=None, audit=None, ledger=None, persist_retries=3):
    directory = directory if directory is not None else InMemoryUserDirectory()
    requests = requests if requests is not None else InMemoryAuthorRequestQueue()
    audit = audit if audit is not None else InMemoryAuditLog()
    ledger = ledger if ledger is not None else InMemoryLedger()
    locks = WalletLocks()
    sync = RoleSynchronizer(
        ledger=ledger,
        directory=directory,
        requests=requests,
        audit=audit,
        persist_retries=persist_retries,
        locks=locks,
    )
    admin = seed_user(directory, wallet_address=wallet(1), role=DEFAULT_ADMIN)
    platform = seed_user(directory, wallet_address=wallet(2), role=PLATFORM_ADMIN)
    target = seed_user(directory, wallet_address=TARGET)
    return SimpleNamespace(
        sync=sync,
        ledger=ledger,
        directory=directory,
        requests=requests,
        audit=audit,
        locks=locks,
        admin=identity_for(admin),
        platform=identity_for(platform),
        target=target,
        role_ids=RoleIdCache(ledger),
    )


def _on_ledger(env, role, wallet_address=TARGET) -> bool:
    return env.ledger.has_role(env.role_ids.get(role), wallet_address)


# --- grant ------------------------------------------------------------------------


def test_grant_funds_manager_updates_ledger_directory_and_audit():
    env = _env()

    result = env.sync.grant(env.admin, TARGET, FUNDS_MANAGER)

    assert result.message == f"Role 'FUNDS_MANAGER' granted to user with wallet address {TARGET}"
    assert result.tx_hash
    assert _on_ledger(env, FUNDS_MANAGER)
    assert env.directory.get_by_wallet(TARGET).role == FUNDS_MANAGER
    entries = env.audit.entries()
    assert len(entries) == 1
    assert entries[0].outcome == OUTCOME_SUCCESS
    assert entries[0].action == "grant_role"
    assert entries[0].actor_wallet == wallet(1)
    assert entries[0].target_wallet == TARGET


def test_second_grant_is_rejected_without_a_transaction():
    env = _env()
    env.sync.grant(env.admin, TARGET, FUNDS_MANAGER)

    with pytest.raises(AlreadyGranted):
        env.sync.grant(env.admin, TARGET, FUNDS_MANAGER)

    assert len(env.ledger.transactions) == 1
    assert env.directory.get_by_wallet(TARGET).role == FUNDS_MANAGER
    assert [e.outcome for e in env.audit.entries()] == [OUTCOME_SUCCESS, OUTCOME_FAILED]


def test_grant_accepts_mixed_case_wallet():
    env = _env()

    result = env.sync.grant(env.admin, TARGET.upper().replace("0X", "0x"), AUTHOR)

    assert result.wallet_address == TARGET
    assert env.directory.get_by_wallet(TARGET).role == AUTHOR


def test_reverted_transaction_leaves_directory_untouched():
    env = _env()
    env.ledger.revert_next = 1

    with pytest.raises(TransactionFailed):
        env.sync.grant(env.admin, TARGET, PLATFORM_ADMIN)

    assert env.directory.get_by_wallet(TARGET).role == USER
    assert env.audit.entries()[-1].outcome == OUTCOME_FAILED


def test_submission_error_leaves_directory_untouched():
    env = _env()
    env.ledger.submit_error = ConnectionError("rpc unreachable")

    with pytest.raises(TransactionFailed):
        env.sync.grant(env.admin, TARGET, AUTHOR)

    assert env.directory.get_by_wallet(TARGET).role == USER
    assert not _on_ledger(env, AUTHOR)


def test_unexpected_ledger_exception_is_wrapped():
    env = _env()

    def boom(role_id, wallet_address):
        raise OSError("socket closed")

    env.ledger.grant_role = boom  # type: ignore[method-assign]

    with pytest.raises(TransactionFailed) as excinfo:
        env.sync.grant(env.admin, TARGET, AUTHOR)
    assert isinstance(excinfo.value.__cause__, OSError)
    assert env.directory.get_by_wallet(TARGET).role == USER


def test_grant_requires_default_admin():
    env = _env()

    with pytest.raises(Forbidden):
        env.sync.grant(env.platform, TARGET, AUTHOR)
    with pytest.raises(Unauthenticated):
        env.sync.grant(None, TARGET, AUTHOR)  # type: ignore[arg-type]

    assert env.ledger.transactions == []


@pytest.mark.parametrize("role", ["DEFAULT_ADMIN", "USER", "SUPERUSER", "", None])
def test_grant_rejects_roles_without_ledger_mapping(role):
    env = _env()

    with pytest.raises(ValidationError) as excinfo:
        env.sync.grant(env.admin, TARGET, role)

    assert excinfo.value.code == "invalid_role"
    assert env.ledger.transactions == []


@pytest.mark.parametrize("value", ["0x123", "abc" + "0" * 40, "0x" + "g" * 40, 42])
def test_grant_rejects_malformed_wallets(value):
    env = _env()

    with pytest.raises(ValidationError) as excinfo:
        env.sync.grant(env.admin, value, AUTHOR)
    assert excinfo.value.code == "invalid_wallet"


def test_grant_unknown_user_is_not_found():
    env = _env()

    with pytest.raises(UserNotFound):
        env.sync.grant(env.admin, wallet(99), AUTHOR)

    assert env.ledger.transactions == []
    assert env.audit.entries()[-1].error == "User not found."


def test_missing_contract_method_is_a_ledger_error():
    env = _env(ledger=InMemoryLedger(methods={"PLATFORM_ADMIN_ROLE", "FUNDS_MANAGER_ROLE"}))

    with pytest.raises(LedgerError) as excinfo:
        env.sync.grant(env.admin, TARGET, AUTHOR)

    assert excinfo.value.code == "role_identifier_unavailable"
    assert env.audit.entries()[-1].outcome == OUTCOME_FAILED


def test_failing_audit_sink_does_not_mask_success():
    env = _env(audit=BrokenAudit())

    result = env.sync.grant(env.admin, TARGET, AUTHOR)

    assert result.role == AUTHOR
    assert env.directory.get_by_wallet(TARGET).role == AUTHOR


# --- directory failures after ledger success -------------------------------------


def test_transient_directory_failure_is_retried():
    env = _env(directory=FlakyDirectory(failures=2))

    env.sync.grant(env.admin, TARGET, AUTHOR)

    assert env.directory.get_by_wallet(TARGET).role == AUTHOR
    assert env.directory.write_attempts == 3
    assert env.audit.entries()[-1].outcome == OUTCOME_SUCCESS


def test_persistent_directory_failure_requires_reconciliation(caplog):
    env = _env(directory=FlakyDirectory(failures=10), persist_retries=3)

    with caplog.at_level(logging.ERROR, logger="librety.identity_access.sync"):
        with pytest.raises(PersistenceError):
            env.sync.grant(env.admin, TARGET, AUTHOR)

    assert _on_ledger(env, AUTHOR)
    assert env.directory.get_by_wallet(TARGET).role == USER
    last = env.audit.entries()[-1]
    assert last.outcome == OUTCOME_RECONCILE_REQUIRED
    assert any("reconcile_required" in r.getMessage() for r in caplog.records)


def test_lost_compare_and_swap_is_a_concurrent_update():
    env = _env(directory=RacingDirectory(racing_role=PLATFORM_ADMIN))

    with pytest.raises(ConcurrentUpdate) as excinfo:
        env.sync.grant(env.admin, TARGET, AUTHOR)

    assert excinfo.value.code == "concurrent_update"
    assert env.audit.entries()[-1].outcome == OUTCOME_RECONCILE_REQUIRED


def test_same_wallet_operation_in_flight_is_rejected():
    env = _env()

    with env.locks.hold(TARGET):
        with pytest.raises(ConcurrentUpdate) as excinfo:
            env.sync.grant(env.admin, TARGET, AUTHOR)

    assert excinfo.value.code == "sync_in_progress"
    assert env.ledger.transactions == []
    # lock released afterwards
    env.sync.grant(env.admin, TARGET, AUTHOR)


# --- revoke -----------------------------------------------------------------------


def test_grant_then_revoke_round_trip():
    env = _env()
    env.sync.grant(env.admin, TARGET, PLATFORM_ADMIN)

    result = env.sync.revoke(env.admin, TARGET, PLATFORM_ADMIN)

    assert result.message == f"Role 'PLATFORM_ADMIN' revoked from user with wallet address {TARGET}"
    assert env.directory.get_by_wallet(TARGET).role == USER
    assert not _on_ledger(env, PLATFORM_ADMIN)
    assert [e.action for e in env.audit.entries()] == ["grant_role", "revoke_role"]


def test_revoke_role_mismatch_has_no_ledger_effect():
    env = _env()

    with pytest.raises(RoleMismatch) as excinfo:
        env.sync.revoke(env.admin, TARGET, AUTHOR)

    assert excinfo.value.detail == "User does not have the role 'AUTHOR' to revoke."
    assert env.ledger.transactions == []


def test_revoke_when_ledger_lacks_role_is_not_granted():
    env = _env()
    env.directory.set_role_if(TARGET, expected=USER, new=AUTHOR)

    with pytest.raises(NotGranted):
        env.sync.revoke(env.admin, TARGET, AUTHOR)

    assert env.directory.get_by_wallet(TARGET).role == AUTHOR


def test_reverted_revoke_keeps_directory_role():
    env = _env()
    env.sync.grant(env.admin, TARGET, FUNDS_MANAGER)
    env.ledger.revert_next = 1

    with pytest.raises(TransactionFailed):
        env.sync.revoke(env.admin, TARGET, FUNDS_MANAGER)

    assert env.directory.get_by_wallet(TARGET).role == FUNDS_MANAGER
    assert _on_ledger(env, FUNDS_MANAGER)


# --- author requests --------------------------------------------------------------


def test_request_then_approve_consumes_the_request():
    env = _env()
    requester = identity_for(env.target)

    req = env.sync.request_author_role(requester, TARGET)
    assert req.status == "PENDING"

    result = env.sync.approve_author(env.platform, TARGET)

    assert result.message == f"Author role successfully granted to {TARGET}."
    assert env.requests.list_pending() == []
    assert env.directory.get_by_wallet(TARGET).role == AUTHOR
    assert _on_ledger(env, AUTHOR)
    assert env.audit.entries()[-1].action == "approve_author"


def test_duplicate_author_request_is_rejected():
    env = _env()
    requester = identity_for(env.target)
    env.sync.request_author_role(requester, TARGET)

    with pytest.raises(DuplicateRequest) as excinfo:
        env.sync.request_author_role(requester, TARGET)

    assert excinfo.value.detail == "Request already submitted."
    assert len(env.requests.list_pending()) == 1


def test_request_for_another_wallet_is_forbidden():
    env = _env()
    other = seed_user(env.directory, wallet_address=wallet(7))

    with pytest.raises(Forbidden):
        env.sync.request_author_role(identity_for(other), TARGET)


def test_request_requires_user_role():
    env = _env()

    with pytest.raises(Forbidden):
        env.sync.request_author_role(env.platform, wallet(2))


def test_approve_without_request_is_not_found():
    env = _env()

    with pytest.raises(NoRequestFound):
        env.sync.approve_author(env.platform, TARGET)

    assert env.ledger.transactions == []


def test_approve_requires_platform_admin():
    env = _env()
    env.sync.request_author_role(identity_for(env.target), TARGET)

    with pytest.raises(Forbidden):
        env.sync.approve_author(env.admin, TARGET)


def test_approve_when_ledger_already_has_author():
    env = _env()
    env.sync.request_author_role(identity_for(env.target), TARGET)
    env.ledger.members.add((env.role_ids.get(AUTHOR), TARGET))

    with pytest.raises(AlreadyGranted):
        env.sync.approve_author(env.platform, TARGET)

    assert len(env.requests.list_pending()) == 1


def test_failed_request_deletion_does_not_undo_approval(caplog):
    env = _env(requests=BrokenDeleteQueue())
    env.sync.request_author_role(identity_for(env.target), TARGET)

    with caplog.at_level(logging.WARNING, logger="librety.identity_access.sync"):
        env.sync.approve_author(env.platform, TARGET)

    assert env.directory.get_by_wallet(TARGET).role == AUTHOR
    assert any("Orphaned author request" in r.getMessage() for r in caplog.records)


def test_revoke_author_resets_to_user():
    env = _env()
    env.sync.request_author_role(identity_for(env.target), TARGET)
    env.sync.approve_author(env.platform, TARGET)

    env.sync.revoke_author(env.platform, TARGET)

    assert env.directory.get_by_wallet(TARGET).role == USER
    assert not _on_ledger(env, AUTHOR)


def test_list_author_requests_permissions():
    env = _env()
    env.sync.request_author_role(identity_for(env.target), TARGET)

    assert [r.wallet_address for r in env.sync.list_author_requests(env.platform)] == [TARGET]
    assert len(env.sync.list_author_requests(env.admin)) == 1
    with pytest.raises(Forbidden):
        env.sync.list_author_requests(identity_for(env.target))


def test_role_identifier_lookups_are_cached():
    calls = []
    ledger = InMemoryLedger()
    original = ledger.role_identifier

    def counting(method_name):
        calls.append(method_name)
        return original(method_name)

    ledger.role_identifier = counting  # type: ignore[method-assign]
    env = _env(ledger=ledger)
    env.sync.grant(env.admin, TARGET, AUTHOR)
    env.sync.revoke(env.admin, TARGET, AUTHOR)

    assert calls == [LEDGER_ROLE_METHODS[AUTHOR]]


# --- stale claims, unconfirmed transactions, lock bookkeeping --------------------


def test_stale_user_claim_cannot_request_after_approval():
    env = _env()
    requester = identity_for(env.target)  # claim minted while the wallet was USER
    env.sync.request_author_role(requester, TARGET)
    env.sync.approve_author(env.platform, TARGET)

    with pytest.raises(AlreadyGranted):
        env.sync.request_author_role(requester, TARGET)

    assert env.requests.get(TARGET) is None
    assert _on_ledger(env, AUTHOR)


def test_request_rejected_when_directory_already_holds_a_role():
    env = _env()
    requester = identity_for(env.target)
    env.sync.grant(env.admin, TARGET, FUNDS_MANAGER)

    with pytest.raises(AlreadyGranted) as excinfo:
        env.sync.request_author_role(requester, TARGET)

    assert excinfo.value.detail == "User already has the role 'FUNDS_MANAGER'."
    assert env.requests.list_pending() == []


def test_request_rejected_when_ledger_already_holds_author():
    env = _env()
    env.ledger.members.add((env.role_ids.get(AUTHOR), TARGET))

    with pytest.raises(AlreadyGranted):
        env.sync.request_author_role(identity_for(env.target), TARGET)

    assert env.requests.list_pending() == []


def test_unconfirmed_transaction_requires_reconciliation(caplog):
    env = _env()
    env.ledger.unconfirmed_next = 1

    with caplog.at_level(logging.ERROR, logger="librety.identity_access.sync"):
        with pytest.raises(TransactionFailed) as excinfo:
            env.sync.grant(env.admin, TARGET, AUTHOR)

    assert excinfo.value.code == "transaction_unconfirmed"
    assert env.directory.get_by_wallet(TARGET).role == USER
    entry = env.audit.entries()[-1]
    assert entry.outcome == OUTCOME_RECONCILE_REQUIRED
    assert any("reconcile_required" in r.getMessage() for r in caplog.records)


def test_lock_and_role_rejections_are_audited_as_failed():
    env = _env()

    with env.locks.hold(TARGET):
        with pytest.raises(ConcurrentUpdate):
            env.sync.grant(env.admin, TARGET, AUTHOR)
    with pytest.raises(ValidationError):
        env.sync.revoke(env.admin, TARGET, "SUPERUSER")

    entries = env.audit.entries()
    assert [(e.action, e.outcome, e.role) for e in entries] == [
        ("grant_role", OUTCOME_FAILED, AUTHOR),
        ("revoke_role", OUTCOME_FAILED, "SUPERUSER"),
    ]
    assert entries[0].error == f"Another role change for {TARGET} is in progress."


def test_released_wallet_locks_are_dropped():
    locks = WalletLocks()

    with locks.hold(TARGET):
        assert TARGET in locks
        with pytest.raises(ConcurrentUpdate):
            with locks.hold(TARGET):
                pass
    with pytest.raises(RuntimeError):
        with locks.hold(wallet(3)):
            raise RuntimeError("boom")

    assert TARGET not in locks
    assert wallet(3) not in locks
    assert locks._busy == set()
