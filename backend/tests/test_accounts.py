"""
Account service: registration, login by email or wallet, refresh and verify,
and default admin bootstrap.
"""
from __future__ import annotations

import pytest

from backend.identity_access.accounts import AccountService, bootstrap_default_admin
from backend.identity_access.directory import InMemoryUserDirectory
from backend.identity_access.domain import AUTHOR, DEFAULT_ADMIN, USER
from backend.identity_access.errors import DuplicateAccount, InvalidToken, Unauthenticated, ValidationError
from backend.identity_access.passwords import hash_password, verify_password
from backend.identity_access.tokens import ACCESS, TokenSettings, verify_token

from utils.identity import wallet

SETTINGS = TokenSettings(access_secret="acc-secret", refresh_secret="ref-secret")


@pytest.fixture
def accounts():
    directory = InMemoryUserDirectory()
    return AccountService(directory=directory, tokens=SETTINGS), directory


def test_register_creates_user_role_with_hashed_password(accounts):
    svc, directory = accounts

    reg = svc.register(email="  Reader@Example.org ", password="s3cret-pass", wallet_address=wallet(5).upper().replace("0X", "0x"))

    assert reg.user.role == USER
    assert reg.user.email == "reader@example.org"
    assert reg.user.wallet_address == wallet(5)
    stored = directory.get_by_wallet(wallet(5))
    assert stored.password_hash and stored.password_hash != "s3cret-pass"
    assert verify_password("s3cret-pass", stored.password_hash)
    claims = verify_token(token=reg.token, secret=SETTINGS.access_secret, expected_type=ACCESS)
    assert claims["role"] == USER
    assert "password" not in str(reg.user.public_view())


@pytest.mark.parametrize("missing", ["email", "password", "wallet_address"])
def test_register_requires_all_fields(accounts, missing):
    svc, _ = accounts
    fields = dict(email="a@example.org", password="pw-123456", wallet_address=wallet(6))
    fields[missing] = ""
    with pytest.raises(ValidationError) as excinfo:
        svc.register(**fields)
    assert excinfo.value.code == "missing_fields"


@pytest.mark.parametrize("password", ["   ", "\t\n", 12345])
def test_register_rejects_blank_or_non_string_password(accounts, password):
    svc, directory = accounts
    with pytest.raises(ValidationError) as excinfo:
        svc.register(email="a@example.org", password=password, wallet_address=wallet(6))
    assert excinfo.value.code == "missing_fields"
    assert directory.get_by_wallet(wallet(6)) is None


def test_register_duplicates_are_conflicts(accounts):
    svc, _ = accounts
    svc.register(email="a@example.org", password="pw-123456", wallet_address=wallet(6))

    with pytest.raises(DuplicateAccount) as excinfo:
        svc.register(email="A@example.org", password="pw-123456", wallet_address=wallet(7))
    assert excinfo.value.code == "duplicate_email"
    with pytest.raises(DuplicateAccount) as excinfo:
        svc.register(email="b@example.org", password="pw-123456", wallet_address=wallet(6))
    assert excinfo.value.code == "duplicate_wallet"
    assert excinfo.value.status_code == 409


def test_login_by_email_or_wallet(accounts):
    svc, _ = accounts
    svc.register(email="a@example.org", password="pw-123456", wallet_address=wallet(6))

    by_email = svc.login(identifier="A@example.org", password="pw-123456")
    by_wallet = svc.login(identifier=wallet(6), password="pw-123456")

    for pair in (by_email, by_wallet):
        assert set(pair) == {"accessToken", "refreshToken"}
        assert verify_token(token=pair["accessToken"], secret=SETTINGS.access_secret)["wallet"] == wallet(6)


@pytest.mark.parametrize(
    "identifier,password",
    [("a@example.org", "wrong"), ("nobody@example.org", "pw-123456"), (wallet(8), "pw-123456"), ("garbage", "pw-123456")],
)
def test_login_failures_are_generic(accounts, identifier, password):
    svc, _ = accounts
    svc.register(email="a@example.org", password="pw-123456", wallet_address=wallet(6))

    with pytest.raises(ValidationError) as excinfo:
        svc.login(identifier=identifier, password=password)
    assert excinfo.value.code == "invalid_credentials"
    assert excinfo.value.detail == "Invalid credentials."


def test_login_requires_identifier_and_password(accounts):
    svc, _ = accounts
    with pytest.raises(ValidationError) as excinfo:
        svc.login(identifier="", password="x")
    assert excinfo.value.detail == "Identifier and password are required."


def test_refresh_reflects_current_directory_role(accounts):
    svc, directory = accounts
    svc.register(email="a@example.org", password="pw-123456", wallet_address=wallet(6))
    pair = svc.login(identifier="a@example.org", password="pw-123456")
    directory.set_role_if(wallet(6), expected=USER, new=AUTHOR)

    access = svc.refresh(pair["refreshToken"])

    assert verify_token(token=access, secret=SETTINGS.access_secret)["role"] == AUTHOR


def test_refresh_errors(accounts):
    svc, _ = accounts
    with pytest.raises(Unauthenticated):
        svc.refresh(None)
    with pytest.raises(InvalidToken) as excinfo:
        svc.refresh("not-a-token")
    assert excinfo.value.status_code == 403


def test_refresh_rejects_access_tokens(accounts):
    svc, _ = accounts
    reg = svc.register(email="a@example.org", password="pw-123456", wallet_address=wallet(6))
    with pytest.raises(InvalidToken):
        svc.refresh(reg.token)


def test_verify(accounts):
    svc, _ = accounts
    reg = svc.register(email="a@example.org", password="pw-123456", wallet_address=wallet(6))

    assert svc.verify(reg.token)["sub"] == reg.user.id
    with pytest.raises(Unauthenticated):
        svc.verify("")
    with pytest.raises(InvalidToken):
        svc.verify(reg.token + "x")


def test_bootstrap_default_admin_is_idempotent():
    directory = InMemoryUserDirectory()

    user, created = bootstrap_default_admin(directory, wallet_address=wallet(1), email="admin@example.org", password="pw")
    again, created_again = bootstrap_default_admin(directory, wallet_address=wallet(1), email="admin@example.org")

    assert created and not created_again
    assert user.role == DEFAULT_ADMIN
    assert again.id == user.id


def test_bootstrap_without_password_cannot_log_in():
    directory = InMemoryUserDirectory()
    bootstrap_default_admin(directory, wallet_address=wallet(1), email="admin@example.org")
    svc = AccountService(directory=directory, tokens=SETTINGS)

    with pytest.raises(ValidationError):
        svc.login(identifier="admin@example.org", password="anything")


def test_password_helpers_reject_empty_and_unknown_hashes():
    with pytest.raises(ValueError):
        hash_password("   ")
    assert not verify_password("pw", "not-a-known-hash")
    assert not verify_password("pw", None)
