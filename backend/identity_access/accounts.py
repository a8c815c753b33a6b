"""
Account service: registration, login and session claim lifecycle.

Why:
    The role synchronizer trusts only the role carried in a verified session
    claim. This service is where those claims come from: it creates directory
    users (always as USER), checks credentials and issues access/refresh
    tokens. It also bootstraps the single DEFAULT_ADMIN directory entry.

Security:
    - Passwords are stored as argon2 hashes (pwdlib); never logged.
    - Login failures return one generic `invalid_credentials` error regardless
      of whether the identifier exists.
    - Refresh re-reads the directory so a role change is reflected in the next
      access token instead of echoing the stale role of the refresh claim.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, Optional, Tuple

from .directory import UserDirectoryProtocol, UserRecord
from .domain import DEFAULT_ADMIN, USER, normalize_email, normalize_wallet
from .errors import InvalidToken, Unauthenticated, ValidationError
from .passwords import hash_password, verify_password
from .tokens import ACCESS, REFRESH, TokenSettings, TokenVerificationError, issue_token, issue_token_pair, verify_token

LOG = logging.getLogger("librety.identity_access.accounts")


@dataclass(frozen=True)
class Registration:
    user: UserRecord
    token: str


class AccountService:
    def __init__(self, *, directory: UserDirectoryProtocol, tokens: TokenSettings) -> None:
        self._directory = directory
        self._tokens = tokens

    def register(self, *, email: object, password: object, wallet_address: object) -> Registration:
        """Create a USER account and return it with a fresh access token."""
        if not email or not password or not wallet_address:
            raise ValidationError("missing_fields", "Email, password and walletAddress are required.")
        if not isinstance(password, str) or not password.strip():
            raise ValidationError("missing_fields", "Password must be a non-blank string.")
        user = self._directory.create_user(
            email=normalize_email(email),
            wallet_address=normalize_wallet(wallet_address),
            password_hash=hash_password(password),
            role=USER,
        )
        LOG.info("Registered user wallet=%s", user.wallet_address)
        return Registration(user=user, token=self._access_token(user))

    def login(self, *, identifier: object, password: object) -> Dict[str, str]:
        """Check credentials; `identifier` is an email when it contains '@', else a wallet."""
        if not identifier or not password or not isinstance(identifier, str) or not isinstance(password, str):
            raise ValidationError("missing_fields", "Identifier and password are required.")
        user = self._lookup(identifier)
        if user is None or not verify_password(password, user.password_hash):
            LOG.info("Login rejected")
            raise ValidationError("invalid_credentials", "Invalid credentials.")
        LOG.info("Login ok wallet=%s", user.wallet_address)
        return issue_token_pair(user=user, settings=self._tokens)

    def refresh(self, refresh_token: object) -> str:
        if not refresh_token or not isinstance(refresh_token, str):
            raise Unauthenticated("missing_token", "Refresh Token is required")
        try:
            claims = verify_token(token=refresh_token, secret=self._tokens.refresh_secret, expected_type=REFRESH)
        except TokenVerificationError as exc:
            raise InvalidToken("invalid_token", "Invalid or expired Refresh Token") from exc
        user = self._directory.get_by_wallet(str(claims["wallet"]).lower())
        if user is None or user.id != claims["sub"]:
            raise InvalidToken("invalid_token", "Invalid or expired Refresh Token")
        return self._access_token(user)

    def verify(self, token: object) -> Dict[str, object]:
        if not token or not isinstance(token, str):
            raise Unauthenticated("missing_token", "Token is required")
        try:
            return verify_token(token=token, secret=self._tokens.access_secret, expected_type=ACCESS)
        except TokenVerificationError as exc:
            raise InvalidToken("invalid_token", "Invalid or expired Token") from exc

    def _lookup(self, identifier: str) -> Optional[UserRecord]:
        try:
            if "@" in identifier:
                return self._directory.get_by_email(normalize_email(identifier))
            return self._directory.get_by_wallet(normalize_wallet(identifier))
        except ValidationError:
            return None

    def _access_token(self, user: UserRecord) -> str:
        return issue_token(
            user_id=user.id,
            email=user.email,
            wallet_address=user.wallet_address,
            role=user.role,
            secret=self._tokens.access_secret,
            ttl_seconds=self._tokens.access_ttl_seconds,
            token_type=ACCESS,
        )


def bootstrap_default_admin(
    directory: UserDirectoryProtocol,
    *,
    wallet_address: str,
    email: str,
    password: Optional[str] = None,
) -> Tuple[UserRecord, bool]:
    """Ensure the DEFAULT_ADMIN directory entry exists; return `(user, created)`.

    An existing entry for the wallet is returned unchanged, whatever its role.
    Without a password the admin can only act through tokens minted by the
    bootstrap CLI.
    """
    wallet = normalize_wallet(wallet_address)
    existing = directory.get_by_wallet(wallet)
    if existing is not None:
        if existing.role != DEFAULT_ADMIN:
            LOG.warning("Bootstrap wallet %s exists with role %s; left unchanged", wallet, existing.role)
        return existing, False
    user = directory.create_user(
        email=normalize_email(email),
        wallet_address=wallet,
        password_hash=hash_password(password) if password else None,
        role=DEFAULT_ADMIN,
    )
    LOG.info("Default admin created wallet=%s", wallet)
    return user, True


__all__ = ["AccountService", "Registration", "bootstrap_default_admin"]
