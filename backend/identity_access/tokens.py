"""
Session claim helpers (signed JWTs) for the identity_access bounded context.

Why: Keep issuance and cryptographic validation of session claims outside the
web adapter so we can unit test them independently and reuse them from the
CLI tools (e.g., printing a bootstrap admin token).

Security: Claims are HS256-signed with a server secret. Access and refresh
tokens use distinct secrets and carry a `typ` claim so one can never be used
in place of the other. Only HS256 is accepted on verification regardless of
the token header.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional
import time

from jose import jwt
from jose.exceptions import JOSEError

from .domain import ALLOWED_ROLES

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

MAX_CLOCK_SKEW_SECONDS = 5  # Allow minimal skew between servers


class TokenVerificationError(Exception):
    """Raised when a session claim fails verification."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class TokenSettings:
    access_secret: str
    refresh_secret: str
    access_ttl_seconds: int = 3600
    refresh_ttl_seconds: int = 7 * 24 * 3600


def issue_token(
    *,
    user_id: str,
    email: str,
    wallet_address: str,
    role: str,
    secret: str,
    ttl_seconds: int,
    token_type: str = ACCESS,
    now: Optional[float] = None,
) -> str:
    """Sign a claim set for the given identity that expires after `ttl_seconds`."""
    issued_at = int(now if now is not None else time.time())
    claims = {
        "sub": user_id,
        "email": email,
        "wallet": wallet_address,
        "role": role,
        "typ": token_type,
        "iat": issued_at,
        "exp": issued_at + int(ttl_seconds),
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def issue_token_pair(*, user, settings: TokenSettings, now: Optional[float] = None) -> Dict[str, str]:
    """Return `{accessToken, refreshToken}` for a directory user record."""
    common = dict(user_id=user.id, email=user.email, wallet_address=user.wallet_address, role=user.role, now=now)
    return {
        "accessToken": issue_token(secret=settings.access_secret, ttl_seconds=settings.access_ttl_seconds, token_type=ACCESS, **common),
        "refreshToken": issue_token(secret=settings.refresh_secret, ttl_seconds=settings.refresh_ttl_seconds, token_type=REFRESH, **common),
    }


def verify_token(*, token: str, secret: str, expected_type: str = ACCESS) -> Dict[str, object]:
    """Validate a session claim and return its claims.

    Raises
    ------
    TokenVerificationError:
        When the token is malformed, badly signed, expired, of the wrong type,
        or carries an unknown role.
    """
    if not token or not isinstance(token, str):
        raise TokenVerificationError("missing_token")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            options={
                "verify_signature": True,
                "verify_aud": False,
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
            },
        )
    except JOSEError as exc:
        raise TokenVerificationError("invalid_token") from exc

    _validate_temporal_claims(claims)

    if claims.get("typ") != expected_type:
        raise TokenVerificationError("wrong_token_type")
    if claims.get("role") not in ALLOWED_ROLES:
        raise TokenVerificationError("invalid_role_claim")
    for key in ("sub", "wallet"):
        if not isinstance(claims.get(key), str) or not claims.get(key):
            raise TokenVerificationError("invalid_token")
    return claims


def _validate_temporal_claims(claims: Dict[str, object]) -> None:
    now = time.time()
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise TokenVerificationError("invalid_token")
    if exp + MAX_CLOCK_SKEW_SECONDS < now:
        raise TokenVerificationError("token_expired")

    iat = claims.get("iat")
    if isinstance(iat, (int, float)):
        if iat - MAX_CLOCK_SKEW_SECONDS > now:
            raise TokenVerificationError("invalid_token")


__all__ = [
    "ACCESS",
    "REFRESH",
    "TokenSettings",
    "TokenVerificationError",
    "issue_token",
    "issue_token_pair",
    "verify_token",
]
