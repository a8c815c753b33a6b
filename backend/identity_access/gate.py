"""
Access Control Gate: request-time authentication and role authorization.

Why:
    Protected operations must only trust role values carried inside a verified
    session claim. The gate is stateless: `authenticate` turns a bearer header
    into an `Identity`, `authorize` checks that identity against the required
    role(s). Callers always run authenticate before authorize.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Optional, Union

from .errors import Forbidden, Unauthenticated
from .tokens import ACCESS, TokenVerificationError, verify_token

LOG = logging.getLogger("librety.identity_access.gate")


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    wallet_address: str
    role: str


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthenticated("unauthenticated", "Access Denied. No token provided.")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("unauthenticated", "Malformed Authorization header.")
    return token.strip()


class AccessGate:
    def __init__(self, *, secret: str) -> None:
        self._secret = secret

    def authenticate(self, authorization: Optional[str]) -> Identity:
        """Verify the bearer claim from an Authorization header value."""
        token = _bearer_token(authorization)
        try:
            claims = verify_token(token=token, secret=self._secret, expected_type=ACCESS)
        except TokenVerificationError as exc:
            LOG.info("Token verification failed: %s", exc.code)
            raise Unauthenticated("unauthenticated", "Invalid or expired token.") from exc
        return Identity(
            user_id=str(claims["sub"]),
            email=str(claims.get("email") or ""),
            wallet_address=str(claims["wallet"]).lower(),
            role=str(claims["role"]),
        )


def authorize(identity: Optional[Identity], required: Union[str, Iterable[str]]) -> None:
    """Raise Forbidden unless `identity.role` is in `required`."""
    if identity is None:
        raise Unauthenticated("unauthenticated", "Access Denied. User not authenticated.")
    allowed = {required} if isinstance(required, str) else set(required)
    if identity.role not in allowed:
        LOG.warning("Access denied: role %s not in %s", identity.role, sorted(allowed))
        raise Forbidden("forbidden", f"Access Denied. Requires {' or '.join(sorted(allowed))} role.")


__all__ = ["AccessGate", "Identity", "authorize"]
