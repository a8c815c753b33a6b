"""
Authentication API routes (router-only module).

Why:
    Issue and check the session claims the Access Control Gate relies on.
    The account service owns all logic; this module only maps bodies to calls
    and results to JSON.

Notes:
    - Tokens are stateless; logout is acknowledged without server-side state.
    - Body fields are optional at the schema level so missing values produce
      the domain's `missing_fields` / `missing_token` errors instead of a
      generic validation failure.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from backend.identity_access.errors import InvalidToken
from backend.web.routes.deps import private_json, run_blocking
from backend.web.wiring import get_services

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])
logger = logging.getLogger("librety.web.auth")


class RegisterPayload(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    walletAddress: Optional[str] = None


class LoginPayload(BaseModel):
    identifier: Optional[str] = None
    password: Optional[str] = None


class RefreshPayload(BaseModel):
    refreshToken: Optional[str] = None


class VerifyPayload(BaseModel):
    token: Optional[str] = None


@auth_router.post("/register")
async def register(payload: RegisterPayload):
    """Create a USER account.

    Behavior:
        - 201 `{token, user}`
        - 400 missing/invalid fields
        - 409 email or wallet already registered
    """
    reg = await run_blocking(
        get_services().accounts.register,
        email=payload.email,
        password=payload.password,
        wallet_address=payload.walletAddress,
    )
    return private_json({"token": reg.token, "user": reg.user.public_view()}, status_code=201)


@auth_router.post("/login")
async def login(payload: LoginPayload):
    tokens = await run_blocking(get_services().accounts.login, identifier=payload.identifier, password=payload.password)
    return private_json(tokens)


@auth_router.post("/logout")
async def logout():
    return private_json({"message": "Logged out successfully"})


@auth_router.post("/refresh")
async def refresh(payload: RefreshPayload):
    """Exchange a refresh token for a new access token (401 missing, 403 invalid)."""
    access = await run_blocking(get_services().accounts.refresh, payload.refreshToken)
    return private_json({"accessToken": access})


@auth_router.post("/verify")
async def verify(payload: VerifyPayload):
    try:
        claims = get_services().accounts.verify(payload.token)
    except InvalidToken as exc:
        return private_json({"valid": False, "error": exc.code, "detail": exc.detail}, status_code=exc.status_code)
    return private_json({"valid": True, "user": claims})


__all__ = ["auth_router"]
