"""
Shared FastAPI dependencies and response helpers for the API routers.

The Access Control Gate runs as a dependency chain: `current_identity`
authenticates the bearer claim, `require_roles(...)` authorizes it. Both raise
domain errors that the app-level handler renders as `{error, detail}`.
"""
from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable, TypeVar

from fastapi import Depends, Header
from fastapi.responses import JSONResponse

from backend.identity_access.gate import Identity, authorize
from backend.web.wiring import get_services

T = TypeVar("T")

NO_STORE = {"Cache-Control": "private, no-store"}


def private_json(payload: Any, status_code: int = 200) -> JSONResponse:
    # Security: role and token payloads must never be cached by intermediaries
    return JSONResponse(payload, status_code=status_code, headers=dict(NO_STORE))


async def run_blocking(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking service call (ledger wait, DB, hashing) in a worker thread."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(fn, *args, **kwargs))


async def current_identity(authorization: str | None = Header(default=None)) -> Identity:
    return get_services().gate.authenticate(authorization)


def require_roles(*roles: str) -> Callable[..., Any]:
    """Dependency factory: authenticated identity holding one of `roles`."""

    async def _dependency(identity: Identity = Depends(current_identity)) -> Identity:
        authorize(identity, roles)
        return identity

    return _dependency


__all__ = ["NO_STORE", "current_identity", "private_json", "require_roles", "run_blocking"]
