"""
Admin API routes: role grant/revoke, author requests, reconciliation.

Why:
    Thin HTTP adapter over `RoleSynchronizer` and `Reconciler`. Routes validate
    the body shape, run the blocking synchronizer call in a worker thread and
    respond only once it has completed (ledger receipt and directory write).

Permissions:
    - grant-role / revoke-role / reconcile: DEFAULT_ADMIN
    - approve-author / revoke-author: PLATFORM_ADMIN
    - request-author: USER
    - author-requests (list): PLATFORM_ADMIN or DEFAULT_ADMIN

Errors are raised as domain exceptions and rendered by the app-level handler
as `{"error", "detail"}` with `Cache-Control: private, no-store`.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from backend.identity_access.domain import DEFAULT_ADMIN, PLATFORM_ADMIN, USER
from backend.identity_access.gate import Identity
from backend.web.routes.deps import private_json, require_roles, run_blocking
from backend.web.wiring import get_services

admin_router = APIRouter(prefix="/api/admin", tags=["Admin"])
logger = logging.getLogger("librety.web.admin")


# --- Request models ---------------------------------------------------------------

class RoleChangePayload(BaseModel):
    walletAddress: str = Field(..., min_length=1, max_length=64)
    role: str = Field(..., min_length=1, max_length=32)


class WalletPayload(BaseModel):
    walletAddress: str = Field(..., min_length=1, max_length=64)


class ReconcilePayload(BaseModel):
    walletAddresses: Optional[List[str]] = Field(default=None, max_length=500)
    dryRun: bool = False


def _sync_response(result) -> dict:
    return {"message": result.message, "walletAddress": result.wallet_address, "role": result.role, "txHash": result.tx_hash}


# --- Routes -----------------------------------------------------------------------

@admin_router.post("/grant-role")
async def grant_role(payload: RoleChangePayload, actor: Identity = Depends(require_roles(DEFAULT_ADMIN))):
    """Grant a ledger-mapped role and mirror it into the directory.

    Behavior:
        - 200 `{message, txHash}` once the receipt is confirmed and the
          directory updated
        - 400 invalid role / wallet, already granted, transaction conflict
        - 404 when no directory user holds the wallet
        - 500 ledger or persistence failure (audited)
    """
    result = await run_blocking(get_services().synchronizer.grant, actor, payload.walletAddress, payload.role)
    return private_json(_sync_response(result))


@admin_router.post("/revoke-role")
async def revoke_role(payload: RoleChangePayload, actor: Identity = Depends(require_roles(DEFAULT_ADMIN))):
    """Revoke a role on the ledger and reset the directory role to USER."""
    result = await run_blocking(get_services().synchronizer.revoke, actor, payload.walletAddress, payload.role)
    return private_json(_sync_response(result))


@admin_router.post("/approve-author")
async def approve_author(payload: WalletPayload, actor: Identity = Depends(require_roles(PLATFORM_ADMIN))):
    """Grant AUTHOR for a pending request; 404 when no request exists."""
    result = await run_blocking(get_services().synchronizer.approve_author, actor, payload.walletAddress)
    return private_json(_sync_response(result))


@admin_router.post("/revoke-author")
async def revoke_author(payload: WalletPayload, actor: Identity = Depends(require_roles(PLATFORM_ADMIN))):
    result = await run_blocking(get_services().synchronizer.revoke_author, actor, payload.walletAddress)
    return private_json(_sync_response(result))


@admin_router.post("/request-author")
async def request_author(payload: WalletPayload, actor: Identity = Depends(require_roles(USER))):
    """File an AUTHOR request for the caller's own wallet (201)."""
    req = await run_blocking(get_services().synchronizer.request_author_role, actor, payload.walletAddress)
    return private_json(
        {"message": "Author role request submitted successfully.", "request": req.public_view()},
        status_code=201,
    )


@admin_router.get("/author-requests")
async def list_author_requests(
    limit: int = 100,
    offset: int = 0,
    actor: Identity = Depends(require_roles(PLATFORM_ADMIN, DEFAULT_ADMIN)),
):
    items = await run_blocking(get_services().synchronizer.list_author_requests, actor, limit=limit, offset=offset)
    return private_json([r.public_view() for r in items])


@admin_router.post("/reconcile")
async def reconcile(payload: ReconcilePayload, actor: Identity = Depends(require_roles(DEFAULT_ADMIN))):
    """Run the reconciliation sweep for all users or the given wallets.

    Behavior:
        - 200 with a report of checked wallets and corrections
        - `dryRun=true` reports drift without writing
    """
    logger.info("Reconciliation requested by %s dry_run=%s", actor.wallet_address, payload.dryRun)
    report = await run_blocking(
        get_services().reconciler.run,
        payload.walletAddresses,
        dry_run=payload.dryRun,
        actor_wallet=actor.wallet_address,
    )
    return private_json(report.as_dict())


__all__ = ["admin_router"]
