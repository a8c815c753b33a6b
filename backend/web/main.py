"Librety roles API"
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.identity_access.errors import RoleSyncError
from backend.web import config as _cfg
from backend.web.routes.admin import admin_router
from backend.web.routes.auth import auth_router
from backend.web.routes.deps import NO_STORE
from backend.web.wiring import get_services


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out/opt-in via LIBRETY_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("LIBRETY_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


try:
    from dotenv import load_dotenv
    if _should_load_dotenv():
        load_dotenv()
except ImportError:
    pass

logging.basicConfig(
    level=_cfg.load_config().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("librety.web")

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Build services eagerly so wiring errors surface at startup, not on first request.
    get_services()
    yield


app = FastAPI(title="Librety roles API", description="Role synchronization between directory and ledger", version="0.1.0", lifespan=lifespan)


def _error(code: str, detail: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": code, "detail": detail}, status_code=status_code, headers=dict(NO_STORE))


@app.exception_handler(RoleSyncError)
async def role_sync_error_handler(request: Request, exc: RoleSyncError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    return _error(exc.code, exc.detail, exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = sorted({str(err.get("loc", ("", ""))[-1]) for err in exc.errors()})
    return _error("missing_fields", f"Missing or invalid fields: {', '.join(fields)}", 400)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return _error("route_not_found", "Route not found.", 404)
    return _error("http_error", str(exc.detail), exc.status_code)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    # Class name only: messages from drivers may echo secrets or parameters.
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc.__class__.__name__)
    return _error("internal_error", "Internal server error.", 500)


app.include_router(auth_router)
app.include_router(admin_router)


@app.get("/health")
async def health_check():
    # Minimal health endpoint used by orchestrators and tests.
    # Security: include no-store to avoid caching any runtime status.
    return JSONResponse({"status": "ok"}, headers=dict(NO_STORE))
