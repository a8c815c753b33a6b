"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
keep env-driven wiring from leaking between tests.
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure the repo root (for `backend.*`) and the tests dir (for `utils.*`) are importable
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Start every test from dev defaults.

    Why:
        Config guard tests switch to prod semantics and backend selection via
        env vars; a developer shell may also export them. Clearing them keeps
        service wiring in-memory and deterministic.
    """
    for var in (
        "LIBRETY_ENV",
        "ROLES_BACKEND",
        "LEDGER_BACKEND",
        "DATABASE_URL",
        "JWT_SECRET",
        "REFRESH_TOKEN_SECRET",
        "LEDGER_RPC_URL",
        "LEDGER_CONTRACT_ADDRESS",
        "LEDGER_ADMIN_PRIVATE_KEY",
        "DEFAULT_ADMIN_WALLET",
        "DEFAULT_ADMIN_EMAIL",
        "DEFAULT_ADMIN_PASSWORD",
        "PERSIST_RETRIES",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_services():
    """Drop any service set a previous test installed via `set_services`."""
    from backend.web import wiring

    wiring.set_services(None)
    yield
    wiring.set_services(None)
