"""
Configuration and startup security checks for the Librety API.

Why: Role changes are mirrored onto a real ledger with an admin signing key.
An accidental deployment with in-memory stores, placeholder secrets or a
plain-http RPC endpoint would silently lose role state or leak credentials.
This module reads the environment into one frozen `AppConfig` and provides a
single guard that enforces minimal production safety constraints without
burdening local development.

Permissions: The caller needs no special privileges. The functions read
environment variables; the guard raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from urllib.parse import urlparse

PLACEHOLDER_PREFIXES = ("CHANGE_ME", "DUMMY", "DEV_ONLY")


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _int_env(name: str, default: int, *, minimum: int = 1, maximum: int = 30 * 24 * 3600) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < minimum or value > maximum:
        raise ValueError(f"{name} out of range ({minimum}..{maximum}), got: {value}")
    return value


def _choice_env(name: str, default: str, choices: set[str]) -> str:
    value = (os.getenv(name) or default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {sorted(choices)}, got: {value!r}")
    return value


def _is_placeholder(secret: str) -> bool:
    s = (secret or "").strip()
    return not s or s.upper().startswith(PLACEHOLDER_PREFIXES)


@dataclass(frozen=True)
class AppConfig:
    environment: str
    jwt_secret: str
    refresh_token_secret: str
    access_token_ttl: int
    refresh_token_ttl: int
    roles_backend: str  # "memory" | "db"
    database_url: str
    ledger_backend: str  # "memory" | "web3"
    ledger_rpc_url: str
    ledger_contract_address: str
    ledger_abi_path: str
    ledger_admin_private_key: str
    ledger_receipt_timeout: int
    default_admin_wallet: str
    default_admin_email: str
    default_admin_password: str
    persist_retries: int
    log_level: str

    @property
    def prod_like(self) -> bool:
        return _is_prod_like(self.environment)


def load_config() -> AppConfig:
    """
    Parse and validate configuration from environment variables.

    Behavior:
        - `ROLES_BACKEND` selects the directory/queue/audit stores
          ("memory" default, "db" for Postgres via `DATABASE_URL`).
        - `LEDGER_BACKEND` selects the ledger client ("memory" default,
          "web3" for a JSON-RPC node).
        - TTLs and retries are validated integers; dev secrets default to
          obvious placeholders that the production guard rejects.
    """
    return AppConfig(
        environment=(os.getenv("LIBRETY_ENV") or "dev").strip().lower(),
        jwt_secret=os.getenv("JWT_SECRET", "DEV_ONLY_JWT_SECRET"),
        refresh_token_secret=os.getenv("REFRESH_TOKEN_SECRET", "DEV_ONLY_REFRESH_SECRET"),
        access_token_ttl=_int_env("ACCESS_TOKEN_TTL", 3600),
        refresh_token_ttl=_int_env("REFRESH_TOKEN_TTL", 7 * 24 * 3600),
        roles_backend=_choice_env("ROLES_BACKEND", "memory", {"memory", "db"}),
        database_url=os.getenv("DATABASE_URL", ""),
        ledger_backend=_choice_env("LEDGER_BACKEND", "memory", {"memory", "web3"}),
        ledger_rpc_url=os.getenv("LEDGER_RPC_URL", "http://127.0.0.1:8545"),
        ledger_contract_address=os.getenv("LEDGER_CONTRACT_ADDRESS", ""),
        ledger_abi_path=os.getenv("LEDGER_ABI_PATH", ""),
        ledger_admin_private_key=os.getenv("LEDGER_ADMIN_PRIVATE_KEY", ""),
        ledger_receipt_timeout=_int_env("LEDGER_RECEIPT_TIMEOUT", 120, maximum=600),
        default_admin_wallet=os.getenv("DEFAULT_ADMIN_WALLET", ""),
        default_admin_email=os.getenv("DEFAULT_ADMIN_EMAIL", ""),
        default_admin_password=os.getenv("DEFAULT_ADMIN_PASSWORD", ""),
        persist_retries=_int_env("PERSIST_RETRIES", 3, maximum=10),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    )


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - JWT_SECRET and REFRESH_TOKEN_SECRET set, not placeholders, and distinct.
    - ROLES_BACKEND and LEDGER_BACKEND must not be "memory".
    - DATABASE_URL must not explicitly disable TLS.
    - LEDGER_RPC_URL must use https unless it points at a local node.
    - LEDGER_ADMIN_PRIVATE_KEY and LEDGER_CONTRACT_ADDRESS must be set.
    """
    env = os.getenv("LIBRETY_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    # 1) Session claim secrets
    jwt_secret = os.getenv("JWT_SECRET", "")
    refresh_secret = os.getenv("REFRESH_TOKEN_SECRET", "")
    if _is_placeholder(jwt_secret) or _is_placeholder(refresh_secret):
        raise SystemExit(
            "Refusing to start: JWT_SECRET/REFRESH_TOKEN_SECRET is unset or a placeholder in production."
        )
    if jwt_secret.strip() == refresh_secret.strip():
        raise SystemExit("Refusing to start: JWT_SECRET and REFRESH_TOKEN_SECRET must differ in production.")

    # 2) No in-memory state in prod-like envs
    for var in ("ROLES_BACKEND", "LEDGER_BACKEND"):
        if (os.getenv(var) or "memory").strip().lower() == "memory":
            raise SystemExit(f"Refusing to start: {var}=memory is not allowed in production/staging.")

    # 3) Postgres TLS: basic guard to avoid explicit disable
    dsn = os.getenv("DATABASE_URL", "")
    if not dsn:
        raise SystemExit("Refusing to start: DATABASE_URL is required in production.")
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )

    # 4) Ledger RPC must use HTTPS unless it is a local node
    rpc = (os.getenv("LEDGER_RPC_URL", "") or "").strip()
    try:
        parsed = urlparse(rpc)
    except Exception:
        raise SystemExit("Refusing to start: invalid LEDGER_RPC_URL value in production.")
    host = (parsed.hostname or "").lower()
    local = host in {"localhost", "::1"} or host.startswith("127.")
    if parsed.scheme != "https" and not (parsed.scheme == "http" and local):
        raise SystemExit("Refusing to start: LEDGER_RPC_URL must use https in production.")

    # 5) Signing key and contract
    if _is_placeholder(os.getenv("LEDGER_ADMIN_PRIVATE_KEY", "")):
        raise SystemExit("Refusing to start: LEDGER_ADMIN_PRIVATE_KEY is unset or a placeholder in production.")
    if not (os.getenv("LEDGER_CONTRACT_ADDRESS", "") or "").strip():
        raise SystemExit("Refusing to start: LEDGER_CONTRACT_ADDRESS is required in production.")


__all__ = ["AppConfig", "ensure_secure_config_on_startup", "load_config"]
