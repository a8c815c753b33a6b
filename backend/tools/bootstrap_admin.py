"""Create the DEFAULT_ADMIN directory entry and optionally print an access token.

Usage:
    python -m backend.tools.bootstrap_admin --wallet 0x... --email admin@example.org --print-token

Notes:
    - Idempotent: an existing entry for the wallet is left unchanged.
    - The DEFAULT_ADMIN role is not mirrored on the ledger; the wallet must hold
      the contract's admin role independently.
    - The printed token is a bearer credential. Do not paste it into tickets.
"""

from __future__ import annotations

import click

from backend.identity_access.accounts import bootstrap_default_admin
from backend.identity_access.errors import RoleSyncError
from backend.identity_access.tokens import ACCESS, issue_token
from backend.web.wiring import build_services


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--wallet", required=True, envvar="DEFAULT_ADMIN_WALLET", help="Admin wallet address.")
@click.option("--email", required=True, envvar="DEFAULT_ADMIN_EMAIL", help="Admin email address.")
@click.option("--password", required=False, envvar="DEFAULT_ADMIN_PASSWORD", help="Optional login password.")
@click.option("--print-token", is_flag=True, help="Print a freshly issued access token for the admin.")
def cli(wallet: str, email: str, password: str | None, print_token: bool) -> None:
    services = build_services(bootstrap_admin=False)
    try:
        user, created = bootstrap_default_admin(services.directory, wallet_address=wallet, email=email, password=password)
    except RoleSyncError as exc:
        raise click.ClickException(f"{exc.code}: {exc.detail}")
    click.echo(f"{'Created' if created else 'Found'} {user.role} entry for {user.wallet_address}")
    if print_token:
        click.echo(
            issue_token(
                user_id=user.id,
                email=user.email,
                wallet_address=user.wallet_address,
                role=user.role,
                secret=services.tokens.access_secret,
                ttl_seconds=services.tokens.access_ttl_seconds,
                token_type=ACCESS,
            )
        )


if __name__ == "__main__":  # pragma: no cover - manual entry
    cli()
