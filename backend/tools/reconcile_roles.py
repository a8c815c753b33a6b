"""Reconcile directory roles with ledger role membership.

Why:
    A role change whose directory write failed after the ledger confirmed is
    audited as `reconcile_required`. This tool runs the same sweep as
    `POST /api/admin/reconcile` from the shell (cron, incident response).

Usage:
    python -m backend.tools.reconcile_roles --dry-run
    python -m backend.tools.reconcile_roles --wallet 0xabc... --wallet 0xdef...

Notes:
    - Stores and ledger are selected from the environment exactly like the API
      (`ROLES_BACKEND`, `LEDGER_BACKEND`, ...).
    - Exit status 1 when any wallet could not be checked.
"""

from __future__ import annotations

import json

import click

from backend.identity_access.errors import RoleSyncError
from backend.web.wiring import build_services


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--wallet", "wallets", multiple=True, help="Limit the sweep to these wallet addresses (repeatable).")
@click.option("--dry-run", is_flag=True, help="Report drift without writing to the directory.")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON.")
def cli(wallets: tuple[str, ...], dry_run: bool, as_json: bool) -> None:
    services = build_services()
    try:
        report = services.reconciler.run(list(wallets) or None, dry_run=dry_run)
    except RoleSyncError as exc:
        raise click.ClickException(f"{exc.code}: {exc.detail}")
    if as_json:
        click.echo(json.dumps(report.as_dict(), indent=2))
    else:
        mode = "dry-run" if dry_run else "apply"
        click.echo(f"Checked {report.checked} wallet(s) ({mode})")
        for c in report.corrections:
            state = "corrected" if c.applied else "drift"
            click.echo(f"  {state}: {c.wallet_address} directory={c.directory_role} ledger={c.ledger_role}")
        for wallet in report.missing:
            click.echo(f"  missing: {wallet} has no directory entry")
        for wallet in report.skipped:
            click.echo(f"  skipped: {wallet} (synchronization in progress)")
        for err in report.errors:
            click.echo(f"  error: {err['walletAddress']} {err['error']}", err=True)
    if report.errors:
        raise SystemExit(1)


if __name__ == "__main__":  # pragma: no cover - manual entry
    cli()
