"""Cloud Provisioner CLI (cprov).

Usage:
    cprov reconcile                      # Reconcile every managed resource
    cprov reconcile --dry-run            # Report planned actions only
    cprov plan                           # Same as reconcile --dry-run
    cprov wait-for-db -- n8n start       # Readiness gate, then exec the app
    cprov identity-email n8n-runtime     # Print the derived identity email
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import click

from .catalog import ResourceKind, ServiceIdentity, validate_name
from .cloud import DefinitiveRejection
from .main import main, wait_for_db

# CLI constants
DEFAULT_PORT_ENV_NAMES: tuple[str, ...] = ()


@click.group()
@click.version_option(version="0.1.0", prog_name="cprov")
def cli() -> None:
    """Cloud Provisioner CLI.

    Provisions the artifact repository, database, secrets, service identity
    and compute service of one application deployment, idempotently.

    Settings come from the environment (GCP_PROJECT, GCP_REGION, DB_PASSWORD,
    ENCRYPTION_KEY, ...) and the deployment spec file.
    """
    pass


def _run_reconcile(spec: Path | None, dry_run: bool, rotate_credentials: bool) -> None:
    exit_code = asyncio.run(
        main(
            echo=click.echo,
            spec_path=spec,
            # Only override the environment when the flag is given
            dry_run=dry_run or None,
            rotate_credentials=rotate_credentials or None,
        )
    )
    if exit_code != 0:
        raise SystemExit(exit_code)


@cli.command()
@click.option(
    "--spec",
    type=click.Path(path_type=Path),
    default=None,
    help="Deployment spec file (default: $DEPLOYMENT_SPEC or deployment.yaml)",
)
@click.option("--dry-run", is_flag=True, help="Describe only and report planned actions")
@click.option(
    "--rotate-credentials",
    is_flag=True,
    help="Re-apply the database password to an existing user",
)
def reconcile(spec: Path | None, dry_run: bool, rotate_credentials: bool) -> None:
    """Reconcile every managed resource once."""
    _run_reconcile(spec, dry_run, rotate_credentials)


@cli.command()
@click.option(
    "--spec",
    type=click.Path(path_type=Path),
    default=None,
    help="Deployment spec file (default: $DEPLOYMENT_SPEC or deployment.yaml)",
)
def plan(spec: Path | None) -> None:
    """Show what a reconcile would do, without changing anything."""
    _run_reconcile(spec, dry_run=True, rotate_credentials=False)


@cli.command("wait-for-db", context_settings={"ignore_unknown_options": True})
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Probe attempts before giving up (default: $DB_WAIT_MAX_ATTEMPTS or 30)",
)
@click.option(
    "--interval",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between attempts (default: $DB_WAIT_INTERVAL or 2)",
)
@click.option(
    "--port-env",
    "port_env",
    multiple=True,
    help="Env var to receive the value of PORT before exec (repeatable)",
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def wait_for_db_command(
    max_attempts: int | None,
    interval: float | None,
    port_env: tuple[str, ...],
    command: tuple[str, ...],
) -> None:
    """Wait for the database, then replace this process with COMMAND."""
    exit_code = asyncio.run(
        wait_for_db(
            list(command),
            port_env_names=port_env or DEFAULT_PORT_ENV_NAMES,
            max_attempts=max_attempts,
            interval_seconds=interval,
        )
    )
    if exit_code != 0:
        raise SystemExit(exit_code)


@cli.command("identity-email")
@click.argument("name")
@click.option(
    "--project",
    default=lambda: os.environ.get("GCP_PROJECT", ""),
    help="Project ID (default: $GCP_PROJECT)",
)
def identity_email(name: str, project: str) -> None:
    """Print the email of the service identity NAME."""
    if not project:
        raise click.ClickException("GCP_PROJECT is not set; pass --project")
    try:
        validate_name(ResourceKind.SERVICE_IDENTITY, name)
    except DefinitiveRejection as e:
        raise click.ClickException(str(e)) from e
    click.echo(ServiceIdentity(name=name, project=project).email)


if __name__ == "__main__":
    cli()
