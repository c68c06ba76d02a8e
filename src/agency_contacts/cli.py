"""CLI for agency-contacts — migrations, batch reconciliation and the API server."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from uuid import UUID

import click

from agency_contacts.config import ConfigError, ContactsConfig, load_config
from agency_contacts.core.logging import configure_logging
from agency_contacts.core.telemetry import init_telemetry
from agency_contacts.normalize import household_key, normalize_phone
from agency_contacts.reconcile import RECONCILE_STEPS

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> ContactsConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(config.logging.level, str(config.logging.format), config.logging.log_root)
    return config


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    envvar="AGENCY_CONTACTS_CONFIG",
    help="Config file, or a directory containing agency_contacts.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Agency contacts — identity resolution and lifecycle views for agency records."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Create the database if needed and upgrade it to the latest schema."""
    config = _load(ctx.obj["config_path"])
    asyncio.run(_migrate(config))
    click.echo("Migrations complete")


@cli.command()
@click.option("--agency", "agency_id", type=click.UUID, default=None, help="Limit to one agency")
@click.option(
    "--step",
    "steps",
    multiple=True,
    type=click.Choice(["all", *RECONCILE_STEPS]),
    default=("all",),
    show_default=True,
    help="Job(s) to run; repeatable",
)
@click.pass_context
def reconcile(ctx: click.Context, agency_id: UUID | None, steps: tuple[str, ...]) -> None:
    """Run link, fallback, create, merge and key-repair jobs."""
    config = _load(ctx.obj["config_path"])
    init_telemetry()
    selected = None if "all" in steps else steps
    report = asyncio.run(_reconcile(config, agency_id, selected))

    click.echo(f"Linked:            {report.linked}")
    click.echo(f"  by phone:        {report.linked_by_phone}")
    click.echo(f"  by key:          {report.linked_by_key}")
    click.echo(f"  by name:         {report.linked_by_name}")
    click.echo(f"Contacts created:  {report.contacts_created}")
    click.echo(f"Contacts merged:   {report.contacts_merged}")
    click.echo(f"Keys renormalized: {report.keys_renormalized}")
    click.echo(f"Skipped ambiguous: {report.skipped_ambiguous}")
    click.echo(f"Merge conflicts:   {report.merge_conflicts}")
    if report.failures:
        click.echo(f"Failures:          {len(report.failures)}")
        for failure in report.failures:
            click.echo(f"  [{failure.step}] {failure.table} {failure.record_id}: {failure.error}")
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the contacts HTTP API."""
    import uvicorn

    from agency_contacts.api.app import create_app

    config = _load(ctx.obj["config_path"])
    init_telemetry()
    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )


@cli.command("normalize-phone")
@click.argument("value")
def normalize_phone_cmd(value: str) -> None:
    """Print the normalized form of a phone number."""
    normalized = normalize_phone(value)
    if normalized is None:
        click.echo("(no usable phone)")
        sys.exit(1)
    click.echo(normalized)


@cli.command("household-key")
@click.argument("first_name")
@click.argument("last_name")
@click.argument("zip_code", required=False)
def household_key_cmd(first_name: str, last_name: str, zip_code: str | None) -> None:
    """Print the household key for a name and optional zip code."""
    click.echo(household_key(first_name, last_name, zip_code))


async def _migrate(config: ContactsConfig) -> None:
    from agency_contacts.db import Database
    from agency_contacts.migrations import run_migrations

    db = Database.from_config(config.database)
    await db.provision()
    await run_migrations(db.url)


async def _reconcile(config: ContactsConfig, agency_id: UUID | None, steps):
    from agency_contacts.authz import Principal
    from agency_contacts.db import Database
    from agency_contacts.service import ContactsService

    db = Database.from_config(config.database)
    pool = await db.connect()
    try:
        service = ContactsService(pool, config)
        return await service.reconcile(Principal.system(), agency_id, steps=steps)
    finally:
        await db.close()
