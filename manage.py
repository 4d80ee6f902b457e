import asyncio

import click


@click.group()
def cli():
    """Management command interface for the application.

    Provides subcommands for database setup, server control, manual
    notification processing and project maintenance utilities.
    """
    pass


@cli.command()
def createtables():
    """Create any missing database tables.

    Runs SQLModel metadata creation against the configured database. Existing
    tables are left untouched.
    """
    from config.database import close_database_engine, create_tables

    async def _run():
        try:
            await create_tables()
        finally:
            await close_database_engine()

    asyncio.run(_run())
    click.echo("Database tables created")


@cli.command()
@click.option("--tenant", "-t", required=True, help="Tenant to process")
@click.option("--urgent", is_flag=True, help="Only process urgent notifications")
@click.option("--limit", "-l", default=100, show_default=True, help="Pass limit")
def process(tenant, urgent, limit):
    """Run a single notification processing pass for one tenant.

    Delivers due notifications, retries failed ones whose backoff has elapsed,
    and (unless `--urgent`) expires overdue notifications and escalates stale
    ones. Prints the pass summary.

    Parameters
    ----------
    tenant: str
        Tenant whose notifications are processed.
    urgent: bool
        Restrict the pass to urgent notifications.
    limit: int
        Maximum number of notifications delivered in the pass.

    Examples
    --------
    Process everything due for a tenant:
        $ python manage.py process --tenant acme

    Process only urgent notifications:
        $ python manage.py process --tenant acme --urgent
    """
    from config.database import close_database_engine
    from core.infrastructure.factory import close_redis_service
    from core.infrastructure.logging import setup_logging
    from notifications.infrastructure.factory import (
        close_notification_services,
        get_notification_dispatcher,
    )

    setup_logging()

    async def _run():
        try:
            dispatcher = await get_notification_dispatcher()
            return await dispatcher.process_tenant(
                tenant, limit=limit, urgent_only=urgent
            )
        finally:
            await close_notification_services()
            await close_redis_service()
            await close_database_engine()

    summary = asyncio.run(_run())

    click.echo(
        f"Tenant {summary.tenant_id}: processed={summary.processed} "
        f"sent={summary.sent} failed={summary.failed} expired={summary.expired} "
        f"escalated={summary.escalated} skipped={summary.skipped}"
    )
    for detail in summary.details:
        reason = f" ({detail.reason})" if detail.reason else ""
        click.echo(f"  {detail.notification_id}: {detail.status}{reason}")


@cli.command()
def runserver():
    """Start a FastAPI development server instance.

    Launches the application using the main module's entry point
    with development-optimized settings including auto-reload
    and debug logging when configured.
    Uses `runpy` to execute the `main.py` module as a script.
    """
    import runpy

    runpy.run_module("main", run_name="__main__")


@cli.command()
def clean():
    """Remove Python cache and build artifacts.

    Recursively removes __pycache__ directories, .pyc files,
    and Ruff and pytest cache directories to resolve import issues and
    remove clutter from development environment.
    """
    import os
    import shutil

    for root, dirs, files in os.walk("."):
        for dir_name in dirs:
            if dir_name in ("__pycache__", ".ruff_cache", ".pytest_cache"):
                shutil.rmtree(os.path.join(root, dir_name))
        for file_name in files:
            if file_name.endswith(".pyc"):
                os.remove(os.path.join(root, file_name))

    click.echo("Cleaned Python, Ruff and pytest cache directories.")


if __name__ == "__main__":
    """CLI entry point for direct script execution.

    Initializes Click command group and processes command-line arguments
    for development task execution.
    """
    cli()
