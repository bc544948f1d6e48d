"""CLI interface for lendledger.

Provides commands for:
- Creating the schema
- Managing resources
- Borrowing and returning units
- Auditing the counter invariants
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

import click

from lendledger import __version__
from lendledger.config import get_settings
from lendledger.coordinator import LendingCoordinator
from lendledger.db.engine import close_db, get_session, init_db, transaction
from lendledger.db.models import utc_now
from lendledger.errors import LedgerError
from lendledger.logging import configure_logging
from lendledger.stores import LedgerStore, ResourceStore


def _run(func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
    """Run a coroutine function against the configured database."""

    async def runner() -> Any:
        try:
            return await func(*args)
        finally:
            await close_db()

    try:
        return asyncio.run(runner())
    except LedgerError as exc:
        raise click.ClickException(f"[{exc.code}] {exc}") from exc


@click.group()
@click.version_option(version=__version__, prog_name="lendledger")
def cli() -> None:
    """lendledger - transactional ledger for lendable units.

    The database is selected with LENDLEDGER_DATABASE_URL.
    """
    settings = get_settings()
    configure_logging(
        json_format=settings.log_json,
        level="DEBUG" if settings.debug else settings.log_level,
    )


@cli.command("init-db")
def init_db_command() -> None:
    """Create the ledger tables."""
    _run(init_db)
    click.echo(click.style("Database initialized.", fg="green"))


@cli.group()
def resources() -> None:
    """Resource management commands."""
    pass


@resources.command("add")
@click.option("--units", "-u", required=True, type=int, help="Total lendable units")
@click.option("--name", "-n", default=None, help="Display name")
def add_resource(units: int, name: str | None) -> None:
    """Create a resource with all units available."""

    async def create() -> int:
        async with transaction() as session:
            resource = await ResourceStore(session).create(units, name=name)
            return resource.id

    resource_id = _run(create)
    click.echo(f"Created resource {resource_id} ({units} units)")


@resources.command("list")
def list_resources() -> None:
    """List resources and their availability."""

    async def fetch():
        async with get_session() as session:
            return await ResourceStore(session).list_all()

    rows = _run(fetch)
    if not rows:
        click.echo("No resources.")
        return
    for resource in rows:
        label = resource.name or "-"
        click.echo(
            f"  {click.style(str(resource.id), bold=True)}  {label}  "
            f"{resource.available_units}/{resource.total_units} available, "
            f"{resource.held_units} on loan"
        )


@resources.command("remove")
@click.argument("resource_id", type=int)
def remove_resource(resource_id: int) -> None:
    """Delete a resource that has never been lent."""

    async def remove() -> None:
        async with transaction() as session:
            await ResourceStore(session).delete(resource_id)

    _run(remove)
    click.echo(f"Removed resource {resource_id}")


@cli.command()
@click.argument("holder_id", type=int)
@click.argument("resource_id", type=int)
@click.option("--due", default=None, help="Due date (YYYY-MM-DD). Defaults to the loan period.")
def borrow(holder_id: int, resource_id: int, due: str | None) -> None:
    """Check out one unit of RESOURCE_ID to HOLDER_ID."""
    settings = get_settings()
    due_at = due or (utc_now().date() + timedelta(days=settings.default_loan_days)).isoformat()

    async def acquire() -> int:
        return await LendingCoordinator.from_settings(settings).acquire(
            holder_id, resource_id, due_at
        )

    entry_id = _run(acquire)
    click.echo(click.style(f"Loan {entry_id} created, due {due_at}", fg="green"))


@cli.command("return")
@click.argument("entry_id", type=int)
@click.option("--penalty-cents", default=0, type=int, help="Penalty charged on return")
def return_unit(entry_id: int, penalty_cents: int) -> None:
    """Return the unit held by loan ENTRY_ID."""

    async def release() -> None:
        await LendingCoordinator.from_settings().release(entry_id, penalty_cents)

    _run(release)
    click.echo(click.style(f"Loan {entry_id} returned", fg="green"))


@cli.command()
@click.option("--holder", type=int, default=None, help="Only loans of this holder")
@click.option("--resource", type=int, default=None, help="Only loans of this resource")
def loans(holder: int | None, resource: int | None) -> None:
    """List active loans."""

    async def fetch():
        async with get_session() as session:
            return await LedgerStore(session).list_active(holder_id=holder, resource_id=resource)

    entries = _run(fetch)
    if not entries:
        click.echo("No active loans.")
        return
    for entry in entries:
        click.echo(
            f"  {click.style(str(entry.id), bold=True)}  holder={entry.holder_id}  "
            f"resource={entry.resource_id}  due={entry.due_at:%Y-%m-%d}"
        )


@cli.command()
@click.option("--resource", type=int, default=None, help="Audit a single resource")
@click.pass_context
def audit(ctx: click.Context, resource: int | None) -> None:
    """Verify availability counters against active loans."""

    async def check():
        return await LendingCoordinator.from_settings().audit(resource)

    reports = _run(check)
    failures = 0
    for report in reports:
        status = click.style("ok", fg="green") if report.ok else click.style("MISMATCH", fg="red")
        click.echo(
            f"  resource {report.resource_id}: {report.available_units}/{report.total_units} "
            f"available, {report.active_entries} active loans  {status}"
        )
        if not report.ok:
            failures += 1
    if failures:
        click.echo(f"{failures} resource(s) violate the ledger invariants.", err=True)
        ctx.exit(1)
    click.echo(f"Audited {len(reports)} resource(s).")


if __name__ == "__main__":
    cli()
