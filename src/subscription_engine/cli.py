import asyncio
import typer
import logging
import sys
from datetime import datetime
from typing import Optional
if sys.platform == "win32":
    # asyncpg needs the selector event loop on Windows.
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
from sqlalchemy.ext.asyncio import create_async_engine

from subscription_engine import create_billing_client, Scheduler
from subscription_engine.catalog import default_plans
from subscription_engine.config import get_settings
from subscription_engine.db.base import Base
import subscription_engine.db  # noqa: F401  registers tables and triggers on Base.metadata
from subscription_engine.exceptions import BillingEngineError
from subscription_engine.logging import configure as configure_logging
from subscription_engine.utils.cli_utils import get_rich_console, tick_summary_table


app = typer.Typer(help="CLI for subscription-engine management.")
logger = logging.getLogger(__name__)
console = get_rich_console()


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, "--log-level", help="Overrides LOG_LEVEL.")):
    configure_logging(log_level)


@app.command()
def init():
    """Creates the billing tables, the change-feed trigger and the no-overlap constraint."""
    console.rule("[bold cyan]Database Initialization[/bold cyan]")

    with console.status("Creating PostgreSQL tables...", spinner="dots"):
        async def _create_tables():
            settings = get_settings()
            engine = create_async_engine(settings.postgres.get_pg_dsn())
            try:
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            finally:
                await engine.dispose()

        try:
            asyncio.run(_create_tables())
        except Exception as e:
            console.print(f"[bold red]✖[/bold red] Database initialization FAILED: {e}")
            raise typer.Exit(code=1)

    console.print("[bold green]✔[/bold green] Database tables created successfully.")


@app.command()
def check():
    """Checks connectivity to PostgreSQL."""
    console.rule("[bold cyan]Connection Check[/bold cyan]")

    async def _check() -> dict[str, str]:
        client = create_billing_client()
        try:
            return await client.check_connections()
        finally:
            await client.aclose()

    statuses = asyncio.run(_check())
    pg_status = statuses.get("postgres", "unknown error")
    if pg_status == "ok":
        console.print("[bold green]✔[/bold green] PostgreSQL connection: OK")
    else:
        console.print(f"[bold red]✖[/bold red] PostgreSQL connection: FAILED ({pg_status})")
        raise typer.Exit(code=1)


@app.command()
def tick(
    at: Optional[datetime] = typer.Option(None, "--at", help="Evaluate as of this instant (UTC if naive)."),
):
    """Runs one scheduler tick: time transitions for every live tenant, then reminders."""
    console.rule("[bold cyan]Scheduler Tick[/bold cyan]")

    async def _tick() -> dict[str, int]:
        settings = get_settings()
        client = create_billing_client()
        client.dispatcher.start()
        try:
            summary = await Scheduler(client, settings.scheduler).run_tick(at)
            await client.dispatcher.drain()
            return summary
        finally:
            await client.aclose()

    try:
        summary = asyncio.run(_tick())
    except BillingEngineError as e:
        console.print(f"[bold red]✖[/bold red] Tick FAILED: {e}")
        raise typer.Exit(code=1)
    console.print(tick_summary_table(summary))
    if summary.get("failed"):
        raise typer.Exit(code=1)


@app.command("seed-plans")
def seed_plans():
    """Creates the default plan catalog. Existing plans (by name) are left untouched."""
    console.rule("[bold cyan]Plan Catalog[/bold cyan]")

    async def _seed() -> tuple[list[str], list[str]]:
        client = create_billing_client()
        created, skipped = [], []
        try:
            for plan in default_plans():
                if await client.plans.get_plan_by_name(plan.name) is not None:
                    skipped.append(plan.name)
                    continue
                await client.create_plan(plan)
                created.append(plan.name)
        finally:
            await client.aclose()
        return created, skipped

    try:
        created, skipped = asyncio.run(_seed())
    except BillingEngineError as e:
        console.print(f"[bold red]✖[/bold red] Seeding FAILED: {e}")
        raise typer.Exit(code=1)
    for name in created:
        console.print(f"[bold green]✔[/bold green] Created plan '{name}'")
    for name in skipped:
        console.print(f"[yellow]•[/yellow] Plan '{name}' already exists")


if __name__ == "__main__":
    app()
