#!/usr/bin/env python3
"""
Database and indexer management script for the GM Tea indexer.
"""

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from alembic import command
from alembic.config import Config
from gmtea.core.config import settings
from gmtea.core.database import DatabaseManager, close_database, get_session_scope, init_database
from gmtea.core.exceptions import GMTeaException
from gmtea.core.logging import get_logger, setup_logging
from gmtea.scheduler.indexing_scheduler import IndexingScheduler
from gmtea.scheduler.main import build_indexing_scheduler

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database and indexer management commands")


def _with_scheduler(operation: Callable[[IndexingScheduler], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
    """Open the database, run one scheduler operation, close everything."""
    async def _run():
        setup_logging()
        await init_database(settings.database_url)
        scheduler = build_indexing_scheduler(settings, get_session_scope())
        try:
            return await operation(scheduler)
        finally:
            await scheduler.engine.ledger.close()
            await close_database()
    
    try:
        return asyncio.run(_run())
    except GMTeaException as e:
        console.print(f"❌ {e.message}")
        sys.exit(1)


def _print_result(title: str, result: Dict[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in result.items():
        table.add_row(key, value if isinstance(value, str) else json.dumps(value, default=str))
    console.print(table)


@app.command()
def init(drop: bool = typer.Option(False, "--drop", help="Drop existing tables first")):
    """Create all tables without running migrations."""
    if drop and not typer.confirm("Drop every table and all indexed data?"):
        raise typer.Abort()
    
    async def _init():
        setup_logging()
        await init_database(settings.database_url)
        try:
            if drop:
                await DatabaseManager.drop_tables()
            await DatabaseManager.create_tables()
        finally:
            await close_database()
    
    asyncio.run(_init())
    console.print("✅ Database initialized successfully!")


@app.command()
def migrate(revision: str = "head"):
    """Apply migrations."""
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, revision)
    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def reindex(source: Optional[str] = typer.Option(None, help="Source name; all sources when omitted")):
    """Reset checkpoints and collections, then replay from the deploy block."""
    target = source or "all sources"
    if not typer.confirm(f"Reindex {target}? Stored records will be deleted first."):
        console.print("❌ Operation cancelled")
        return
    
    result = _with_scheduler(lambda scheduler: scheduler.reindex_all(source))
    for name, stats in result["sources"].items():
        _print_result(f"Reindex: {name}", stats)
    console.print(f"✅ Reconciled {result['reconciled']} users, {result['ranks_changed']} ranks changed")


@app.command()
def recalculate(address: Optional[str] = typer.Argument(None, help="Single address; all users when omitted")):
    """Rebuild points breakdowns from stored events."""
    result = _with_scheduler(lambda scheduler: scheduler.recalculate_points(address))
    breakdown = result.pop("breakdown", None)
    _print_result("Points recalculation", result)
    if breakdown:
        _print_result(f"Breakdown for {breakdown['address']}", breakdown)


@app.command()
def ranks():
    """Recalculate leaderboard ranks."""
    result = _with_scheduler(lambda scheduler: scheduler.recalculate_all_ranks())
    console.print(f"✅ {result['ranks_changed']} ranks changed")


@app.command("fix-referrers")
def fix_referrers():
    """Lower-case referrer addresses stored with mixed case."""
    result = _with_scheduler(lambda scheduler: scheduler.fix_referrer_casing())
    console.print(f"✅ Fixed {result['fixed']} records ({result['total']} badges with a referrer)")


@app.command()
def status():
    """Show database and checkpoint status."""
    async def _status(scheduler: IndexingScheduler):
        healthy = await DatabaseManager.health_check()
        return {"database": healthy, **(await scheduler.get_status())}
    
    result = _with_scheduler(_status)
    
    table = Table(title="Indexer Status")
    table.add_column("Source", style="cyan")
    table.add_column("Last processed block", style="green")
    table.add_column("Syncing")
    table.add_column("Last sync")
    for checkpoint in result["checkpoints"]:
        table.add_row(
            checkpoint["source_id"],
            str(checkpoint["last_processed_block"]),
            "yes" if checkpoint["is_syncing"] else "no",
            checkpoint["last_sync_time"] or "-",
        )
    
    console.print("Database: " + ("✅ Connected" if result["database"] else "❌ Disconnected"))
    console.print(table)


if __name__ == "__main__":
    app()
