"""CLI command group: sharewatch violations — review stored violations."""

from __future__ import annotations

import asyncio
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from sharewatch.config import ShareWatchConfig
from sharewatch.storage.db import get_db
from sharewatch.storage.repos import ViolationRepo

console = Console(stderr=True)

_db_option = click.option(
    "--db",
    "db_path",
    default=None,
    help="SQLite database (defaults to the data directory).",
)


def _resolve_db(db_path: str | None) -> str:
    return db_path or str(ShareWatchConfig.load().db_path)


def _fmt_time(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


@click.group()
def violations() -> None:
    """Review and acknowledge violations."""


@violations.command("list")
@click.option("--user", "user_id", default=None, help="Only this server user (serverId:userId).")
@click.option("--limit", default=50, show_default=True, help="Maximum rows.")
@_db_option
def list_violations(user_id: str | None, limit: int, db_path: str | None) -> None:
    """List the most recent violations."""

    async def _fetch() -> list[dict]:
        db = await get_db(_resolve_db(db_path))
        try:
            repo = ViolationRepo(db)
            if user_id:
                return await repo.list_by_user(user_id, limit=limit)
            return await repo.list_recent(limit=limit)
        finally:
            await db.close()

    rows = asyncio.run(_fetch())
    if not rows:
        console.print("[dim]No violations recorded.[/dim]")
        return

    table = Table(title="Violations")
    table.add_column("ID", style="cyan")
    table.add_column("Created")
    table.add_column("User")
    table.add_column("Rule")
    table.add_column("Severity")
    table.add_column("Session", style="dim")
    table.add_column("Acknowledged")
    for row in rows:
        table.add_row(
            row["id"],
            _fmt_time(row["created_at"]),
            row["server_user_id"],
            row["rule_name"] or row["rule_id"],
            row["severity"],
            row["session_id"] or "-",
            _fmt_time(row["acknowledged_at"]),
        )
    console.print(table)


@violations.command()
@click.argument("violation_id")
@_db_option
def ack(violation_id: str, db_path: str | None) -> None:
    """Acknowledge a violation so the rule can fire again for that session."""

    async def _ack() -> bool:
        db = await get_db(_resolve_db(db_path))
        try:
            return await ViolationRepo(db).acknowledge(violation_id)
        finally:
            await db.close()

    if not asyncio.run(_ack()):
        console.print(
            f"[red]No open violation with id {violation_id}[/red]"
        )
        raise SystemExit(1)
    console.print(f"[green]✓[/green] Acknowledged {violation_id}")
