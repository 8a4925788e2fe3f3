"""CLI command: sharewatch replay <POLLS> — run recorded poll cycles through the rules."""

from __future__ import annotations

import asyncio
import sys

import click
from rich.console import Console
from rich.table import Table

from sharewatch.actions.executor import ActionExecutor
from sharewatch.config import ShareWatchConfig
from sharewatch.policy.evaluator import RuleEngine
from sharewatch.policy.loader import load_rules, load_rules_dirs
from sharewatch.policy.results import EvaluationPass
from sharewatch.poller import ReplayPoller
from sharewatch.resolve import GeoResolver
from sharewatch.session.history import SessionHistory
from sharewatch.session.manager import SessionManager
from sharewatch.session.models import Session, SessionEvent, SessionEventType, Violation
from sharewatch.storage.db import get_db
from sharewatch.storage.repos import SessionRepo, ViolationRepo

console = Console(stderr=True)

_EVENT_STYLE = {
    SessionEventType.STARTED: "green",
    SessionEventType.UPDATED: "dim",
    SessionEventType.ENDED: "blue",
}


class _CountingRecorder:
    """Records through the repository and remembers what was new."""

    def __init__(self, repo: ViolationRepo) -> None:
        self._repo = repo
        self.created: list[Violation] = []

    async def record(self, violation: Violation) -> bool:
        created = await self._repo.record(violation)
        if created:
            self.created.append(violation)
        return created


@click.command()
@click.argument("polls", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--rules",
    "-r",
    "rules_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to a rules YAML file. Defaults to the config dir's rules/.",
)
@click.option(
    "--db",
    "db_path",
    default=":memory:",
    show_default=True,
    help="SQLite database for sessions and violations.",
)
@click.option(
    "--geo",
    "geo_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="CIDR→location table (YAML).",
)
@click.option("--audit", is_flag=True, help="Run the inactivity audit after the last cycle.")
@click.option("--show-updates", is_flag=True, help="Print every session update.")
def replay(
    polls: str,
    rules_path: str | None,
    db_path: str,
    geo_path: str | None,
    audit: bool,
    show_updates: bool,
) -> None:
    """Feed recorded poll cycles through the tracker and rule engine."""
    config = ShareWatchConfig.load()
    if not rules_path and not config.rules_dirs:
        console.print(
            f"[red]No rules:[/red] pass --rules or add files to {config.config_dir / 'rules'}"
        )
        raise SystemExit(1)
    try:
        if rules_path:
            rules = load_rules(rules_path)
        else:
            rules = load_rules_dirs(config.rules_dirs)
        poller = ReplayPoller.from_yaml(polls)
        geo_file = geo_path or config.geo_table
        geo = GeoResolver.from_yaml(geo_file) if geo_file else None
    except (ValueError, KeyError) as exc:
        console.print(f"[red]Cannot load input:[/red] {exc}")
        raise SystemExit(1) from None

    console.print(
        f"[bold]ShareWatch[/bold] replaying {len(poller.cycles)} cycle(s) "
        f"across {len(poller.servers)} server(s) with {len(rules)} rule(s)\n"
    )

    def on_event(event: SessionEvent) -> None:
        if event.type == SessionEventType.UPDATED and not show_updates:
            return
        session = event.session
        style = _EVENT_STYLE[event.type]
        location = session.country or "?"
        console.print(
            f"  [{style}]{event.type.value:<8}[/{style}] {session.full_key} "
            f"user={session.server_user_id} media={session.rating_key or '-'} "
            f"ip={session.ip_address or '-'} ({location})"
        )

    def on_evaluation(session: Session, outcome: EvaluationPass) -> None:
        for result in outcome.matched:
            console.print(
                f"  [yellow]⚠ MATCH[/yellow] {result.rule_name} "
                f"user={session.server_user_id} groups={list(result.matched_groups)}"
            )
        for failure in outcome.rule_failures:
            console.print(f"  [red]rule {failure.rule_id} failed:[/red] {failure.error}")

    async def _run() -> tuple[list[Violation], EvaluationPass | None]:
        db = await get_db(db_path)
        try:
            recorder = _CountingRecorder(ViolationRepo(db))
            manager = SessionManager(
                servers=poller.servers,
                poller=poller,
                rules=rules,
                engine=RuleEngine(
                    executor=ActionExecutor(recorder=recorder),
                    rule_timeout=config.rule_timeout,
                ),
                users=poller.users,
                session_repo=SessionRepo(db),
                geo_resolver=geo,
                history=SessionHistory(recent_window_hours=config.recent_window_hours),
                poll_interval=config.poll_interval,
                stale_timeout=config.stale_timeout,
                on_event=on_event,
                on_evaluation=on_evaluation,
            )
            await manager.restore()
            last_at = None
            for _ in poller.cycles:
                last_at = poller.advance()
                await manager.run_cycle(now=last_at)
            audit_pass = None
            if audit and last_at is not None:
                audit_pass = await manager.audit_inactive(now=last_at)
            return recorder.created, audit_pass
        finally:
            await db.close()

    created, audit_pass = asyncio.run(_run())
    if audit_pass is not None:
        console.print(f"\n  Inactivity audit: {len(audit_pass.matched)} match(es)")
    _print_summary(created)


def _print_summary(created: list[Violation]) -> None:
    console.print("\n[bold]Replay Summary[/bold]")
    if not created:
        console.print("  [green]No violations[/green]")
        return

    table = Table(box=None, padding=(0, 2))
    table.add_column("Severity")
    table.add_column("Rule")
    table.add_column("User")
    table.add_column("Session", style="dim")
    for violation in created:
        color = "red" if violation.severity == "high" else "yellow"
        table.add_row(
            f"[{color}]{violation.severity}[/{color}]",
            violation.rule_name,
            violation.server_user_id,
            violation.session_id or "-",
        )
    console.print(table)
    console.print(f"\n[yellow]⚠ {len(created)} violation(s) raised[/yellow]")
    sys.exit(1)
