"""CLI command group: sharewatch rules — inspect rule files."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from sharewatch.policy.loader import load_rules

console = Console(stderr=True)


@click.group()
def rules() -> None:
    """Work with rule definition files."""


@rules.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def validate(path: str) -> None:
    """Load a rules YAML file and show what it defines."""
    try:
        loaded = load_rules(path)
    except (ValueError, OSError) as exc:
        console.print(f"[red]Invalid rules file:[/red] {exc}")
        raise SystemExit(1) from None

    table = Table(title=f"Rules in {path}")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Groups", justify="right")
    table.add_column("Actions")
    table.add_column("Enabled")

    for rule in loaded:
        table.add_row(
            rule.id,
            rule.name,
            rule.type.value,
            rule.severity.value,
            str(len(rule.groups)),
            ", ".join(a.type.value for a in rule.actions),
            "yes" if rule.enabled else "[dim]no[/dim]",
        )

    console.print(table)
    console.print(f"[green]✓[/green] {len(loaded)} rule(s) valid")
