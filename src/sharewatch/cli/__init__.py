"""CLI entry point — Click group with global options."""

from __future__ import annotations

import logging

import click

from sharewatch import __version__


@click.group()
@click.version_option(version=__version__, prog_name="sharewatch")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """ShareWatch — detect account sharing on media servers."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from sharewatch.cli.replay import replay  # noqa: F811
    from sharewatch.cli.rules import rules  # noqa: F811
    from sharewatch.cli.violations import violations  # noqa: F811

    main.add_command(rules)
    main.add_command(replay)
    main.add_command(violations)


_register_commands()
