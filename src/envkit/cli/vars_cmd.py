"""Single-variable commands: get, set, delete."""

from __future__ import annotations

import sys

import click

from ._common import console, handle_errors, home_option, open_engine, stage_option


def register_vars_commands(main: click.Group) -> None:
    """Register get, set and delete."""

    @main.command("get")
    @home_option
    @stage_option
    @click.argument("key")
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @click.option("--previous", is_flag=True, help="Print the value before the last update.")
    @handle_errors
    def get(home, stage, key, working_dir, previous):
        """Print one variable's value."""
        engine = open_engine(home, working_dir)
        value = engine.previous(key, stage) if previous else engine.get(key, stage)
        if value is None:
            message = "has no earlier value" if previous else "is not set"
            console.print(f"[yellow]{key} {message}[/]")
            sys.exit(1)
        click.echo(value)

    @main.command("set")
    @home_option
    @stage_option
    @click.argument("key")
    @click.argument("value", required=False)
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @handle_errors
    def set_(home, stage, key, value, working_dir):
        """Set one variable locally and remotely.

        Leave VALUE out to be prompted for it without echo.
        """
        if value is None:
            value = click.prompt(f"Value for {key}", hide_input=True)
        engine = open_engine(home, working_dir)
        engine.set(key, value, stage)
        console.print(f"\n  [green]Set[/] [cyan]{key}[/]\n")

    @main.command("delete")
    @home_option
    @stage_option
    @click.argument("key")
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
    @handle_errors
    def delete(home, stage, key, working_dir, yes):
        """Delete one variable locally and remotely."""
        if not yes and not click.confirm(f"Delete {key} everywhere?", default=False):
            console.print("[dim]Cancelled.[/]")
            return
        engine = open_engine(home, working_dir)
        engine.delete(key, stage)
        console.print(f"\n  [green]Deleted[/] [cyan]{key}[/]\n")
