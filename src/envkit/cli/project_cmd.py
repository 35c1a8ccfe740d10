"""Project binding commands: init, link, unlink."""

from __future__ import annotations

import click
from rich.panel import Panel

from ._common import console, handle_errors, home_option, open_engine, print_result, stage_option
from ..sync.models import MergePolicy

_POLICIES = click.Choice([p.value for p in MergePolicy])


def register_project_commands(main: click.Group) -> None:
    """Register init, link and unlink."""

    @main.command("init")
    @home_option
    @click.option("--team", "team_id", required=True, help="Team (key scope) id.")
    @click.option("--stage", "-s", default=None, help="Stage name (default from config).")
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @handle_errors
    def init(home, team_id, stage, working_dir):
        """Create a remote project for this directory and link it."""
        engine = open_engine(home, working_dir)
        record = engine.init(team_id, stage)
        console.print()
        console.print(
            Panel(
                f"Project: [cyan]{record.name}[/]\n"
                f"Stage: [cyan]{record.stage}[/]\n"
                f"Remote project id: [bold]{record.remote_project_id}[/]\n"
                f"Env file: {engine.env_path}\n\n"
                "Share the project id with teammates so they can "
                "[cyan]envkit link[/] it.",
                title="envkit init",
                border_style="green",
            )
        )
        console.print()

    @main.command("link")
    @home_option
    @click.argument("remote_project_id")
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @click.option("--policy", type=_POLICIES, default=None, help="How to merge existing local keys.")
    @handle_errors
    def link(home, remote_project_id, working_dir, policy):
        """Bind this directory to an existing remote project."""
        engine = open_engine(home, working_dir)
        result = engine.link(remote_project_id, policy=MergePolicy(policy) if policy else None)
        console.print(f"\n  [green]Linked[/] to [bold]{remote_project_id}[/]")
        print_result(result)

    @main.command("unlink")
    @home_option
    @stage_option
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @handle_errors
    def unlink(home, stage, working_dir):
        """Forget the binding. Local and remote variables stay."""
        engine = open_engine(home, working_dir)
        record = engine.unlink(stage)
        console.print(f"\n  [green]Unlinked[/] [cyan]{record.name}[/] ({record.stage})\n")
