"""Sync commands: push, pull, sync, status, diff, history."""

from __future__ import annotations

from pathlib import Path

import click
from rich.panel import Panel
from rich.table import Table

from ._common import (
    choose_conflict,
    console,
    handle_errors,
    home_option,
    open_engine,
    print_result,
    stage_option,
)
from ..audit import read_audit
from ..sync.models import MergePolicy, SyncAction

_POLICIES = click.Choice([p.value for p in MergePolicy])


def register_sync_commands(main: click.Group) -> None:
    """Register push, pull, sync, status, diff and history."""

    @main.command("push")
    @home_option
    @stage_option
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @handle_errors
    def push(home, stage, working_dir):
        """Encrypt the local env file and send it to the remote store."""
        engine = open_engine(home, working_dir)
        console.print(f"\n  Pushing [cyan]{engine.env_file}[/]...", end=" ")
        result = engine.push(stage)
        console.print("[green]done[/]")
        print_result(result)

    @main.command("pull")
    @home_option
    @stage_option
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @click.option("--policy", type=_POLICIES, default=None, help="How to merge changed keys.")
    @handle_errors
    def pull(home, stage, working_dir, policy):
        """Fetch remote variables into the local env file."""
        engine = open_engine(home, working_dir)
        result = engine.pull(stage, policy=MergePolicy(policy) if policy else None)
        print_result(result)

    @main.command("sync")
    @home_option
    @stage_option
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @click.option("--policy", type=_POLICIES, default=None, help="How to merge if pulling.")
    @handle_errors
    def sync(home, stage, working_dir, policy):
        """Push or pull, whichever side changed. Asks on conflict."""
        engine = open_engine(home, working_dir)
        result = engine.sync(
            stage,
            conflict_callback=choose_conflict,
            policy=MergePolicy(policy) if policy else None,
        )
        print_result(result)

    @main.command("status")
    @home_option
    @stage_option
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @handle_errors
    def status(home, stage, working_dir):
        """Show which side changed since the last sync."""
        engine = open_engine(home, working_dir)
        linked = engine.binding(stage)
        decision = engine.status(linked.stage)

        advice = {
            SyncAction.NONE: "[green]In sync[/]",
            SyncAction.PUSH: "[cyan]Local changes[/] -- run [bold]envkit push[/]",
            SyncAction.PULL: "[cyan]Remote changes[/] -- run [bold]envkit pull[/]",
            SyncAction.CONFLICT: "[yellow]Both sides changed[/] -- run [bold]envkit sync[/]",
        }[decision.action]

        console.print()
        console.print(
            Panel(
                f"Project: [cyan]{linked.name}[/]\n"
                f"Stage: [cyan]{linked.stage}[/]\n"
                f"Remote project: [dim]{linked.remote_project_id}[/]\n"
                f"Local hash:  {decision.local_hash[:16] or '[dim]empty[/]'}\n"
                f"Remote hash: {decision.remote_hash[:16] or '[dim]empty[/]'}\n"
                f"Synced hash: {decision.synced_hash[:16] or '[dim]never[/]'}\n"
                f"Status: {advice}",
                title="envkit status",
                border_style="cyan",
            )
        )
        console.print()

    @main.command("diff")
    @home_option
    @stage_option
    @click.option("--dir", "working_dir", default=None, type=click.Path(), help="Project directory.")
    @handle_errors
    def diff(home, stage, working_dir):
        """List variable names that differ from the remote (values never shown)."""
        engine = open_engine(home, working_dir)
        report = engine.diff(stage)
        if report.clean:
            console.print("\n  [green]No differences.[/]\n")
            return

        table = Table(title="Local vs remote", show_header=True, header_style="bold")
        table.add_column("Variable", style="cyan")
        table.add_column("Difference")
        for name in report.added:
            table.add_row(name, "[green]only local[/]")
        for name in report.removed:
            table.add_row(name, "[red]only remote[/]")
        for name in report.changed:
            table.add_row(name, "[yellow]different value[/]")
        console.print()
        console.print(table)
        console.print()

    @main.command("history")
    @home_option
    @click.option("--limit", "-n", default=20, help="Entries to show.")
    def history(home, limit):
        """Show recent envkit activity on this machine."""
        entries = read_audit(Path(home).expanduser(), limit=limit)
        if not entries:
            console.print("\n  [dim]No history yet.[/]\n")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("When", style="dim")
        table.add_column("Event", style="cyan")
        table.add_column("Project")
        table.add_column("Variables")
        for entry in entries:
            target = f"{entry.project or '-'} ({entry.stage or '-'})"
            table.add_row(entry.timestamp[:19], entry.event_type, target, ", ".join(sorted(entry.vars)))
        console.print()
        console.print(table)
        console.print()
