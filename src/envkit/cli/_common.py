"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the engine factory, interactive
prompts, and result formatting used across every command group.
"""

from __future__ import annotations

import functools
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .. import ENVKIT_HOME
from ..config import load_config
from ..errors import EnvkitError
from ..sync.engine import SyncEngine
from ..sync.models import ConflictChoice, SyncAction, SyncDecision, SyncResult

console = Console()
logger = logging.getLogger("envkit.cli")


def home_option(fn):
    """Attach the common ``--home`` option."""
    return click.option(
        "--home",
        default=ENVKIT_HOME,
        envvar="ENVKIT_HOME",
        type=click.Path(),
        help="envkit home directory.",
    )(fn)


def stage_option(fn):
    """Attach the common ``--stage`` option."""
    return click.option(
        "--stage", "-s", default=None, help="Stage to operate on (default: the only linked one)."
    )(fn)


def handle_errors(fn):
    """Turn EnvkitError into a red message and exit status 1."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except EnvkitError as exc:
            logger.debug("Command failed", exc_info=True)
            console.print(f"\n  [bold red]Error:[/] {exc}\n")
            sys.exit(1)

    return wrapper


def confirm_key(name: str, existing: Optional[str], incoming: Optional[str]) -> bool:
    """Ask whether to take the incoming value for one variable."""
    if incoming is None:
        return click.confirm(f"  {name} was removed remotely. Remove it locally?", default=False)
    return click.confirm(f"  {name} differs from the remote value. Take the remote value?", default=False)


def choose_conflict(decision: SyncDecision) -> ConflictChoice:
    """Prompt the user to resolve a push/pull conflict."""
    console.print(
        "\n  [bold yellow]Conflict:[/] local and remote both changed since the last sync."
    )
    console.print(f"    local  {decision.local_hash[:12] or '<empty>'}")
    console.print(f"    remote {decision.remote_hash[:12] or '<empty>'}")
    console.print(f"    synced {decision.synced_hash[:12] or '<never>'}")
    choice = click.prompt(
        "  Resolve by",
        type=click.Choice([c.value for c in ConflictChoice]),
        default=ConflictChoice.ABORT.value,
    )
    return ConflictChoice(choice)


def open_engine(home: str, working_dir: Optional[str] = None) -> SyncEngine:
    """Load config and build an engine for a working directory.

    Raises:
        ConfigError: If config is invalid or no pepper is set.
    """
    config = load_config(Path(home).expanduser())
    cwd = Path(working_dir).expanduser() if working_dir else Path.cwd()
    return SyncEngine.from_config(config, working_dir=cwd, confirm=confirm_key)


_ACTION_STYLE = {
    SyncAction.PUSH: "[bold cyan]pushed[/]",
    SyncAction.PULL: "[bold green]pulled[/]",
    SyncAction.CONFLICT: "[bold yellow]conflict[/]",
    SyncAction.NONE: "[dim]up to date[/]",
}


def print_result(result: SyncResult) -> None:
    """Render a SyncResult as a short summary plus a change table."""
    if result.aborted:
        console.print("\n  [yellow]Aborted.[/] Nothing was changed.\n")
        return

    console.print(
        f"\n  [cyan]{result.project}[/] ({result.stage}): {_ACTION_STYLE[result.action]}"
    )
    rows = (
        [(n, "[green]added[/]") for n in result.additions]
        + [(n, "[red]removed[/]") for n in result.removals]
        + [(n, "[yellow]changed[/]") for n in result.modifications]
    )
    if result.merge is not None:
        rows += [(n, "[dim]kept local[/]") for n in result.merge.kept]
    if rows:
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Variable", style="cyan")
        table.add_column("Change")
        for name, change in sorted(rows):
            table.add_row(name, change)
        console.print(table)
    console.print()
