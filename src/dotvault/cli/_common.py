"""Shared utilities for all CLI command modules.

Provides the Rich console, the pass/warn/fail line helpers, the
``--home``/``--backend`` options every vault command takes, and the
mapping from run-level errors to exit codes.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click
from rich.console import Console

from .. import DOTVAULT_HOME
from ..checksums import truncate_checksum
from ..config import VaultSettings, load_settings
from ..engine import SyncEngine
from ..errors import (
    AuthError,
    DotvaultError,
    DriftDetectedError,
    OfflineModeError,
    SchemaError,
    UnknownItemError,
)
from ..models import ItemOutcome, OutcomeStatus, SyncSummary

console = Console()
logger = logging.getLogger("dotvault.cli")

RULE = "=" * 40


def pass_line(message: str) -> None:
    console.print(f"[green]✓[/] {message}")


def warn_line(message: str) -> None:
    console.print(f"[yellow]![/] {message}")


def fail_line(message: str) -> None:
    console.print(f"[red]✗[/] {message}")


def info_line(message: str) -> None:
    console.print(f"[blue]ℹ[/] {message}")


def header(title: str) -> None:
    console.print()
    console.print(f"[bold cyan]── {title} ──[/]")


def home_option(func):
    func = click.option(
        "--backend",
        default=None,
        help="Vault backend (bitwarden, pass, local).",
    )(func)
    func = click.option(
        "--home",
        default=DOTVAULT_HOME,
        envvar="DOTVAULT_HOME",
        type=click.Path(),
        help="dotvault home directory.",
    )(func)
    return func


def get_settings(home: str, backend: Optional[str]) -> VaultSettings:
    return load_settings(home=Path(home).expanduser(), backend=backend)


def get_engine(home: str, backend: Optional[str]) -> SyncEngine:
    """Build an engine for the CLI, exiting cleanly on a bad backend name."""
    settings = get_settings(home, backend)
    try:
        return SyncEngine(settings)
    except ValueError as exc:
        fail_line(str(exc))
        sys.exit(1)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Translate run-level errors into messages and exit codes."""
    try:
        yield
    except OfflineModeError as exc:
        warn_line(str(exc))
        console.print("  Unset DOTVAULT_OFFLINE to sync later.")
        sys.exit(0)
    except UnknownItemError as exc:
        fail_line(str(exc))
        console.print(f"  Valid items: {', '.join(exc.valid)}")
        sys.exit(1)
    except SchemaError as exc:
        fail_line(f"Invalid vault-items.json: {exc}")
        console.print("  Run [cyan]dotvault vault validate[/] for details.")
        sys.exit(1)
    except AuthError as exc:
        fail_line(f"Authentication required: {exc}")
        sys.exit(1)
    except DriftDetectedError as exc:
        warn_line(f"{exc.side.capitalize()} changes since last vault sync:")
        for name in exc.items:
            console.print(f"  - {name}")
        console.print()
        if exc.side == "local":
            console.print("Options:")
            console.print("  1. Run [cyan]dotvault vault push[/] first to save local changes")
            console.print("  2. Run restore with [cyan]--force[/] to overwrite local changes")
            console.print("  3. Run [cyan]dotvault drift[/] to see which files changed")
            fail_line("Restore aborted to prevent data loss")
        else:
            console.print("Options:")
            console.print("  1. Run [cyan]dotvault sync[/] to merge vault changes first")
            console.print("  2. Run push with [cyan]--force[/] to overwrite vault changes")
            fail_line("Push aborted to prevent data loss")
        sys.exit(1)
    except DotvaultError as exc:
        fail_line(str(exc))
        sys.exit(1)
    except OSError as exc:
        fail_line(f"Filesystem error: {exc}")
        sys.exit(1)


def print_outcome(outcome: ItemOutcome, verbose: bool = False) -> None:
    """Print the pass/warn/fail line for one item."""
    if verbose and (outcome.local_checksum or outcome.vault_checksum or outcome.baseline_checksum):
        console.print(f"    Local checksum:  {truncate_checksum(outcome.local_checksum)}")
        console.print(f"    Vault checksum:  {truncate_checksum(outcome.vault_checksum)}")
        console.print(f"    Cached checksum: {truncate_checksum(outcome.baseline_checksum)}")

    label = f"{outcome.name}: {outcome.detail}"
    if outcome.status in (
        OutcomeStatus.PUSHED,
        OutcomeStatus.PULLED,
        OutcomeStatus.IN_SYNC,
        OutcomeStatus.DELETED,
    ):
        pass_line(label)
    elif outcome.status == OutcomeStatus.CONFLICT:
        warn_line(f"CONFLICT {label}")
    elif outcome.status == OutcomeStatus.SKIPPED:
        warn_line(label)
    else:
        fail_line(label)


def print_summary(summary: SyncSummary, title: str = "SYNC SUMMARY") -> None:
    """Print the aggregate counters of a run."""
    console.print(RULE)
    if summary.dry_run:
        console.print(f"[cyan]DRY RUN {title}:[/]")
        console.print(f"  Would push:         {summary.pushed}")
        console.print(f"  Would pull:         {summary.pulled}")
    else:
        console.print(f"{title}:")
        console.print(f"  Pushed to vault:    {summary.pushed}")
        console.print(f"  Pulled from vault:  {summary.pulled}")
    console.print(f"  Already in sync:    {summary.in_sync}")
    if summary.skipped:
        console.print(f"  [yellow]Skipped:            {summary.skipped}[/]")
    if summary.conflicts:
        console.print(f"  [yellow]Conflicts:          {summary.conflicts}[/]")
    if summary.failed:
        console.print(f"  [red]Failed:             {summary.failed}[/]")
    console.print(RULE)
