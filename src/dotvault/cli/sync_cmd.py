"""Sync commands: sync, drift."""

from __future__ import annotations

import sys

import click

from ._common import (
    RULE,
    console,
    fail_line,
    get_engine,
    handle_errors,
    header,
    home_option,
    info_line,
    pass_line,
    print_outcome,
    print_summary,
    warn_line,
)
from ..models import DriftState, ItemOutcome


def register_sync_commands(main: click.Group) -> None:
    """Register the top-level sync and drift commands."""

    @main.command("sync")
    @click.argument("items", nargs=-1)
    @click.option("--dry-run", "-n", is_flag=True, help="Show what would be synced without making changes.")
    @click.option("--force-local", "-l", is_flag=True, help="Push all local content to the vault.")
    @click.option("--force-vault", "-v", is_flag=True, help="Pull all vault content to local.")
    @click.option("--verbose", is_flag=True, help="Show checksums used for each decision.")
    @click.option("--all", "-a", "all_items", is_flag=True, help="Sync all syncable items.")
    @home_option
    def sync(items, dry_run, force_local, force_vault, verbose, all_items, home, backend):
        """Bidirectional vault sync (smart push/pull).

        If local changed since the last sync it is pushed; if the vault
        changed it is pulled; if both changed the item is a conflict
        and is left alone until --force-local or --force-vault.

        Examples:

            dotvault sync --dry-run

            dotvault sync Git-Config

            dotvault sync --force-local
        """
        if force_local and force_vault:
            raise click.UsageError("Cannot use --force-local and --force-vault together")

        engine = get_engine(home, backend)

        header("dotvault sync")
        info_line(f"Using vault backend: {engine.backend.name}")
        if dry_run:
            console.print("[cyan](DRY RUN - no changes will be made)[/]")
        if force_local:
            console.print("[yellow](FORCE LOCAL - pushing all to vault)[/]")
        if force_vault:
            console.print("[yellow](FORCE VAULT - pulling all from vault)[/]")
        console.print()

        def report(outcome: ItemOutcome) -> None:
            console.print(f"[blue]--- {outcome.name} ---[/]")
            console.print(f"    Local: {outcome.local_path}")
            print_outcome(outcome, verbose=verbose)
            console.print()

        with handle_errors():
            summary = engine.sync(
                names=list(items),
                all_items=all_items,
                dry_run=dry_run,
                force_local=force_local,
                force_vault=force_vault,
                on_outcome=report,
            )

        print_summary(summary)

        if summary.conflicts:
            console.print()
            console.print("To resolve conflicts:")
            console.print("  dotvault sync --force-local   # Push your local changes")
            console.print("  dotvault sync --force-vault   # Pull vault changes")
            console.print("  dotvault drift                # See which files changed")

        if summary.failed:
            fail_line(f"{summary.failed} sync operation(s) failed")
        elif not summary.ok:
            fail_line(f"{summary.conflicts} conflict(s) detected")
        sys.exit(summary.exit_code)

    @main.command("drift")
    @home_option
    def drift(home, backend):
        """Compare local files against the last synced baseline.

        Fast and offline: no vault access, only checksums.
        """
        engine = get_engine(home, backend)

        with handle_errors():
            report = engine.drift()

        header("Drift Check (local vs last vault sync)")
        if report.snapshot_time is None:
            console.print("No drift state available. Run [cyan]dotvault sync[/] first.")
            return
        console.print(f"Last sync: {report.snapshot_time.isoformat()}")
        console.print()

        for name, state in report.items.items():
            if state == DriftState.IN_SYNC:
                pass_line(f"{name}: in sync")
            elif state == DriftState.CHANGED:
                warn_line(f"{name}: CHANGED locally")
            elif state == DriftState.MISSING:
                warn_line(f"{name}: file missing (was synced)")
            else:
                console.print(f"[dim]- {name}: not tracked yet[/]")

        console.print()
        console.print(RULE)
        checked = sum(1 for s in report.items.values() if s != DriftState.UNTRACKED)
        if report.drifted:
            warn_line(f"{len(report.drifted)} of {checked} items have local changes")
            console.print("  dotvault vault push --all   # Push local changes to vault")
            console.print("  dotvault vault restore      # Overwrite local with vault")
        else:
            pass_line(f"All {checked} tracked items match the last sync")
