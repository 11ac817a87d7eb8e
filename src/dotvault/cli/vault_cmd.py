"""Vault commands: restore, push, check, validate, status, list, get,
create, delete, unlock, lock, backend."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.panel import Panel
from rich.table import Table

from ._common import (
    RULE,
    console,
    fail_line,
    get_engine,
    get_settings,
    handle_errors,
    header,
    home_option,
    info_line,
    pass_line,
    print_outcome,
    print_summary,
    warn_line,
)
from ..backends import BACKENDS
from ..catalog import load_catalog, validate_catalog
from ..errors import SchemaError


def _validate_or_exit(manifest_path: Path) -> None:
    """Print the manifest validation report; exit 1 when it is invalid."""
    info_line("Validating vault-items.json schema...")
    report = validate_catalog(manifest_path)

    for section, count in report.sections.items():
        pass_line(f"{section} section found ({count} items)")
    for warning in report.warnings:
        warn_line(warning)
    for error in report.errors:
        fail_line(error)

    if not report.valid:
        fail_line(f"Validation failed with {len(report.errors)} error(s)")
        sys.exit(1)
    pass_line("Vault configuration is valid")
    console.print()


def register_vault_commands(main: click.Group) -> None:
    """Register the vault command group."""

    @main.group()
    def vault():
        """Secret vault operations.

        Restore secrets to this machine, push local changes back, and
        check the manifest against what the vault actually holds.
        """

    @vault.command("restore")
    @click.option("--force", "-f", is_flag=True, help="Overwrite local changes without the drift check.")
    @click.option("--dry-run", "-n", is_flag=True, help="Show what would be restored.")
    @home_option
    def vault_restore(force, dry_run, home, backend):
        """Restore every vault item to its local path.

        Existing files are backed up before they are overwritten. Unless
        --force is given, the restore is aborted when any local file has
        changes that were never pushed.
        """
        engine = get_engine(home, backend)
        header("Vault Restore")
        _validate_or_exit(engine.settings.manifest_path)
        console.print(f"Backend: {engine.backend.name}")
        if dry_run:
            console.print("=== Preview Mode - No changes will be made ===")
        console.print()

        with handle_errors():
            summary = engine.restore(force=force, dry_run=dry_run, on_outcome=print_outcome)

        console.print()
        print_summary(summary, title="RESTORE SUMMARY")
        if summary.persisted:
            info_line(f"Drift state saved to {engine.settings.state_path}")
        if not summary.ok:
            fail_line(f"{summary.failed} item(s) failed to restore")
        sys.exit(summary.exit_code)

    @vault.command("push")
    @click.argument("items", nargs=-1)
    @click.option("--force", "-f", is_flag=True, help="Overwrite vault changes without the drift check.")
    @click.option("--dry-run", "-n", is_flag=True, help="Show what would be pushed.")
    @click.option("--all", "-a", "all_items", is_flag=True, help="Push all syncable items.")
    @home_option
    def vault_push(items, force, dry_run, all_items, home, backend):
        """Push local secrets to the vault.

        Examples:

            dotvault vault push --all

            dotvault vault push AWS-Config Git-Config --dry-run
        """
        engine = get_engine(home, backend)
        header("Push to Vault")
        _validate_or_exit(engine.settings.manifest_path)

        if not items and not all_items:
            warn_line("No items specified. Use --all or name items to push.")
            with handle_errors():
                catalog = load_catalog(engine.settings.manifest_path, engine.settings.home_dir)
            console.print("\nValid items:")
            for name, path in catalog.syncable.items():
                console.print(f"  {name:<25} {path}")
            return

        if dry_run:
            console.print("=== Preview Mode - No changes will be made ===")
            console.print()

        with handle_errors():
            summary = engine.push(
                names=list(items),
                all_items=all_items,
                force=force,
                dry_run=dry_run,
                on_outcome=print_outcome,
            )

        console.print()
        print_summary(summary, title="PUSH SUMMARY")
        if not summary.ok:
            fail_line(f"{summary.failed} item(s) failed to push")
        sys.exit(summary.exit_code)

    @vault.command("check")
    @home_option
    def vault_check(home, backend):
        """Check that every required vault item exists."""
        engine = get_engine(home, backend)
        header("Check Vault Items")

        with handle_errors():
            report = engine.check()

        console.print("\n=== Required Items ===")
        with handle_errors():
            catalog = load_catalog(engine.settings.manifest_path, engine.settings.home_dir)
        for name, spec in catalog.items.items():
            if not spec.required:
                continue
            if name in report.missing_required:
                fail_line(f"[MISSING] {name}")
            else:
                pass_line(name)

        console.print("\n=== Optional Items ===")
        for name, spec in catalog.items.items():
            if spec.required:
                continue
            if name in report.missing_optional:
                warn_line(f"{name} - not found (optional)")
            else:
                pass_line(name)

        console.print()
        console.print(RULE)
        if report.ok:
            pass_line("All required vault items present!")
            console.print("You can safely run: [cyan]dotvault vault restore[/]")
            return

        fail_line(f"Missing {len(report.missing_required)} required item(s)")
        console.print("\nTo create missing items:")
        console.print("  dotvault vault push ITEM-NAME")
        sys.exit(1)

    @vault.command("validate")
    @home_option
    def vault_validate(home, backend):
        """Validate the vault-items.json schema."""
        settings = get_settings(home, backend)
        header("Validate vault-items.json")
        _validate_or_exit(settings.manifest_path)

    @vault.command("status")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    @home_option
    def vault_status(json_out, home, backend):
        """Show backend health and the last sync timestamps."""
        engine = get_engine(home, backend)
        status = engine.status()

        if json_out:
            click.echo(json.dumps(status, indent=2))
            return

        yes = "[green]yes[/]"
        no = "[red]no[/]"
        console.print()
        console.print(
            Panel(
                f"Backend: [cyan]{status['backend']}[/]\n"
                f"Available: {yes if status['available'] else no}\n"
                f"Authenticated: {yes if status['authenticated'] else no}\n"
                f"Last Push: {status['last_push'] or '[dim]never[/]'}\n"
                f"Last Pull: {status['last_pull'] or '[dim]never[/]'}\n"
                f"Last Sync: {status['last_sync'] or '[dim]never[/]'}\n"
                f"Tracked items: {status['tracked_items']}",
                title="Vault Status",
                border_style="cyan",
            )
        )

    @vault.command("list")
    @home_option
    def vault_list(home, backend):
        """List items stored in the vault."""
        engine = get_engine(home, backend)

        with handle_errors():
            items = engine.list_items()
            try:
                catalog = load_catalog(engine.settings.manifest_path, engine.settings.home_dir)
                known = set(catalog.items) | set(catalog.syncable)
            except SchemaError:
                known = set()

        table = Table(title=f"Vault items ({engine.backend.name})")
        table.add_column("Name", style="cyan")
        table.add_column("Managed")
        for item in items:
            table.add_row(item.name, "[green]yes[/]" if item.name in known else "[dim]no[/]")
        console.print(table)

    @vault.command("get")
    @click.argument("name")
    @home_option
    def vault_get(name, home, backend):
        """Print the notes of one vault item."""
        engine = get_engine(home, backend)

        with handle_errors():
            notes = engine.get_item(name)

        click.echo(notes, nl=not notes.endswith("\n"))

    @vault.command("create")
    @click.argument("name")
    @click.argument("content", required=False)
    @click.option(
        "--file",
        "from_file",
        type=click.Path(exists=True, dir_okay=False),
        help="Read content from a file.",
    )
    @click.option("--force", "-f", is_flag=True, help="Overwrite an existing item.")
    @click.option("--dry-run", "-n", is_flag=True, help="Preview without contacting the vault.")
    @home_option
    def vault_create(name, content, from_file, force, dry_run, home, backend):
        """Create a vault item from an argument, a file or stdin.

        Examples:

            dotvault vault create Git-Config --file ~/.gitconfig

            echo "TOKEN=abc" | dotvault vault create Environment-Secrets
        """
        if from_file:
            content = Path(from_file).read_text(encoding="utf-8")
        elif content is None:
            stdin = click.get_text_stream("stdin")
            content = "" if stdin.isatty() else stdin.read()
        if not content:
            raise click.UsageError("Content required: provide it as an argument, --file, or stdin")

        engine = get_engine(home, backend)
        header("Create Vault Item")
        if dry_run:
            console.print("[cyan](DRY RUN - no changes will be made)[/]")
            console.print("Preview (first 5 lines):")
            console.print("---")
            for line in content.splitlines()[:5]:
                console.print(line, markup=False, highlight=False)
            console.print("---")

        with handle_errors():
            outcome = engine.create_item(name, content, force=force, dry_run=dry_run)

        print_outcome(outcome)
        if not dry_run:
            console.print("\nVerify with: [cyan]dotvault vault list[/]")

    @vault.command("delete")
    @click.argument("names", nargs=-1, required=True)
    @click.option("--force", "-f", is_flag=True, help="Skip confirmation for unprotected items.")
    @click.option("--dry-run", "-n", is_flag=True, help="Show what would be deleted.")
    @home_option
    def vault_delete(names, force, dry_run, home, backend):
        """Delete items from the vault.

        Protected items (SSH-*, AWS-*, Git-Config, Environment-Secrets)
        always need the item name typed back, even with --force.
        """
        engine = get_engine(home, backend)
        header("Delete from Vault")
        if dry_run:
            console.print("[cyan](DRY RUN - no changes will be made)[/]")

        def confirm(name: str, protected: bool) -> bool:
            if protected:
                warn_line(f"{name} is a protected item; deleting it will break restore.")
                typed = click.prompt(
                    "Type the item name to confirm deletion", default="", show_default=False
                )
                return typed.strip() == name
            return click.confirm(f"Delete '{name}'?", default=False)

        with handle_errors():
            summary = engine.delete_items(
                list(names),
                force=force,
                dry_run=dry_run,
                confirm=confirm,
                on_outcome=print_outcome,
            )

        console.print(RULE)
        console.print(f"  {'Would delete' if dry_run else 'Deleted'}: {summary.deleted}")
        console.print(f"  Skipped: {summary.skipped}")
        if summary.failed:
            fail_line(f"Failed: {summary.failed}")
        console.print(RULE)
        sys.exit(summary.exit_code)

    @vault.command("unlock")
    @home_option
    def vault_unlock(home, backend):
        """Unlock the vault and cache the session."""
        engine = get_engine(home, backend)
        info_line(f"Unlocking {engine.backend.name} vault...")

        with handle_errors():
            session = engine.unlock()

        pass_line("Vault unlocked")
        if engine.settings.session_file.exists():
            info_line(f"Session cached: {engine.settings.session_file}")
        if session.expires_at:
            info_line(f"Session expires: {session.expires_at.isoformat()}")

    @vault.command("lock")
    @home_option
    def vault_lock(home, backend):
        """Clear the cached vault session."""
        engine = get_engine(home, backend)
        if engine.lock():
            pass_line("Vault locked (session cleared)")
        else:
            info_line("No cached session to clear")

    @vault.command("backend")
    @click.argument("name", required=False)
    @home_option
    def vault_backend(name, home, backend):
        """Show the configured backend, or set it to NAME."""
        settings = get_settings(home, backend)

        if name is None:
            console.print(f"Current backend: [cyan]{settings.backend}[/]")
            console.print("\nAvailable backends:")
            for key in BACKENDS:
                console.print(f"  {key}")
            return

        if name not in BACKENDS:
            fail_line(f"Unknown backend: {name}")
            console.print(f"Available backends: {', '.join(BACKENDS)}")
            sys.exit(1)
        settings.config_store().set("vault.backend", name)
        pass_line(f"Backend set to: {name}")
