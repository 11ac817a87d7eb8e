"""
Item catalog -- which local paths map to which vault items.

The manifest (vault-items.json) has three sections:

    vault_items      name -> {"path", "type", "required"}
    ssh_keys         name -> path, informational
    syncable_items   name -> path, the set `sync` and `vault push` work on

`syncable_items` falls back to the paths in `vault_items` when the
section is absent. The catalog is read once per run and never changes
while the run is in progress.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .errors import MissingFieldError, SchemaError, UnknownItemError
from .models import CatalogReport, ItemType, ResolvedItem, VaultItemSpec

logger = logging.getLogger("dotvault.catalog")

SECTIONS = ("vault_items", "ssh_keys", "syncable_items")
VALID_TYPES = {t.value for t in ItemType}

# Entries a restore depends on; deleting one always needs confirmation.
PROTECTED_PREFIXES = ("SSH-", "AWS-", "Git-Config", "Environment-Secrets")


def is_protected_item(name: str) -> bool:
    return name.startswith(PROTECTED_PREFIXES)


def expand_path(template: str, home_dir: Optional[Path] = None) -> Path:
    """Expand a leading ``~`` or ``$HOME`` against ``home_dir``.

    Args:
        template: Path as written in the manifest.
        home_dir: Home directory to expand against. Defaults to the
            current user's home.

    Returns:
        Path: The expanded path.
    """
    home = home_dir or Path.home()
    if template == "~" or template == "$HOME":
        return home
    if template.startswith("~/"):
        return home / template[2:]
    if template.startswith("$HOME/"):
        return home / template[6:]
    return Path(template)


@dataclass
class Catalog:
    """Typed view over a validated manifest."""

    items: dict[str, VaultItemSpec]
    syncable: dict[str, str]
    ssh_keys: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    home_dir: Optional[Path] = None

    def _bind(self, spec: VaultItemSpec) -> ResolvedItem:
        return ResolvedItem(
            spec=spec, local_path=expand_path(spec.path, self.home_dir)
        )

    def resolve(self, name: str) -> ResolvedItem:
        """Bind a ``vault_items`` entry to its local path."""
        spec = self.items.get(name)
        if spec is None:
            raise UnknownItemError(name, list(self.items))
        return self._bind(spec)

    def resolve_items(self) -> list[ResolvedItem]:
        """All ``vault_items`` entries, in manifest order."""
        return [self._bind(spec) for spec in self.items.values()]

    def resolve_syncable(
        self, names: Optional[list[str]] = None
    ) -> list[ResolvedItem]:
        """Bind syncable items, optionally restricted to ``names``.

        A syncable entry takes its type and required flag from the
        matching ``vault_items`` entry when there is one.

        Raises:
            UnknownItemError: If a requested name is not syncable.
        """
        selected = list(self.syncable) if not names else list(names)
        for name in selected:
            if name not in self.syncable:
                raise UnknownItemError(name, list(self.syncable))

        resolved = []
        for name in selected:
            known = self.items.get(name)
            spec = VaultItemSpec(
                name=name,
                path=self.syncable[name],
                type=known.type if known else ItemType.FILE,
                required=known.required if known else False,
            )
            resolved.append(self._bind(spec))
        return resolved


def _read_manifest(manifest_path: Path) -> dict[str, Any]:
    if not manifest_path.exists():
        raise SchemaError(f"vault-items.json not found at {manifest_path}")
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SchemaError(f"Invalid JSON syntax: {exc}") from exc
    if not isinstance(data, dict):
        raise SchemaError("Manifest must be a JSON object")
    for section in SECTIONS:
        if section in data and not isinstance(data[section], dict):
            raise SchemaError(f"'{section}' must be a JSON object")
    return data


def _parse_items(
    raw_items: dict[str, Any],
) -> tuple[dict[str, VaultItemSpec], list[SchemaError], list[str]]:
    """Turn raw ``vault_items`` into specs, collecting problems."""
    items: dict[str, VaultItemSpec] = {}
    errors: list[SchemaError] = []
    warnings: list[str] = []

    for name, raw in raw_items.items():
        if not isinstance(raw, dict):
            errors.append(MissingFieldError(name, "path"))
            continue
        path = raw.get("path")
        if not isinstance(path, str) or not path:
            errors.append(MissingFieldError(name, "path"))
            continue

        required = raw.get("required", False)
        if not isinstance(required, bool):
            errors.append(SchemaError(f"{name}: 'required' must be true or false"))
            continue

        type_name = raw.get("type", ItemType.FILE.value)
        if not isinstance(type_name, str):
            errors.append(SchemaError(f"{name}: 'type' must be a string"))
            continue
        if type_name not in VALID_TYPES:
            warnings.append(f"{name}: unknown type '{type_name}'")
            type_name = ItemType.FILE.value

        items[name] = VaultItemSpec(
            name=name,
            path=path,
            type=ItemType(type_name),
            required=required,
        )
    return items, errors, warnings


def load_catalog(
    manifest_path: Path, home_dir: Optional[Path] = None
) -> Catalog:
    """Load and validate the manifest.

    Args:
        manifest_path: Path to vault-items.json.
        home_dir: Home directory used when expanding item paths.

    Returns:
        Catalog: The validated catalog.

    Raises:
        SchemaError: If the file is missing or not a valid manifest.
        MissingFieldError: If an item has no ``path``.
    """
    data = _read_manifest(manifest_path)
    items, errors, warnings = _parse_items(data.get("vault_items", {}))
    if errors:
        raise errors[0]
    for warning in warnings:
        logger.warning("%s", warning)

    syncable = data.get("syncable_items") or {
        name: spec.path for name, spec in items.items()
    }
    for name, path in syncable.items():
        if not isinstance(path, str) or not path:
            raise MissingFieldError(name, "path")

    return Catalog(
        items=items,
        syncable=dict(syncable),
        ssh_keys=dict(data.get("ssh_keys", {})),
        warnings=warnings,
        home_dir=home_dir,
    )


def validate_catalog(manifest_path: Path) -> CatalogReport:
    """Check a manifest and count its sections without loading it for a run.

    Document-level problems (missing file, bad JSON) and item-level
    problems are all reported on the returned report rather than raised.
    """
    report = CatalogReport(path=manifest_path)
    try:
        data = _read_manifest(manifest_path)
    except SchemaError as exc:
        report.errors.append(str(exc))
        return report

    for section in SECTIONS:
        if section in data:
            report.sections[section] = len(data[section])

    if "vault_items" not in data:
        report.warnings.append("vault_items section not found")

    _, errors, warnings = _parse_items(data.get("vault_items", {}))
    report.errors.extend(str(err) for err in errors)
    report.warnings.extend(warnings)

    for name, path in data.get("syncable_items", {}).items():
        if not isinstance(path, str) or not path:
            report.errors.append(str(MissingFieldError(name, "path")))

    return report
