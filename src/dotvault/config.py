"""
Settings and key/value persistence.

Everything a run needs to know about its environment is gathered once
into a VaultSettings object and handed to the engine: which backend to
use, where the session cache, manifest and baseline live, and how long
backend calls may take. The engine itself never reads the environment.

ConfigStore is the small YAML key/value file that remembers the chosen
backend and the last push/pull/sync timestamps under dotted keys such as
``vault.last_push``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel

from . import DOTVAULT_HOME

logger = logging.getLogger("dotvault.config")

DEFAULT_BACKEND = "bitwarden"


class ConfigStore:
    """YAML-backed key/value store addressed by dotted keys."""

    def __init__(self, path: Path):
        self.path = path

    def data(self) -> dict[str, Any]:
        """Load the whole document (empty when missing or unreadable)."""
        if not self.path.exists():
            return {}
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            logger.warning("Failed to load config %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return the value at ``key`` as a string, or ``default``."""
        node: Any = self.data()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        if node is None or isinstance(node, dict):
            return default
        return str(node)

    def set(self, key: str, value: str) -> None:
        """Store ``value`` at ``key``, creating intermediate sections."""
        data = self.data()
        node = data
        parts = key.split(".")
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            yaml.dump(data, default_flow_style=False), encoding="utf-8"
        )


class VaultSettings(BaseModel):
    """Explicit configuration for one dotvault invocation."""

    home: Path
    home_dir: Path
    backend: str = DEFAULT_BACKEND
    session_file: Path
    session_ttl: int = 1800
    prefix: str = "dotvault"
    manifest_path: Path
    state_path: Path
    config_path: Path
    local_vault_dir: Path
    password_store_dir: Path
    timeout: float = 120.0
    auth_timeout: float = 60.0
    offline: bool = False

    def config_store(self) -> ConfigStore:
        return ConfigStore(self.config_path)


def load_settings(
    home: Optional[Path | str] = None,
    backend: Optional[str] = None,
    home_dir: Optional[Path] = None,
    **overrides: Any,
) -> VaultSettings:
    """Build settings from arguments, the environment and config.yaml.

    Precedence for the backend: explicit argument, then
    ``DOTVAULT_VAULT_BACKEND``, then ``vault.backend`` in config.yaml,
    then bitwarden.

    Args:
        home: dotvault home directory. Defaults to ``DOTVAULT_HOME``.
        backend: Backend name override.
        home_dir: User home used to expand ``~`` in manifest paths.
        **overrides: Any other VaultSettings field.

    Returns:
        VaultSettings: The resolved settings.
    """
    home_path = Path(home or DOTVAULT_HOME).expanduser()
    config_path = home_path / "config" / "config.yaml"

    chosen = (
        backend
        or os.environ.get("DOTVAULT_VAULT_BACKEND")
        or ConfigStore(config_path).get("vault.backend")
        or DEFAULT_BACKEND
    )

    session_env = os.environ.get("VAULT_SESSION_FILE")
    fields: dict[str, Any] = {
        "home": home_path,
        "home_dir": home_dir or Path.home(),
        "backend": chosen,
        "session_file": (
            Path(session_env).expanduser()
            if session_env
            else home_path / "vault" / ".vault-session"
        ),
        "manifest_path": home_path / "config" / "vault-items.json",
        "state_path": home_path / "state" / "vault-state.json",
        "config_path": config_path,
        "local_vault_dir": home_path / "vault" / "local",
        "password_store_dir": Path(
            os.environ.get("PASSWORD_STORE_DIR")
            or (home_dir or Path.home()) / ".password-store"
        ).expanduser(),
        "offline": os.environ.get("DOTVAULT_OFFLINE") == "1",
    }
    fields.update(overrides)
    return VaultSettings(**fields)
