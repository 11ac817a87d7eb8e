"""
Local filesystem backend for USB drives, NAS mounts and offline machines.

Each vault item is one ``<name>.note`` file in the target directory.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ..errors import BackendUnavailableError, NotFoundError
from .base import Deadline, Session, VaultBackend, VaultItem

logger = logging.getLogger("dotvault.backends.local")

NOTE_SUFFIX = ".note"


class LocalBackend(VaultBackend):
    """Plain directory of note files."""

    def __init__(self, settings):
        self.root: Path = Path(settings.local_vault_dir).expanduser()

    @property
    def name(self) -> str:
        return "local"

    def _note_path(self, name: str) -> Path:
        return self.root / (name.replace("/", "_") + NOTE_SUFFIX)

    def init(self, deadline: Deadline) -> None:
        # The directory is created on first write.
        deadline.check("init")
        if self.root.exists() and not self.root.is_dir():
            raise BackendUnavailableError(
                f"Cannot use local vault at {self.root}: not a directory"
            )

    def is_authenticated(self, deadline: Deadline) -> bool:
        return not self.root.exists() or self.root.is_dir()

    def authenticate(self, deadline: Deadline) -> Session:
        deadline.check("authenticate")
        return Session(token=str(self.root), backend=self.name)

    def get_notes(self, name: str, session: Session, deadline: Deadline) -> str:
        deadline.check(f"get {name}")
        path = self._note_path(name)
        if not path.exists():
            raise NotFoundError(name)
        return path.read_bytes().decode("utf-8")

    def _write(self, name: str, content: str) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackendUnavailableError(
                f"Cannot use local vault at {self.root}: {exc}"
            ) from exc
        path = self._note_path(name)
        path.write_bytes(content.encode("utf-8"))
        os.chmod(path, 0o600)

    def create_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        deadline.check(f"create {name}")
        self._write(name, content)
        logger.info("Created local note: %s", name)

    def update_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        deadline.check(f"update {name}")
        if not self._note_path(name).exists():
            raise NotFoundError(name)
        self._write(name, content)
        logger.info("Updated local note: %s", name)

    def delete_item(self, name: str, session: Session, deadline: Deadline) -> None:
        deadline.check(f"delete {name}")
        path = self._note_path(name)
        if not path.exists():
            raise NotFoundError(name)
        path.unlink()

    def list_items(self, session: Session, deadline: Deadline) -> list[VaultItem]:
        deadline.check("list")
        if not self.root.is_dir():
            return []
        return [
            VaultItem(name=p.name[: -len(NOTE_SUFFIX)], id=str(p))
            for p in sorted(self.root.glob("*" + NOTE_SUFFIX))
        ]

    def sync(self, session: Session, deadline: Deadline) -> None:
        deadline.check("sync")
