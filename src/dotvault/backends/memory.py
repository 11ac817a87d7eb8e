"""In-memory backend, used by the test suite and for dry experiments."""

from __future__ import annotations

from typing import Optional

from ..errors import AuthError, NotFoundError
from .base import Deadline, Session, VaultBackend, VaultItem


class MemoryBackend(VaultBackend):
    """Stores notes in a dict. Records every mutation in ``mutations``."""

    def __init__(
        self,
        settings: object = None,
        items: Optional[dict[str, str]] = None,
        locked: bool = False,
    ):
        self.items: dict[str, str] = dict(items or {})
        self.locked = locked
        self.mutations: list[tuple[str, str]] = []
        self.sync_count = 0
        self.closed = False

    @property
    def name(self) -> str:
        return "memory"

    def init(self, deadline: Deadline) -> None:
        deadline.check("init")

    def is_authenticated(self, deadline: Deadline) -> bool:
        return not self.locked

    def authenticate(self, deadline: Deadline) -> Session:
        deadline.check("authenticate")
        if self.locked:
            raise AuthError("memory vault is locked")
        return Session(token="memory", backend=self.name)

    def get_notes(self, name: str, session: Session, deadline: Deadline) -> str:
        deadline.check(f"get {name}")
        if name not in self.items:
            raise NotFoundError(name)
        return self.items[name]

    def create_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        deadline.check(f"create {name}")
        self.items[name] = content
        self.mutations.append(("create", name))

    def update_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        deadline.check(f"update {name}")
        if name not in self.items:
            raise NotFoundError(name)
        self.items[name] = content
        self.mutations.append(("update", name))

    def delete_item(self, name: str, session: Session, deadline: Deadline) -> None:
        deadline.check(f"delete {name}")
        if self.items.pop(name, None) is None:
            raise NotFoundError(name)
        self.mutations.append(("delete", name))

    def list_items(self, session: Session, deadline: Deadline) -> list[VaultItem]:
        deadline.check("list")
        return [VaultItem(name=name) for name in sorted(self.items)]

    def sync(self, session: Session, deadline: Deadline) -> None:
        deadline.check("sync")
        self.sync_count += 1

    def close(self) -> None:
        self.closed = True
