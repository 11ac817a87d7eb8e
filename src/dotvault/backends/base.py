"""
Vault backend interface -- where secure notes actually live.

A backend is a session-based store of named text notes. The engine
only ever talks to this interface; concrete backends wrap a password
manager CLI, a directory, or (in tests) a dict.

Every call receives a Deadline. Backends check it before doing work
and bound blocking I/O by what remains of it.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from ..errors import VaultTimeoutError


class Session(BaseModel):
    """Opaque handle for an authenticated backend session."""

    token: str = ""
    backend: str
    expires_at: Optional[datetime] = None

    @property
    def expired(self) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at


class VaultItem(BaseModel):
    """Summary of one vault entry as returned by ``list_items``."""

    name: str
    id: Optional[str] = None
    notes: Optional[str] = None


class Deadline:
    """A cancellable time budget shared by the backend calls of one run."""

    def __init__(
        self, seconds: float, clock: Callable[[], float] = time.monotonic
    ):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds
        self._cancelled = False

    def remaining(self) -> float:
        if self._cancelled:
            return 0.0
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cancel(self) -> None:
        self._cancelled = True

    def check(self, operation: str) -> None:
        """Raise VaultTimeoutError if no time is left for ``operation``."""
        if self._cancelled:
            raise VaultTimeoutError(f"{operation}: cancelled")
        if self.expired:
            raise VaultTimeoutError(
                f"{operation}: deadline of {self.seconds:.0f}s exceeded"
            )


class VaultBackend(ABC):
    """Abstract secure-note backend."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""

    @abstractmethod
    def init(self, deadline: Deadline) -> None:
        """Verify the backend is usable.

        Raises:
            BackendUnavailableError: If the tool or storage is missing.
        """

    @abstractmethod
    def is_authenticated(self, deadline: Deadline) -> bool:
        """Whether a usable session already exists."""

    @abstractmethod
    def authenticate(self, deadline: Deadline) -> Session:
        """Open (or reuse) a session.

        Raises:
            AuthError: If the vault cannot be unlocked.
        """

    @abstractmethod
    def get_notes(self, name: str, session: Session, deadline: Deadline) -> str:
        """Return the note content of ``name``.

        Raises:
            NotFoundError: If no such entry exists.
        """

    @abstractmethod
    def create_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        """Create a secure note called ``name``."""

    @abstractmethod
    def update_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        """Replace the note content of an existing entry."""

    @abstractmethod
    def delete_item(self, name: str, session: Session, deadline: Deadline) -> None:
        """Remove an entry."""

    @abstractmethod
    def list_items(self, session: Session, deadline: Deadline) -> list[VaultItem]:
        """List every entry visible to the session."""

    @abstractmethod
    def sync(self, session: Session, deadline: Deadline) -> None:
        """Pull the latest remote state into the local backend cache."""

    def close(self) -> None:
        """Release the session. Backends without resources do nothing."""
