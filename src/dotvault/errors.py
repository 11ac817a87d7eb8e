"""
Exception taxonomy for dotvault.

Run-scoped errors (schema, auth, unknown items, drift guard, offline)
abort before anything is written. Item-scoped errors (BackendError
subclasses other than AuthError, plus plain OSError for local files)
are caught at the executor boundary and become a failed outcome.
"""

from __future__ import annotations


class DotvaultError(Exception):
    """Base class for every dotvault error."""


class SchemaError(DotvaultError):
    """Raised when the vault-items manifest is malformed."""


class MissingFieldError(SchemaError):
    """Raised when a manifest item lacks a required field."""

    def __init__(self, item: str, field: str):
        super().__init__(f"{item}: missing '{field}' field")
        self.item = item
        self.field = field


class UnknownItemError(DotvaultError):
    """Raised when a caller names an item the catalog does not know."""

    def __init__(self, name: str, valid: list[str]):
        super().__init__(f"Unknown item: {name}")
        self.name = name
        self.valid = sorted(valid)


class OfflineModeError(DotvaultError):
    """Raised when a vault operation is attempted in offline mode."""


class DriftDetectedError(DotvaultError):
    """Raised by a run-level guard to abort before destructive writes."""

    def __init__(self, items: list[str], side: str = "local"):
        super().__init__(
            f"{side} drift detected in {len(items)} item(s): {', '.join(items)}"
        )
        self.items = items
        self.side = side


class BackendError(DotvaultError):
    """Base class for failures reported by a vault backend."""


class AuthError(BackendError):
    """Raised when the backend cannot be initialised or unlocked."""


class NotFoundError(BackendError):
    """Raised when a vault entry does not exist."""

    def __init__(self, name: str):
        super().__init__(f"Item not found in vault: {name}")
        self.name = name


class VaultTimeoutError(BackendError):
    """Raised when a backend call exceeds its deadline."""


class BackendUnavailableError(BackendError):
    """Raised when the backend's CLI tool or storage is not usable."""


class ItemExistsError(DotvaultError):
    """Raised when creating a vault entry that already exists."""

    def __init__(self, name: str):
        super().__init__(f"Item '{name}' already exists, use --force to overwrite")
        self.name = name
