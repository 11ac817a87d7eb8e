"""
Vault backends -- where the secure notes live.

Backends are looked up by name in BACKENDS, built once at import.
The engine asks create_backend() for an instance and never imports a
concrete backend itself.
"""

from __future__ import annotations

from typing import Callable

from .base import Deadline, Session, VaultBackend, VaultItem
from .local import LocalBackend
from .memory import MemoryBackend
from .process import BitwardenBackend, PassBackend, ProcessBackend

BACKENDS: dict[str, Callable[..., VaultBackend]] = {
    "bitwarden": BitwardenBackend,
    "pass": PassBackend,
    "local": LocalBackend,
    "memory": MemoryBackend,
}


def create_backend(settings) -> VaultBackend:
    """Factory function to create the configured backend.

    Args:
        settings: VaultSettings naming the backend.

    Returns:
        Instantiated VaultBackend.

    Raises:
        ValueError: If the backend name is not supported.
    """
    factory = BACKENDS.get(settings.backend)
    if not factory:
        raise ValueError(f"Unsupported backend: {settings.backend}")
    return factory(settings)


__all__ = [
    "BACKENDS",
    "BitwardenBackend",
    "Deadline",
    "LocalBackend",
    "MemoryBackend",
    "PassBackend",
    "ProcessBackend",
    "Session",
    "VaultBackend",
    "VaultItem",
    "create_backend",
]
