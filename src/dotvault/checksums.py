"""
Checksum store -- the drift-detection baseline.

Every entry is a historical fact: the SHA-256 of content that was in
both places at the moment it was recorded. A missing entry is a normal
state ("never synced") and reads back as an empty string.

The snapshot is read once at the start of a run and written once at
the end, after every file operation has finished, so a crash mid-run
leaves the previous baseline intact.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import ChecksumSnapshot

logger = logging.getLogger("dotvault.checksums")


def sha256_text(content: str) -> str:
    """Compute the SHA-256 hex digest of text content.

    Args:
        content: Text to hash (encoded as UTF-8).

    Returns:
        Hex-encoded SHA-256 digest.
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def content_checksum(content: Optional[str]) -> str:
    """Checksum of ``content``, or ``""`` when the content is absent."""
    if content is None:
        return ""
    return sha256_text(content)


def truncate_checksum(checksum: str) -> str:
    if not checksum:
        return "<missing>"
    if len(checksum) > 16:
        return checksum[:16] + "..."
    return checksum


class ChecksumStore:
    """Loads and persists the :class:`ChecksumSnapshot` for a run."""

    def __init__(self, path: Path):
        self.path = path
        self.snapshot = ChecksumSnapshot()

    def load(self) -> ChecksumSnapshot:
        """Read the snapshot from disk.

        Returns an empty snapshot when the file does not exist. An
        unreadable file is logged and also treated as empty, which makes
        every item look like a first sync.
        """
        if not self.path.exists():
            self.snapshot = ChecksumSnapshot()
            return self.snapshot

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self.snapshot = ChecksumSnapshot(**data)
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.warning("Failed to load checksum snapshot: %s", exc)
            self.snapshot = ChecksumSnapshot()
        return self.snapshot

    def save(self, snapshot: ChecksumSnapshot) -> Path:
        """Write ``snapshot`` in one go, creating parent directories."""
        payload = snapshot.model_dump_json(indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(payload + "\n", encoding="utf-8")
        self.snapshot = snapshot
        logger.info(
            "Checksum snapshot saved: %s (%d items)",
            self.path,
            len(snapshot.items),
        )
        return self.path

    def get_baseline(self, name: str) -> str:
        """Return the baseline for ``name`` from the loaded snapshot."""
        return self.snapshot.baseline(name)
