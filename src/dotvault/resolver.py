"""
Sync direction resolver -- a three-way comparison against the baseline.

    local == vault                     -> in sync
    no baseline, only vault has it     -> pull
    no baseline, only local has it     -> push
    no baseline, both differ           -> conflict
    only local moved off the baseline  -> push
    only vault moved off the baseline  -> pull
    both moved                         -> conflict

Callers hand in content they already fetched; nothing here touches the
disk or the network.
"""

from __future__ import annotations

from typing import Optional

from .checksums import content_checksum
from .models import Direction


def resolve_checksums(
    local_checksum: str, vault_checksum: str, baseline_checksum: str
) -> Direction:
    """Classify an item from its three checksums (``""`` means absent)."""
    if local_checksum == vault_checksum:
        return Direction.IN_SYNC

    if not baseline_checksum:
        if not local_checksum:
            return Direction.PULL
        if not vault_checksum:
            return Direction.PUSH
        # Both exist and differ with no history to say who is right.
        return Direction.CONFLICT

    local_changed = local_checksum != baseline_checksum
    vault_changed = vault_checksum != baseline_checksum

    if local_changed and not vault_changed:
        return Direction.PUSH
    if vault_changed and not local_changed:
        return Direction.PULL
    if local_changed and vault_changed:
        return Direction.CONFLICT
    return Direction.IN_SYNC


def resolve(
    local_content: Optional[str],
    vault_content: Optional[str],
    baseline_checksum: str,
) -> Direction:
    """Decide which side of a sync is authoritative.

    Args:
        local_content: Local file content, or None when the file is absent.
        vault_content: Vault note content, or None when the entry is absent.
        baseline_checksum: Checksum recorded at the last sync, or ``""``.

    Returns:
        Direction: IN_SYNC, PUSH, PULL or CONFLICT.
    """
    return resolve_checksums(
        content_checksum(local_content),
        content_checksum(vault_content),
        baseline_checksum,
    )
