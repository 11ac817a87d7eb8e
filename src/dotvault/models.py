"""
Pydantic models for the vault catalog, the sync baseline and run results.

Names are the one join key: the manifest, the vault and the checksum
snapshot all refer to an item by the same string.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

ENV_SECRETS_NAME = "Environment-Secrets"


class ItemType(str, Enum):
    """How an item's content is materialised on disk."""

    FILE = "file"
    SSHKEY = "sshkey"
    ENV = "env"
    DIRECTORY = "directory"


class Direction(str, Enum):
    """Which side of a sync is authoritative for one item."""

    IN_SYNC = "in_sync"
    PUSH = "push"
    PULL = "pull"
    CONFLICT = "conflict"


class OutcomeStatus(str, Enum):
    """Per-item result reported by the executors and the engine."""

    PUSHED = "pushed"
    PULLED = "pulled"
    IN_SYNC = "in_sync"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    FAILED = "failed"
    DELETED = "deleted"


class VaultItemSpec(BaseModel):
    """One manifest entry: a vault item name and where it lives locally."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    type: ItemType = ItemType.FILE
    required: bool = False


class ResolvedItem(BaseModel):
    """A manifest entry bound to its expanded absolute local path."""

    model_config = ConfigDict(frozen=True)

    spec: VaultItemSpec
    local_path: Path

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def type(self) -> ItemType:
        return self.spec.type

    @property
    def required(self) -> bool:
        return self.spec.required

    @property
    def is_env(self) -> bool:
        """Bundled environment secrets get a generated loader script."""
        return (
            self.spec.type == ItemType.ENV
            or self.spec.name == ENV_SECRETS_NAME
            or self.local_path.name.endswith("env.secrets")
        )


class ChecksumEntry(BaseModel):
    """Baseline for one item: the hash of the content last truly synced."""

    checksum: str
    local_path: str
    synced_at: datetime


class ChecksumSnapshot(BaseModel):
    """The drift-detection baseline persisted between runs."""

    timestamp: Optional[datetime] = None
    items: dict[str, ChecksumEntry] = Field(default_factory=dict)

    def baseline(self, name: str) -> str:
        """Return the stored checksum for ``name`` or ``""`` if none."""
        entry = self.items.get(name)
        return entry.checksum if entry else ""


class ItemOutcome(BaseModel):
    """What happened to one item during a run."""

    name: str
    status: OutcomeStatus
    direction: Optional[Direction] = None
    detail: str = ""
    local_path: Optional[Path] = None
    dry_run: bool = False
    local_checksum: str = ""
    vault_checksum: str = ""
    baseline_checksum: str = ""


class SyncSummary(BaseModel):
    """Aggregate counters for a sync, restore or push run."""

    pushed: int = 0
    pulled: int = 0
    in_sync: int = 0
    conflicts: int = 0
    failed: int = 0
    skipped: int = 0
    deleted: int = 0
    dry_run: bool = False
    forced: bool = False
    persisted: bool = False
    outcomes: list[ItemOutcome] = Field(default_factory=list)

    def record(self, outcome: ItemOutcome) -> None:
        """Add an outcome and bump the matching counter."""
        self.outcomes.append(outcome)
        counter = {
            OutcomeStatus.PUSHED: "pushed",
            OutcomeStatus.PULLED: "pulled",
            OutcomeStatus.IN_SYNC: "in_sync",
            OutcomeStatus.SKIPPED: "skipped",
            OutcomeStatus.CONFLICT: "conflicts",
            OutcomeStatus.FAILED: "failed",
            OutcomeStatus.DELETED: "deleted",
        }[outcome.status]
        setattr(self, counter, getattr(self, counter) + 1)

    @property
    def mutated(self) -> bool:
        return self.pushed > 0 or self.pulled > 0

    @property
    def ok(self) -> bool:
        if self.failed > 0:
            return False
        if self.conflicts > 0 and not self.forced:
            return False
        return True

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


class CatalogReport(BaseModel):
    """Result of validating a manifest without loading it for a run."""

    path: Path
    sections: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class CheckReport(BaseModel):
    """Which manifest entries exist in the vault."""

    present: list[str] = Field(default_factory=list)
    missing_required: list[str] = Field(default_factory=list)
    missing_optional: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_required


class DriftState(str, Enum):
    """Local state of an item relative to its stored baseline."""

    IN_SYNC = "in_sync"
    CHANGED = "changed"
    MISSING = "missing"
    UNTRACKED = "untracked"


class DriftReport(BaseModel):
    """Quick drift check of local files against the last snapshot."""

    snapshot_time: Optional[datetime] = None
    items: dict[str, DriftState] = Field(default_factory=dict)

    @property
    def drifted(self) -> list[str]:
        return [
            name
            for name, state in self.items.items()
            if state in (DriftState.CHANGED, DriftState.MISSING)
        ]
