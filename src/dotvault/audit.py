"""
Audit trail for mutating vault runs.

One JSON object per line in ``<home>/security/audit.log`` so entries
stay append-only and machine-parseable.
"""

from __future__ import annotations

import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append an event to the audit log.

    Args:
        home: dotvault home directory.
        event_type: Event category (SYNC, RESTORE, PUSH).
        detail: Human-readable description.
        metadata: Optional structured extras such as counters.

    Returns:
        AuditEntry: The entry that was written.
    """
    security_dir = home / "security"
    security_dir.mkdir(parents=True, exist_ok=True)

    entry = AuditEntry(event_type=event_type, detail=detail, metadata=metadata)
    with (security_dir / AUDIT_LOG_NAME).open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")
    return entry


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read audit entries, newest last; ``limit`` keeps only the tail."""
    audit_log = home / "security" / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries = [
        AuditEntry.model_validate_json(line)
        for line in audit_log.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    if limit > 0:
        entries = entries[-limit:]
    return entries
