"""
Push and pull executors -- apply one resolved direction to one item.

Pull writes in the order read-old, backup-old, write-new: an existing
file is copied to ``<path>.bak-<timestamp>`` before it is overwritten,
so a crash between the two never loses the only copy.

Both executors turn every item-scoped error into a ``failed`` outcome
and return; one bad item never stops the run.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from .backends.base import Deadline, Session, VaultBackend
from .errors import BackendError, NotFoundError
from .models import Direction, ItemOutcome, ItemType, OutcomeStatus, ResolvedItem

logger = logging.getLogger("dotvault.executors")

DIR_MODE = 0o755
SECRET_MODE = 0o600
PUBLIC_MODE = 0o644
LOADER_MODE = 0o700

# TODO: replace path-substring matching with a per-type permission table.
SECRET_PATH_MARKERS = (".ssh/", ".aws/")

PRIVATE_KEY_BEGIN = re.compile(r"-----BEGIN [A-Z0-9 ]*PRIVATE KEY-----")
PRIVATE_KEY_END = re.compile(r"-----END [A-Z0-9 ]*PRIVATE KEY-----")
PUBLIC_KEY_PREFIXES = (
    "ssh-ed25519 ",
    "ssh-rsa ",
    "ssh-ecdsa ",
    "ecdsa-sha2-",
    "ssh-dss ",
    "sk-ssh-ed25519@openssh.com ",
    "sk-ecdsa-sha2-",
)

ENV_LOADER_NAME = "load-env.sh"


# ---------------------------------------------------------------------------
# Content helpers
# ---------------------------------------------------------------------------


def extract_private_key(notes: str) -> str:
    """Return the PEM private-key block in ``notes`` (no trailing newline).

    Lines are collected from the first ``BEGIN ... PRIVATE KEY`` marker
    through the matching ``END`` marker. Returns ``""`` if there is none.
    """
    block: list[str] = []
    in_key = False
    for line in notes.splitlines():
        if not in_key and PRIVATE_KEY_BEGIN.search(line):
            in_key = True
        if in_key:
            block.append(line)
            if PRIVATE_KEY_END.search(line):
                break
    if not block or not PRIVATE_KEY_END.search(block[-1]):
        return ""
    return "\n".join(block)


def extract_public_key(notes: str) -> str:
    """Return the first public-key line in ``notes``, or ``""``."""
    for line in notes.splitlines():
        stripped = line.strip()
        if stripped.startswith(PUBLIC_KEY_PREFIXES):
            return stripped
    return ""


def _with_newline(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


def canonical_content(item: ResolvedItem, text: Optional[str]) -> Optional[str]:
    """Normalise content so the local and vault sides compare like for like.

    An SSH key lives in the vault as one note but locally as a private
    key file plus ``.pub``; both reduce to the private block followed by
    the public line. Other types compare verbatim.
    """
    if text is None or item.type != ItemType.SSHKEY:
        return text
    private = extract_private_key(text)
    if not private:
        return text
    public = extract_public_key(text)
    canonical = _with_newline(private)
    if public:
        canonical += _with_newline(public)
    return canonical


def file_mode_for(item: ResolvedItem) -> int:
    """Permission bits for a pulled file."""
    if item.type == ItemType.SSHKEY or item.is_env:
        return SECRET_MODE
    path = item.local_path.as_posix()
    if any(marker in path for marker in SECRET_PATH_MARKERS):
        return SECRET_MODE
    return PUBLIC_MODE


def read_local(item: ResolvedItem) -> Optional[str]:
    """Read the local side of ``item``; None when the file is absent.

    SSH keys read the private key and append the ``.pub`` file when it
    exists, mirroring the shape of the vault note.

    Raises:
        OSError: If the file exists but cannot be read.
    """
    path = item.local_path
    if not path.exists():
        return None
    content = path.read_bytes().decode("utf-8")
    if item.type == ItemType.SSHKEY:
        pub_path = public_key_path(path)
        if pub_path.exists():
            content = _with_newline(content) + pub_path.read_bytes().decode("utf-8")
    return content


def public_key_path(path: Path) -> Path:
    return path.with_name(path.name + ".pub")


def backup_file(path: Path, now: Optional[datetime] = None) -> Optional[Path]:
    """Copy ``path`` to ``<path>.bak-YYYYmmddHHMMSS`` (mode 0600).

    Returns:
        The backup path, or None when there was nothing to back up.
    """
    if not path.exists():
        return None
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
    backup = path.with_name(f"{path.name}.bak-{stamp}")
    shutil.copyfile(path, backup)
    os.chmod(backup, SECRET_MODE)
    return backup


def _write_file(path: Path, content: str, mode: int) -> None:
    path.write_bytes(content.encode("utf-8"))
    os.chmod(path, mode)


def render_env_loader(env_path: Path) -> str:
    """Shell script that exports every KEY=VALUE line of ``env_path``."""
    return f"""#!/usr/bin/env bash
# Generated by dotvault on every pull; edits here are overwritten.
# Load environment secrets with: source {env_path.parent / ENV_LOADER_NAME}

ENV_FILE="{env_path}"

if [[ -f "$ENV_FILE" ]]; then
    while IFS= read -r line || [[ -n "$line" ]]; do
        [[ -z "${{line// }}" || "$line" =~ ^[[:space:]]*# ]] && continue
        export "$line"
    done < "$ENV_FILE"
fi
"""


def write_env_loader(env_path: Path) -> Path:
    """(Re)generate the loader script next to ``env_path``."""
    loader = env_path.parent / ENV_LOADER_NAME
    _write_file(loader, render_env_loader(env_path), LOADER_MODE)
    return loader


def missing_outcome(item: ResolvedItem, direction: Direction, detail: str) -> ItemOutcome:
    status = OutcomeStatus.FAILED if item.required else OutcomeStatus.SKIPPED
    suffix = "required" if item.required else "optional"
    return ItemOutcome(
        name=item.name,
        status=status,
        direction=direction,
        detail=f"{detail} ({suffix})",
        local_path=item.local_path,
    )


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


def push_item(
    item: ResolvedItem,
    backend: VaultBackend,
    session: Session,
    deadline: Deadline,
    dry_run: bool = False,
) -> ItemOutcome:
    """Send the local content of ``item`` to the vault.

    Creates the vault entry when it does not exist, updates it otherwise.
    A dry run does every read and lookup but changes nothing.
    """
    base = {
        "name": item.name,
        "direction": Direction.PUSH,
        "local_path": item.local_path,
        "dry_run": dry_run,
    }
    try:
        content = read_local(item)
        if content is None:
            return missing_outcome(item, Direction.PUSH, f"local file not found: {item.local_path}")
        content = canonical_content(item, content)

        try:
            backend.get_notes(item.name, session, deadline)
            exists = True
        except NotFoundError:
            exists = False

        action = "update" if exists else "create"
        if dry_run:
            return ItemOutcome(
                status=OutcomeStatus.PUSHED,
                detail=f"would {action} vault:{item.name} from {item.local_path}",
                **base,
            )

        if exists:
            backend.update_item(item.name, content, session, deadline)
        else:
            backend.create_item(item.name, content, session, deadline)
    except (BackendError, OSError, UnicodeDecodeError) as exc:
        logger.error("Push of %s failed: %s", item.name, exc)
        return ItemOutcome(status=OutcomeStatus.FAILED, detail=str(exc), **base)

    logger.info("Pushed %s (%sd)", item.name, action)
    return ItemOutcome(
        status=OutcomeStatus.PUSHED,
        detail=f"{action}d vault:{item.name} from {item.local_path}",
        **base,
    )


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


def _materialise_ssh_key(item: ResolvedItem, content: str) -> str:
    private = extract_private_key(content)
    if not private:
        raise ValueError("no private key block found in vault item")
    _write_file(item.local_path, _with_newline(private), SECRET_MODE)

    public = extract_public_key(content)
    pub_path = public_key_path(item.local_path)
    if not public:
        # Already backed up; a leftover .pub would be read back with the new key.
        if pub_path.exists():
            pub_path.unlink()
        return f"{item.local_path}"
    _write_file(pub_path, _with_newline(public), PUBLIC_MODE)
    return f"{item.local_path} (+ .pub)"


def pull_item(
    item: ResolvedItem,
    content: str,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> ItemOutcome:
    """Write vault ``content`` for ``item`` to disk.

    Args:
        item: The resolved item.
        content: Vault note content, already fetched by the caller.
        dry_run: Report the projected action only.
        now: Clock override for backup names.

    Returns:
        ItemOutcome: ``pulled`` or ``failed``.
    """
    path = item.local_path
    base = {
        "name": item.name,
        "direction": Direction.PULL,
        "local_path": path,
        "dry_run": dry_run,
    }

    if dry_run:
        state = "exists, would overwrite" if path.exists() else "new"
        return ItemOutcome(
            status=OutcomeStatus.PULLED,
            detail=f"vault:{item.name} -> {path} ({state})",
            **base,
        )

    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
        targets = [path]
        if item.type == ItemType.SSHKEY:
            targets.append(public_key_path(path))
        for target in targets:
            backup = backup_file(target, now)
            if backup:
                logger.debug("Backed up %s to %s", target, backup)

        if item.type == ItemType.SSHKEY:
            written = _materialise_ssh_key(item, content)
        elif item.is_env:
            _write_file(path, content, SECRET_MODE)
            write_env_loader(path)
            written = f"{path} (+ {ENV_LOADER_NAME})"
        else:
            _write_file(path, content, file_mode_for(item))
            written = str(path)
    except (OSError, ValueError) as exc:
        logger.error("Pull of %s failed: %s", item.name, exc)
        return ItemOutcome(status=OutcomeStatus.FAILED, detail=str(exc), **base)

    logger.info("Pulled %s to %s", item.name, path)
    return ItemOutcome(
        status=OutcomeStatus.PULLED,
        detail=f"vault:{item.name} -> {written}",
        **base,
    )
