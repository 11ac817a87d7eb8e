"""
Process adapters -- backends that shell out to a password manager CLI.

One external process at a time, each bounded by what remains of the
run's deadline. A process that outlives it becomes a VaultTimeoutError;
a missing executable becomes a BackendUnavailableError.

    pass       one gpg file per item under <store>/<prefix>/<name>
    bitwarden  secure notes (type 2) addressed by item name
"""

from __future__ import annotations

import base64
import json
import logging
import os
import shutil
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from ..errors import (
    AuthError,
    BackendError,
    BackendUnavailableError,
    NotFoundError,
    VaultTimeoutError,
)
from .base import Deadline, Session, VaultBackend, VaultItem

logger = logging.getLogger("dotvault.backends.process")


class ProcessBackend(VaultBackend):
    """Base class for backends driven through a command line tool."""

    command = ""

    def __init__(self, settings):
        self.settings = settings

    @property
    def name(self) -> str:
        return self.command

    def init(self, deadline: Deadline) -> None:
        deadline.check("init")
        if shutil.which(self.command) is None:
            raise BackendUnavailableError(
                f"{self.command} CLI not found in PATH"
            )

    def _run(
        self,
        args: list[str],
        deadline: Deadline,
        input: Optional[str] = None,
        check: bool = True,
        interactive: bool = False,
    ) -> subprocess.CompletedProcess:
        """Run ``command *args`` within the deadline.

        Args:
            args: Arguments after the executable.
            deadline: Time budget for the call.
            input: Text fed to stdin.
            check: Raise BackendError on a non-zero exit.
            interactive: Leave stdin/stderr attached to the terminal so
                the tool can prompt (used for unlocking).
        """
        operation = f"{self.command} {args[0]}" if args else self.command
        deadline.check(operation)

        kwargs: dict = {"text": True, "timeout": deadline.remaining()}
        if interactive:
            kwargs["stdout"] = subprocess.PIPE
        else:
            kwargs["capture_output"] = True
            if input is not None:
                kwargs["input"] = input

        try:
            result = subprocess.run(
                [self.command, *args], check=False, env=self._env(), **kwargs
            )
        except subprocess.TimeoutExpired as exc:
            raise VaultTimeoutError(
                f"{operation}: timed out after {exc.timeout:.0f}s"
            ) from exc
        except FileNotFoundError as exc:
            raise BackendUnavailableError(
                f"{self.command} CLI not found in PATH"
            ) from exc

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise BackendError(f"{operation} failed: {stderr}")
        return result

    def _env(self) -> Optional[dict[str, str]]:
        return None


class PassBackend(ProcessBackend):
    """The standard unix password manager (passwordstore.org)."""

    command = "pass"

    @property
    def store_dir(self) -> Path:
        return Path(self.settings.password_store_dir)

    def _entry(self, name: str) -> str:
        return f"{self.settings.prefix}/{name}"

    def _env(self) -> Optional[dict[str, str]]:
        env = os.environ.copy()
        env["PASSWORD_STORE_DIR"] = str(self.store_dir)
        return env

    def is_authenticated(self, deadline: Deadline) -> bool:
        return (self.store_dir / ".gpg-id").exists()

    def authenticate(self, deadline: Deadline) -> Session:
        deadline.check("authenticate")
        if not self.is_authenticated(deadline):
            raise AuthError(
                f"password store not initialised at {self.store_dir}"
            )
        return Session(token="", backend=self.name)

    def get_notes(self, name: str, session: Session, deadline: Deadline) -> str:
        result = self._run(["show", self._entry(name)], deadline, check=False)
        if result.returncode != 0:
            if "not in the password store" in (result.stderr or ""):
                raise NotFoundError(name)
            raise BackendError(
                f"pass show {name} failed: {(result.stderr or '').strip()}"
            )
        return result.stdout

    def _insert(self, name: str, content: str, deadline: Deadline) -> None:
        self._run(
            ["insert", "--multiline", "--force", self._entry(name)],
            deadline,
            input=content,
        )

    def create_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        self._insert(name, content, deadline)

    def update_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        self._insert(name, content, deadline)

    def delete_item(self, name: str, session: Session, deadline: Deadline) -> None:
        if not (self.store_dir / (self._entry(name) + ".gpg")).exists():
            raise NotFoundError(name)
        self._run(["rm", "--force", self._entry(name)], deadline)

    def list_items(self, session: Session, deadline: Deadline) -> list[VaultItem]:
        deadline.check("list")
        prefix_dir = self.store_dir / self.settings.prefix
        if not prefix_dir.is_dir():
            return []
        return [
            VaultItem(name=p.name[: -len(".gpg")], id=str(p))
            for p in sorted(prefix_dir.glob("*.gpg"))
        ]

    def sync(self, session: Session, deadline: Deadline) -> None:
        if not (self.store_dir / ".git").exists():
            logger.debug("Password store is not a git repository, nothing to sync")
            return
        self._run(["git", "pull", "--rebase"], deadline)
        self._run(["git", "push"], deadline)


class BitwardenBackend(ProcessBackend):
    """Bitwarden via the ``bw`` CLI; items are secure notes."""

    command = "bw"

    def __init__(self, settings):
        super().__init__(settings)
        self._token: Optional[str] = None

    @property
    def name(self) -> str:
        return "bitwarden"

    def _cached_token(self) -> Optional[str]:
        if self._token:
            return self._token
        env_token = os.environ.get("BW_SESSION")
        if env_token:
            return env_token

        session_file = Path(self.settings.session_file)
        if not session_file.exists():
            return None
        age = datetime.now(timezone.utc).timestamp() - session_file.stat().st_mtime
        if age > self.settings.session_ttl:
            logger.info("Cached bitwarden session expired")
            return None
        return session_file.read_text(encoding="utf-8").strip() or None

    def _env(self) -> Optional[dict[str, str]]:
        env = os.environ.copy()
        if self._token:
            env["BW_SESSION"] = self._token
        return env

    def _status(self, deadline: Deadline) -> str:
        result = self._run(["status"], deadline, check=False)
        try:
            return json.loads(result.stdout or "{}").get("status", "")
        except json.JSONDecodeError:
            return ""

    def is_authenticated(self, deadline: Deadline) -> bool:
        self._token = self._cached_token()
        return bool(self._token) and self._status(deadline) == "unlocked"

    def authenticate(self, deadline: Deadline) -> Session:
        if not self.is_authenticated(deadline):
            result = self._run(
                ["unlock", "--raw"], deadline, check=False, interactive=True
            )
            token = (result.stdout or "").strip()
            if result.returncode != 0 or not token:
                raise AuthError("bitwarden vault could not be unlocked")
            self._token = token
            self._save_token(token)

        expires = datetime.now(timezone.utc) + timedelta(
            seconds=self.settings.session_ttl
        )
        return Session(token=self._token or "", backend=self.name, expires_at=expires)

    def _save_token(self, token: str) -> None:
        session_file = Path(self.settings.session_file)
        session_file.parent.mkdir(parents=True, exist_ok=True)
        session_file.write_text(token, encoding="utf-8")
        os.chmod(session_file, 0o600)

    def _get_item(self, name: str, deadline: Deadline) -> dict:
        result = self._run(["get", "item", name], deadline, check=False)
        if result.returncode != 0:
            if "Not found" in (result.stderr or ""):
                raise NotFoundError(name)
            raise BackendError(
                f"bw get item {name} failed: {(result.stderr or '').strip()}"
            )
        item = self._parse(result.stdout, f"get item {name}")
        if not isinstance(item, dict):
            raise BackendError(f"bw get item {name}: unexpected reply")
        return item

    @staticmethod
    def _parse(stdout: str, operation: str):
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise BackendError(f"bw {operation}: unparseable reply ({exc})") from exc

    @staticmethod
    def _encode(item: dict) -> str:
        return base64.b64encode(json.dumps(item).encode("utf-8")).decode("ascii")

    def get_notes(self, name: str, session: Session, deadline: Deadline) -> str:
        notes = self._get_item(name, deadline).get("notes")
        if notes is None:
            raise NotFoundError(name)
        return notes

    def create_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        item = {
            "type": 2,
            "name": name,
            "notes": content,
            "secureNote": {"type": 0},
            "organizationId": None,
            "folderId": None,
        }
        self._run(["create", "item"], deadline, input=self._encode(item))

    def update_item(
        self, name: str, content: str, session: Session, deadline: Deadline
    ) -> None:
        item = self._get_item(name, deadline)
        item["notes"] = content
        self._run(["edit", "item", item["id"]], deadline, input=self._encode(item))

    def delete_item(self, name: str, session: Session, deadline: Deadline) -> None:
        item = self._get_item(name, deadline)
        self._run(["delete", "item", item["id"]], deadline)

    def list_items(self, session: Session, deadline: Deadline) -> list[VaultItem]:
        result = self._run(["list", "items"], deadline)
        return [
            VaultItem(name=raw.get("name", ""), id=raw.get("id"), notes=raw.get("notes"))
            for raw in self._parse(result.stdout or "[]", "list items")
        ]

    def sync(self, session: Session, deadline: Deadline) -> None:
        self._run(["sync"], deadline)
