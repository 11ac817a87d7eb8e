"""
Tests for the vault backends -- factory, deadline, memory, local,
and the pass/bitwarden process adapters with subprocess mocked out.
"""

from __future__ import annotations

import base64
import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest


def _done(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


class TestDeadline:
    """Tests for the cancellable time budget."""

    def test_remaining_counts_down(self):
        from dotvault.backends.base import Deadline

        now = [100.0]
        deadline = Deadline(10, clock=lambda: now[0])
        now[0] = 104.0

        assert deadline.remaining() == pytest.approx(6.0)
        assert not deadline.expired

    def test_check_raises_when_expired(self):
        from dotvault.backends.base import Deadline
        from dotvault.errors import VaultTimeoutError

        now = [0.0]
        deadline = Deadline(5, clock=lambda: now[0])
        now[0] = 5.5

        with pytest.raises(VaultTimeoutError, match="exceeded"):
            deadline.check("get X")

    def test_cancel(self):
        from dotvault.backends.base import Deadline
        from dotvault.errors import VaultTimeoutError

        deadline = Deadline(60)
        deadline.cancel()

        assert deadline.remaining() == 0.0
        with pytest.raises(VaultTimeoutError, match="cancelled"):
            deadline.check("sync")


class TestFactory:
    def test_known_backends(self, settings):
        from dotvault.backends import (
            BitwardenBackend,
            LocalBackend,
            MemoryBackend,
            PassBackend,
            create_backend,
        )

        expected = {
            "bitwarden": BitwardenBackend,
            "pass": PassBackend,
            "local": LocalBackend,
            "memory": MemoryBackend,
        }
        for name, cls in expected.items():
            backend = create_backend(settings.model_copy(update={"backend": name}))
            assert isinstance(backend, cls)

    def test_unsupported_backend(self, settings):
        from dotvault.backends import create_backend

        with pytest.raises(ValueError, match="Unsupported backend"):
            create_backend(settings.model_copy(update={"backend": "1password"}))


class TestMemoryBackend:
    def test_crud(self):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.memory import MemoryBackend
        from dotvault.errors import NotFoundError

        backend = MemoryBackend()
        session = Session(backend="memory")
        deadline = Deadline(10)

        backend.create_item("A", "one", session, deadline)
        backend.update_item("A", "two", session, deadline)
        assert backend.get_notes("A", session, deadline) == "two"

        backend.delete_item("A", session, deadline)
        with pytest.raises(NotFoundError):
            backend.get_notes("A", session, deadline)
        assert backend.mutations == [("create", "A"), ("update", "A"), ("delete", "A")]

    def test_update_missing(self):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.memory import MemoryBackend
        from dotvault.errors import NotFoundError

        with pytest.raises(NotFoundError):
            MemoryBackend().update_item("A", "x", Session(backend="memory"), Deadline(10))


class TestLocalBackend:
    """Tests for the note-file directory backend."""

    def test_round_trip(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.local import LocalBackend

        backend = LocalBackend(settings)
        deadline = Deadline(10)
        backend.init(deadline)
        session = backend.authenticate(deadline)

        backend.create_item("Git-Config", "[user]\n", session, deadline)

        assert backend.get_notes("Git-Config", session, deadline) == "[user]\n"
        note = settings.local_vault_dir / "Git-Config.note"
        assert note.exists()
        assert note.stat().st_mode & 0o777 == 0o600
        assert [i.name for i in backend.list_items(session, deadline)] == ["Git-Config"]

    def test_missing_note(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.local import LocalBackend
        from dotvault.errors import NotFoundError

        backend = LocalBackend(settings)
        deadline = Deadline(10)
        backend.init(deadline)
        session = backend.authenticate(deadline)

        with pytest.raises(NotFoundError):
            backend.get_notes("Nope", session, deadline)
        with pytest.raises(NotFoundError):
            backend.update_item("Nope", "x", session, deadline)

    def test_slash_in_name(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.local import LocalBackend

        backend = LocalBackend(settings)
        deadline = Deadline(10)
        backend.init(deadline)
        session = backend.authenticate(deadline)

        backend.create_item("team/key", "x", session, deadline)

        assert (settings.local_vault_dir / "team_key.note").exists()

    def test_init_does_not_create_directory(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.local import LocalBackend

        backend = LocalBackend(settings)
        deadline = Deadline(10)
        backend.init(deadline)
        session = backend.authenticate(deadline)

        assert backend.is_authenticated(deadline)
        assert backend.list_items(session, deadline) == []
        assert not settings.local_vault_dir.exists()

    def test_root_that_is_a_file(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.local import LocalBackend
        from dotvault.errors import BackendUnavailableError

        settings.local_vault_dir.parent.mkdir(parents=True, exist_ok=True)
        settings.local_vault_dir.write_text("not a dir")

        with pytest.raises(BackendUnavailableError, match="not a directory"):
            LocalBackend(settings).init(Deadline(10))

    def test_delete(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.local import LocalBackend
        from dotvault.errors import NotFoundError

        backend = LocalBackend(settings)
        deadline = Deadline(10)
        session = backend.authenticate(deadline)
        backend.create_item("Notes", "x", session, deadline)

        backend.delete_item("Notes", session, deadline)

        assert not (settings.local_vault_dir / "Notes.note").exists()
        with pytest.raises(NotFoundError):
            backend.delete_item("Notes", session, deadline)


class TestPassBackend:
    """Tests for the pass adapter."""

    def _backend(self, settings, tmp_path: Path):
        from dotvault.backends.process import PassBackend

        store = tmp_path / "password-store"
        store.mkdir()
        (store / ".gpg-id").write_text("ABCD1234\n")
        return PassBackend(settings.model_copy(update={"password_store_dir": store}))

    def test_init_requires_cli(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.process import PassBackend
        from dotvault.errors import BackendUnavailableError

        with patch("dotvault.backends.process.shutil.which", return_value=None):
            with pytest.raises(BackendUnavailableError, match="pass CLI not found"):
                PassBackend(settings).init(Deadline(10))

    def test_authenticate_requires_gpg_id(self, settings, tmp_path: Path):
        from dotvault.backends.base import Deadline
        from dotvault.backends.process import PassBackend
        from dotvault.errors import AuthError

        backend = PassBackend(settings.model_copy(update={"password_store_dir": tmp_path}))

        with pytest.raises(AuthError):
            backend.authenticate(Deadline(10))

    def test_get_notes(self, settings, tmp_path: Path):
        from dotvault.backends.base import Deadline, Session

        backend = self._backend(settings, tmp_path)

        with patch("subprocess.run", return_value=_done(stdout="secret\n")) as run:
            notes = backend.get_notes("Git-Config", Session(backend="pass"), Deadline(10))

        assert notes == "secret\n"
        args = run.call_args[0][0]
        assert args == ["pass", "show", "dotvault/Git-Config"]
        assert run.call_args[1]["env"]["PASSWORD_STORE_DIR"].endswith("password-store")

    def test_get_notes_not_found(self, settings, tmp_path: Path):
        from dotvault.backends.base import Deadline, Session
        from dotvault.errors import NotFoundError

        backend = self._backend(settings, tmp_path)
        result = _done(returncode=1, stderr="Error: dotvault/X is not in the password store.")

        with patch("subprocess.run", return_value=result):
            with pytest.raises(NotFoundError):
                backend.get_notes("X", Session(backend="pass"), Deadline(10))

    def test_create_feeds_stdin(self, settings, tmp_path: Path):
        from dotvault.backends.base import Deadline, Session

        backend = self._backend(settings, tmp_path)

        with patch("subprocess.run", return_value=_done()) as run:
            backend.create_item("Git-Config", "body", Session(backend="pass"), Deadline(10))

        assert run.call_args[0][0] == [
            "pass", "insert", "--multiline", "--force", "dotvault/Git-Config",
        ]
        assert run.call_args[1]["input"] == "body"

    def test_timeout_maps_to_vault_timeout(self, settings, tmp_path: Path):
        from dotvault.backends.base import Deadline, Session
        from dotvault.errors import VaultTimeoutError

        backend = self._backend(settings, tmp_path)
        err = subprocess.TimeoutExpired(cmd="pass", timeout=10)

        with patch("subprocess.run", side_effect=err):
            with pytest.raises(VaultTimeoutError):
                backend.get_notes("X", Session(backend="pass"), Deadline(10))

    def test_list_items_globs_store(self, settings, tmp_path: Path):
        from dotvault.backends.base import Deadline, Session

        backend = self._backend(settings, tmp_path)
        prefix = tmp_path / "password-store" / "dotvault"
        prefix.mkdir()
        (prefix / "Git-Config.gpg").write_bytes(b"")
        (prefix / "AWS-Config.gpg").write_bytes(b"")

        items = backend.list_items(Session(backend="pass"), Deadline(10))

        assert [i.name for i in items] == ["AWS-Config", "Git-Config"]

    def test_sync_without_git_is_noop(self, settings, tmp_path: Path):
        from dotvault.backends.base import Deadline, Session

        backend = self._backend(settings, tmp_path)

        with patch("subprocess.run") as run:
            backend.sync(Session(backend="pass"), Deadline(10))

        run.assert_not_called()


class TestBitwardenBackend:
    """Tests for the bw adapter."""

    def test_env_session_used(self, settings, monkeypatch):
        from dotvault.backends.base import Deadline
        from dotvault.backends.process import BitwardenBackend

        monkeypatch.setenv("BW_SESSION", "tok123")
        backend = BitwardenBackend(settings)
        status = _done(stdout=json.dumps({"status": "unlocked"}))

        with patch("subprocess.run", return_value=status) as run:
            session = backend.authenticate(Deadline(10))

        assert session.token == "tok123"
        assert session.expires_at is not None
        assert run.call_args[0][0] == ["bw", "status"]

    def test_unlock_saves_session_file(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.process import BitwardenBackend

        backend = BitwardenBackend(settings)

        with patch("subprocess.run", return_value=_done(stdout="newtoken\n")) as run:
            session = backend.authenticate(Deadline(10))

        assert run.call_args[0][0] == ["bw", "unlock", "--raw"]
        assert session.token == "newtoken"
        assert settings.session_file.read_text() == "newtoken"
        assert settings.session_file.stat().st_mode & 0o777 == 0o600

    def test_unlock_failure(self, settings):
        from dotvault.backends.base import Deadline
        from dotvault.backends.process import BitwardenBackend
        from dotvault.errors import AuthError

        backend = BitwardenBackend(settings)

        with patch("subprocess.run", return_value=_done(returncode=1)):
            with pytest.raises(AuthError):
                backend.authenticate(Deadline(10))

    def test_get_notes(self, settings):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.process import BitwardenBackend

        item = {"id": "abc", "name": "Git-Config", "notes": "[user]\n"}

        with patch("subprocess.run", return_value=_done(stdout=json.dumps(item))):
            notes = BitwardenBackend(settings).get_notes(
                "Git-Config", Session(backend="bitwarden"), Deadline(10)
            )

        assert notes == "[user]\n"

    def test_get_notes_not_found(self, settings):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.process import BitwardenBackend
        from dotvault.errors import NotFoundError

        with patch("subprocess.run", return_value=_done(returncode=1, stderr="Not found.")):
            with pytest.raises(NotFoundError):
                BitwardenBackend(settings).get_notes(
                    "X", Session(backend="bitwarden"), Deadline(10)
                )

    def test_get_notes_unparseable_reply(self, settings):
        """Output that is not JSON is a BackendError, not a decode error."""
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.process import BitwardenBackend
        from dotvault.errors import BackendError

        with patch("subprocess.run", return_value=_done(stdout="not json")):
            with pytest.raises(BackendError, match="unparseable reply"):
                BitwardenBackend(settings).get_notes(
                    "Git-Config", Session(backend="bitwarden"), Deadline(10)
                )

    def test_get_notes_non_object_reply(self, settings):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.process import BitwardenBackend
        from dotvault.errors import BackendError

        with patch("subprocess.run", return_value=_done(stdout="[]")):
            with pytest.raises(BackendError, match="unexpected reply"):
                BitwardenBackend(settings).get_notes(
                    "Git-Config", Session(backend="bitwarden"), Deadline(10)
                )

    def test_list_items_unparseable_reply(self, settings):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.process import BitwardenBackend
        from dotvault.errors import BackendError

        with patch("subprocess.run", return_value=_done(stdout="<html>")):
            with pytest.raises(BackendError, match="list items"):
                BitwardenBackend(settings).list_items(Session(backend="bitwarden"), Deadline(10))

    def test_create_encodes_secure_note(self, settings):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.process import BitwardenBackend

        with patch("subprocess.run", return_value=_done()) as run:
            BitwardenBackend(settings).create_item(
                "Git-Config", "body", Session(backend="bitwarden"), Deadline(10)
            )

        assert run.call_args[0][0] == ["bw", "create", "item"]
        payload = json.loads(base64.b64decode(run.call_args[1]["input"]))
        assert payload["type"] == 2
        assert payload["name"] == "Git-Config"
        assert payload["notes"] == "body"

    def test_update_edits_by_id(self, settings):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.process import BitwardenBackend

        item = {"id": "abc", "name": "Git-Config", "notes": "old"}
        responses = [_done(stdout=json.dumps(item)), _done()]

        with patch("subprocess.run", side_effect=responses) as run:
            BitwardenBackend(settings).update_item(
                "Git-Config", "new", Session(backend="bitwarden"), Deadline(10)
            )

        assert run.call_args[0][0] == ["bw", "edit", "item", "abc"]
        payload = json.loads(base64.b64decode(run.call_args[1]["input"]))
        assert payload["notes"] == "new"

    def test_missing_cli(self, settings):
        from dotvault.backends.base import Deadline, Session
        from dotvault.backends.process import BitwardenBackend
        from dotvault.errors import BackendUnavailableError

        with patch("subprocess.run", side_effect=FileNotFoundError("bw")):
            with pytest.raises(BackendUnavailableError):
                BitwardenBackend(settings).sync(Session(backend="bitwarden"), Deadline(10))
