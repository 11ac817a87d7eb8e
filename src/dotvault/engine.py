"""
Sync engine -- drives every vault run from validation to persistence.

    Validating -> Authenticating -> per item (Resolving -> Executing)
               -> Aggregating -> Persisting

Validation and authentication failures abort the run before anything
is touched. Every item after that is independent: its errors become a
``failed`` outcome and the loop moves on. The checksum baseline is
written once, after the last item, and only when a real (non dry-run)
pass pushed or pulled something.

    dotvault sync           ->  three-way resolve per item, push or pull
    dotvault vault restore  ->  pull everything, guarded by a drift check
    dotvault vault push     ->  push selected items, guarded the other way
    dotvault vault create   ->  one entry, refusing to overwrite without --force
    dotvault vault delete   ->  entries by name, protected ones need confirmation
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .audit import audit_event
from .backends import create_backend
from .backends.base import Deadline, Session, VaultBackend, VaultItem
from .catalog import Catalog, is_protected_item, load_catalog
from .checksums import ChecksumStore, content_checksum, sha256_text
from .config import ConfigStore, VaultSettings
from .errors import (
    AuthError,
    BackendError,
    DriftDetectedError,
    ItemExistsError,
    NotFoundError,
    OfflineModeError,
)
from .executors import (
    canonical_content,
    missing_outcome,
    pull_item,
    push_item,
    read_local,
)
from .models import (
    CheckReport,
    ChecksumEntry,
    ChecksumSnapshot,
    Direction,
    DriftReport,
    DriftState,
    ItemOutcome,
    OutcomeStatus,
    ResolvedItem,
    SyncSummary,
)
from .resolver import resolve

logger = logging.getLogger("dotvault.engine")

OutcomeCallback = Callable[[ItemOutcome], None]
ConfirmCallback = Callable[[str, bool], bool]

CONVERGED = (OutcomeStatus.PUSHED, OutcomeStatus.PULLED, OutcomeStatus.IN_SYNC)


class _Fetched:
    """Vault content of one item, fetched once per run."""

    def __init__(self, notes: Optional[str] = None, error: Optional[Exception] = None):
        self.notes = notes
        self.error = error


class SyncEngine:
    """Orchestrates sync, restore, push and check runs against one backend."""

    def __init__(
        self,
        settings: VaultSettings,
        backend: Optional[VaultBackend] = None,
        store: Optional[ConfigStore] = None,
    ):
        """Initialize the engine.

        Args:
            settings: Explicit configuration for this invocation.
            backend: Backend instance. Built from ``settings.backend``
                through the factory map when omitted.
            store: Key/value store for timestamps. Defaults to the
                settings' config.yaml.
        """
        self.settings = settings
        self.backend = backend or create_backend(settings)
        self.store = store or settings.config_store()
        self.checksums = ChecksumStore(settings.state_path)

    # ------------------------------------------------------------------
    # Run-level stages
    # ------------------------------------------------------------------

    def _check_online(self) -> None:
        if self.settings.offline:
            raise OfflineModeError(
                "Offline mode enabled (DOTVAULT_OFFLINE=1), skipping vault operation"
            )

    def _validate(self) -> Catalog:
        catalog = load_catalog(self.settings.manifest_path, self.settings.home_dir)
        logger.debug(
            "Catalog loaded: %d vault items, %d syncable",
            len(catalog.items),
            len(catalog.syncable),
        )
        return catalog

    def _authenticate(self) -> Session:
        """Init the backend and open a session; any failure is an AuthError."""
        deadline = Deadline(self.settings.auth_timeout)
        try:
            self.backend.init(deadline)
            session = self.backend.authenticate(deadline)
        except AuthError:
            raise
        except BackendError as exc:
            raise AuthError(f"{self.backend.name}: {exc}") from exc
        logger.info("Authenticated with %s", self.backend.name)
        return session

    def _renew(self, session: Session) -> Session:
        """Re-authenticate when the session has expired mid-run."""
        if not session.expired:
            return session
        logger.info("%s session expired, re-authenticating", self.backend.name)
        return self._authenticate()

    def _refresh(self, session: Session) -> None:
        try:
            self.backend.sync(session, self._item_deadline())
        except BackendError as exc:
            logger.warning("Vault sync warning: %s", exc)

    def _item_deadline(self) -> Deadline:
        return Deadline(self.settings.timeout)

    def _fetch(self, item: ResolvedItem, session: Session) -> _Fetched:
        try:
            notes = self.backend.get_notes(item.name, session, self._item_deadline())
        except NotFoundError:
            return _Fetched()
        except BackendError as exc:
            logger.error("Fetching %s failed: %s", item.name, exc)
            return _Fetched(error=exc)
        return _Fetched(notes=notes)

    def _persist(
        self,
        event: str,
        items: list[ResolvedItem],
        summary: SyncSummary,
        prior: ChecksumSnapshot,
    ) -> None:
        """Record the new baseline, timestamps and an audit entry.

        Only items that converged in this run get a fresh entry; the
        rest keep whatever baseline they had.
        """
        now = datetime.now(timezone.utc).replace(microsecond=0)
        entries = dict(prior.items)
        by_name = {item.name: item for item in items}

        for outcome in summary.outcomes:
            if outcome.status not in CONVERGED:
                continue
            item = by_name[outcome.name]
            try:
                content = canonical_content(item, read_local(item))
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Cannot checksum %s: %s", item.name, exc)
                continue
            if content is None:
                continue
            entries[item.name] = ChecksumEntry(
                checksum=sha256_text(content),
                local_path=str(item.local_path),
                synced_at=now,
            )

        self.checksums.save(ChecksumSnapshot(timestamp=now, items=entries))

        stamp = now.strftime("%Y-%m-%dT%H:%M:%SZ")
        if summary.pushed:
            self.store.set("vault.last_push", stamp)
        if summary.pulled:
            self.store.set("vault.last_pull", stamp)
        self.store.set("vault.last_sync", stamp)

        audit_event(
            self.settings.home,
            event,
            f"pushed={summary.pushed} pulled={summary.pulled} failed={summary.failed}",
            metadata={
                "backend": self.backend.name,
                "in_sync": summary.in_sync,
                "conflicts": summary.conflicts,
                "skipped": summary.skipped,
            },
        )
        summary.persisted = True

    @staticmethod
    def _emit(
        summary: SyncSummary, outcome: ItemOutcome, on_outcome: Optional[OutcomeCallback]
    ) -> None:
        summary.record(outcome)
        if on_outcome:
            on_outcome(outcome)

    @staticmethod
    def _failed(item: ResolvedItem, direction: Optional[Direction], exc: Exception) -> ItemOutcome:
        return ItemOutcome(
            name=item.name,
            status=OutcomeStatus.FAILED,
            direction=direction,
            detail=str(exc),
            local_path=item.local_path,
        )

    # ------------------------------------------------------------------
    # sync
    # ------------------------------------------------------------------

    def sync(
        self,
        names: Optional[list[str]] = None,
        all_items: bool = False,
        dry_run: bool = False,
        force_local: bool = False,
        force_vault: bool = False,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> SyncSummary:
        """Bidirectional sync of the syncable items.

        Args:
            names: Items to sync. All syncable items when empty.
            all_items: Sync every syncable item regardless of ``names``.
            dry_run: Compute and report directions without changing anything.
            force_local: Push every item, bypassing conflict detection.
            force_vault: Pull every item, bypassing conflict detection.
            on_outcome: Called with each item's outcome as it completes.

        Returns:
            SyncSummary: Aggregate counters and per-item outcomes.

        Raises:
            ValueError: If both force flags are set.
            UnknownItemError: If a name is not a syncable item.
            SchemaError: If the manifest is invalid.
            AuthError: If the backend cannot be unlocked.
        """
        if force_local and force_vault:
            raise ValueError("Cannot use --force-local and --force-vault together")
        self._check_online()

        catalog = self._validate()
        items = catalog.resolve_syncable(None if all_items else names)
        snapshot = self.checksums.load()

        pinned: Optional[Direction] = None
        if force_local:
            pinned = Direction.PUSH
        elif force_vault:
            pinned = Direction.PULL

        summary = SyncSummary(dry_run=dry_run, forced=pinned is not None)
        try:
            session = self._authenticate()
            for item in items:
                session = self._renew(session)
                outcome = self._sync_item(item, session, snapshot, pinned, dry_run)
                self._emit(summary, outcome, on_outcome)

            if not dry_run and summary.mutated:
                self._persist("SYNC", items, summary, snapshot)
        finally:
            self.backend.close()

        logger.info(
            "Sync finished: pushed=%d pulled=%d in_sync=%d conflicts=%d failed=%d",
            summary.pushed,
            summary.pulled,
            summary.in_sync,
            summary.conflicts,
            summary.failed,
        )
        return summary

    def _sync_item(
        self,
        item: ResolvedItem,
        session: Session,
        snapshot: ChecksumSnapshot,
        pinned: Optional[Direction],
        dry_run: bool,
    ) -> ItemOutcome:
        try:
            local = canonical_content(item, read_local(item))
        except (OSError, UnicodeDecodeError) as exc:
            return self._failed(item, pinned, exc)

        fetched = self._fetch(item, session)
        if fetched.error:
            return self._failed(item, pinned, fetched.error)
        vault = canonical_content(item, fetched.notes)

        baseline = snapshot.baseline(item.name)
        direction = pinned or resolve(local, vault, baseline)
        checksums = {
            "local_checksum": content_checksum(local),
            "vault_checksum": content_checksum(vault),
            "baseline_checksum": baseline,
        }

        if direction == Direction.IN_SYNC:
            outcome = ItemOutcome(
                name=item.name,
                status=OutcomeStatus.IN_SYNC,
                direction=direction,
                detail="already in sync",
                local_path=item.local_path,
                dry_run=dry_run,
            )
        elif direction == Direction.CONFLICT:
            outcome = ItemOutcome(
                name=item.name,
                status=OutcomeStatus.CONFLICT,
                direction=direction,
                detail="both local and vault have changed",
                local_path=item.local_path,
                dry_run=dry_run,
            )
        elif direction == Direction.PUSH:
            outcome = push_item(
                item, self.backend, session, self._item_deadline(), dry_run=dry_run
            )
        elif fetched.notes is None:
            outcome = missing_outcome(item, Direction.PULL, "no content in vault")
        else:
            outcome = pull_item(item, fetched.notes, dry_run=dry_run)

        return outcome.model_copy(update=checksums)

    # ------------------------------------------------------------------
    # restore
    # ------------------------------------------------------------------

    def _local_drifted(
        self, item: ResolvedItem, fetched: _Fetched, snapshot: ChecksumSnapshot
    ) -> bool:
        """Whether the local file holds changes a pull would destroy."""
        if fetched.notes is None:
            return False
        try:
            local = canonical_content(item, read_local(item))
        except (OSError, UnicodeDecodeError):
            return False
        if local is None:
            return False

        local_sum = sha256_text(local)
        if local_sum == content_checksum(canonical_content(item, fetched.notes)):
            return False
        baseline = snapshot.baseline(item.name)
        return not baseline or local_sum != baseline

    def restore(
        self,
        force: bool = False,
        dry_run: bool = False,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> SyncSummary:
        """Pull every ``vault_items`` entry to its local path.

        Unless ``force`` (or ``dry_run``) is set, the whole restore is
        aborted before writing anything when any local file has changes
        that are not in its baseline.

        Raises:
            DriftDetectedError: If the pre-flight drift check fails.
            SchemaError: If the manifest is invalid.
            AuthError: If the backend cannot be unlocked.
        """
        self._check_online()
        catalog = self._validate()
        items = catalog.resolve_items()
        snapshot = self.checksums.load()

        summary = SyncSummary(dry_run=dry_run, forced=force)
        try:
            session = self._authenticate()
            self._refresh(session)
            fetched: dict[str, _Fetched] = {}
            for item in items:
                session = self._renew(session)
                fetched[item.name] = self._fetch(item, session)

            if not force and not dry_run:
                drifted = [
                    item.name
                    for item in items
                    if self._local_drifted(item, fetched[item.name], snapshot)
                ]
                if drifted:
                    logger.warning("Restore aborted, local drift in: %s", drifted)
                    raise DriftDetectedError(drifted, side="local")

            for item in items:
                outcome = self._restore_item(item, fetched[item.name], dry_run)
                self._emit(summary, outcome, on_outcome)

            if not dry_run and summary.mutated:
                self._persist("RESTORE", items, summary, snapshot)
        finally:
            self.backend.close()
        return summary

    def _restore_item(
        self, item: ResolvedItem, fetched: _Fetched, dry_run: bool
    ) -> ItemOutcome:
        if fetched.error:
            return self._failed(item, Direction.PULL, fetched.error)
        if fetched.notes is None:
            return missing_outcome(item, Direction.PULL, "not found in vault")

        try:
            local = canonical_content(item, read_local(item))
        except (OSError, UnicodeDecodeError):
            local = None
        if local is not None and local == canonical_content(item, fetched.notes):
            return ItemOutcome(
                name=item.name,
                status=OutcomeStatus.IN_SYNC,
                direction=Direction.IN_SYNC,
                detail="already matches vault",
                local_path=item.local_path,
                dry_run=dry_run,
            )
        return pull_item(item, fetched.notes, dry_run=dry_run)

    # ------------------------------------------------------------------
    # push
    # ------------------------------------------------------------------

    def _vault_drifted(
        self, item: ResolvedItem, fetched: _Fetched, snapshot: ChecksumSnapshot
    ) -> bool:
        """Whether the vault entry holds changes a push would destroy."""
        if fetched.notes is None:
            return False
        try:
            local = canonical_content(item, read_local(item))
        except (OSError, UnicodeDecodeError):
            return False

        vault_sum = sha256_text(canonical_content(item, fetched.notes))
        if vault_sum == content_checksum(local):
            return False
        baseline = snapshot.baseline(item.name)
        return not baseline or vault_sum != baseline

    def push(
        self,
        names: Optional[list[str]] = None,
        all_items: bool = False,
        force: bool = False,
        dry_run: bool = False,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> SyncSummary:
        """Push selected syncable items to the vault.

        Unless ``force`` (or ``dry_run``) is set, the push is aborted
        before any vault write when an entry was changed in the vault
        since its baseline.

        Raises:
            ValueError: If neither names nor ``all_items`` are given.
            UnknownItemError: If a name is not a syncable item.
            DriftDetectedError: If the vault-side drift check fails.
        """
        if not names and not all_items:
            raise ValueError("No items specified. Use --all or name items to push.")
        self._check_online()
        catalog = self._validate()
        items = catalog.resolve_syncable(None if all_items else names)
        snapshot = self.checksums.load()

        summary = SyncSummary(dry_run=dry_run, forced=force)
        try:
            session = self._authenticate()
            self._refresh(session)
            fetched: dict[str, _Fetched] = {}
            for item in items:
                session = self._renew(session)
                fetched[item.name] = self._fetch(item, session)

            if not force and not dry_run:
                drifted = [
                    item.name
                    for item in items
                    if self._vault_drifted(item, fetched[item.name], snapshot)
                ]
                if drifted:
                    logger.warning("Push aborted, vault drift in: %s", drifted)
                    raise DriftDetectedError(drifted, side="vault")

            for item in items:
                session = self._renew(session)
                outcome = self._push_item(item, fetched[item.name], session, dry_run)
                self._emit(summary, outcome, on_outcome)

            if not dry_run and summary.mutated:
                self._persist("PUSH", items, summary, snapshot)
        finally:
            self.backend.close()
        return summary

    def _push_item(
        self, item: ResolvedItem, fetched: _Fetched, session: Session, dry_run: bool
    ) -> ItemOutcome:
        if fetched.error:
            return self._failed(item, Direction.PUSH, fetched.error)
        try:
            local = canonical_content(item, read_local(item))
        except (OSError, UnicodeDecodeError) as exc:
            return self._failed(item, Direction.PUSH, exc)
        if local is None:
            return missing_outcome(
                item, Direction.PUSH, f"local file not found: {item.local_path}"
            )
        if local == canonical_content(item, fetched.notes):
            return ItemOutcome(
                name=item.name,
                status=OutcomeStatus.IN_SYNC,
                direction=Direction.IN_SYNC,
                detail="already in sync",
                local_path=item.local_path,
                dry_run=dry_run,
            )
        return push_item(item, self.backend, session, self._item_deadline(), dry_run=dry_run)

    # ------------------------------------------------------------------
    # check / drift / status / list
    # ------------------------------------------------------------------

    def check(self) -> CheckReport:
        """Report which manifest entries are present in the vault."""
        self._check_online()
        catalog = self._validate()
        try:
            session = self._authenticate()
            self._refresh(session)
            names = {
                item.name
                for item in self.backend.list_items(session, self._item_deadline())
            }
        finally:
            self.backend.close()

        report = CheckReport()
        for name, spec in catalog.items.items():
            if name in names:
                report.present.append(name)
            elif spec.required:
                report.missing_required.append(name)
            else:
                report.missing_optional.append(name)
        return report

    def drift(self) -> DriftReport:
        """Compare local files against the stored baseline, without the vault."""
        catalog = self._validate()
        snapshot = self.checksums.load()

        items = catalog.resolve_items()
        known = {item.name for item in items}
        items += [
            item for item in catalog.resolve_syncable() if item.name not in known
        ]

        report = DriftReport(snapshot_time=snapshot.timestamp)
        for item in items:
            baseline = snapshot.baseline(item.name)
            if not baseline:
                report.items[item.name] = DriftState.UNTRACKED
                continue
            try:
                local = canonical_content(item, read_local(item))
            except (OSError, UnicodeDecodeError):
                local = None
            if local is None:
                report.items[item.name] = DriftState.MISSING
            elif sha256_text(local) == baseline:
                report.items[item.name] = DriftState.IN_SYNC
            else:
                report.items[item.name] = DriftState.CHANGED
        return report

    def list_items(self) -> list[VaultItem]:
        """List every entry in the vault."""
        self._check_online()
        try:
            session = self._authenticate()
            return self.backend.list_items(session, self._item_deadline())
        finally:
            self.backend.close()

    # ------------------------------------------------------------------
    # single items and sessions
    # ------------------------------------------------------------------

    def get_item(self, name: str) -> str:
        """Return the note content of one vault entry.

        Raises:
            NotFoundError: If the entry does not exist.
        """
        self._check_online()
        try:
            session = self._authenticate()
            return self.backend.get_notes(name, session, self._item_deadline())
        finally:
            self.backend.close()

    def create_item(
        self, name: str, content: str, force: bool = False, dry_run: bool = False
    ) -> ItemOutcome:
        """Create a vault entry, or overwrite an existing one with ``force``.

        A dry run reports what would happen without contacting the backend.

        Raises:
            ItemExistsError: If the entry exists and ``force`` is not set.
        """
        size = len(content.encode("utf-8"))
        if dry_run:
            return ItemOutcome(
                name=name,
                status=OutcomeStatus.PUSHED,
                direction=Direction.PUSH,
                detail=f"would create/update vault:{name} ({size} bytes)",
                dry_run=True,
            )

        self._check_online()
        try:
            session = self._authenticate()
            self._refresh(session)
            deadline = self._item_deadline()
            try:
                self.backend.get_notes(name, session, deadline)
                exists = True
            except NotFoundError:
                exists = False

            if exists and not force:
                raise ItemExistsError(name)
            if exists:
                self.backend.update_item(name, content, session, deadline)
            else:
                self.backend.create_item(name, content, session, deadline)
        finally:
            self.backend.close()

        action = "updated" if exists else "created"
        audit_event(
            self.settings.home,
            "CREATE",
            f"{action} {name}",
            metadata={"backend": self.backend.name, "bytes": size},
        )
        return ItemOutcome(
            name=name,
            status=OutcomeStatus.PUSHED,
            direction=Direction.PUSH,
            detail=f"{action} vault:{name} ({size} bytes)",
        )

    def delete_items(
        self,
        names: list[str],
        force: bool = False,
        dry_run: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> SyncSummary:
        """Delete vault entries.

        Protected entries are only deleted when ``confirm(name, True)``
        agrees, even with ``force``. Other entries need ``force`` or
        ``confirm(name, False)``. Without a ``confirm`` callback anything
        that needs confirmation is skipped.
        """
        summary = SyncSummary(dry_run=dry_run, forced=force)
        if dry_run:
            for name in names:
                detail = f"would delete vault:{name}"
                if is_protected_item(name):
                    detail += " (protected, needs confirmation)"
                outcome = ItemOutcome(
                    name=name, status=OutcomeStatus.DELETED, detail=detail, dry_run=True
                )
                self._emit(summary, outcome, on_outcome)
            return summary

        self._check_online()
        try:
            session = self._authenticate()
            self._refresh(session)
            for name in names:
                session = self._renew(session)
                outcome = self._delete_item(name, session, force, confirm)
                self._emit(summary, outcome, on_outcome)
        finally:
            self.backend.close()

        if summary.deleted:
            audit_event(
                self.settings.home,
                "DELETE",
                f"deleted={summary.deleted} skipped={summary.skipped} failed={summary.failed}",
                metadata={
                    "backend": self.backend.name,
                    "items": [o.name for o in summary.outcomes if o.status == OutcomeStatus.DELETED],
                },
            )
        return summary

    def _delete_item(
        self,
        name: str,
        session: Session,
        force: bool,
        confirm: Optional[ConfirmCallback],
    ) -> ItemOutcome:
        try:
            self.backend.get_notes(name, session, self._item_deadline())
        except NotFoundError:
            return ItemOutcome(
                name=name, status=OutcomeStatus.SKIPPED, detail="not found in vault"
            )
        except BackendError as exc:
            return ItemOutcome(name=name, status=OutcomeStatus.FAILED, detail=str(exc))

        protected = is_protected_item(name)
        if protected or not force:
            if confirm is None or not confirm(name, protected):
                detail = "protected item, not confirmed" if protected else "cancelled"
                return ItemOutcome(name=name, status=OutcomeStatus.SKIPPED, detail=detail)

        try:
            self.backend.delete_item(name, session, self._item_deadline())
        except BackendError as exc:
            logger.error("Delete of %s failed: %s", name, exc)
            return ItemOutcome(name=name, status=OutcomeStatus.FAILED, detail=str(exc))

        logger.info("Deleted %s", name)
        return ItemOutcome(
            name=name, status=OutcomeStatus.DELETED, detail=f"deleted vault:{name}"
        )

    def unlock(self) -> Session:
        """Open a backend session, caching it where the backend supports that."""
        self._check_online()
        try:
            return self._authenticate()
        finally:
            self.backend.close()

    def lock(self) -> bool:
        """Forget the cached session. Returns False when none was cached."""
        session_file = self.settings.session_file
        self.backend.close()
        if not session_file.exists():
            return False
        session_file.unlink()
        logger.info("Cleared cached session %s", session_file)
        return True

    def status(self) -> dict:
        """Get backend health, timestamps and baseline age.

        Returns:
            Dict with backend, availability, authentication and timestamps.
        """
        deadline = Deadline(self.settings.auth_timeout)
        available = True
        authenticated = False
        try:
            self.backend.init(deadline)
            authenticated = self.backend.is_authenticated(deadline)
        except BackendError as exc:
            logger.debug("Backend unavailable: %s", exc)
            available = False
        finally:
            self.backend.close()

        snapshot = self.checksums.load()
        return {
            "backend": self.backend.name,
            "available": available,
            "authenticated": authenticated,
            "session_file": str(self.settings.session_file),
            "session_cached": self.settings.session_file.exists(),
            "last_push": self.store.get("vault.last_push"),
            "last_pull": self.store.get("vault.last_pull"),
            "last_sync": self.store.get("vault.last_sync"),
            "snapshot_time": snapshot.timestamp.isoformat() if snapshot.timestamp else None,
            "tracked_items": len(snapshot.items),
        }
