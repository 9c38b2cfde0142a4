"""
Backup and restore manager for Waypost.

Provides functionality to create portable backup archives from a VisitStore
and restore them into one. Backups are ZIP archives holding a manifest,
four JSON documents and the referenced photo files.

Every failure is reported through the returned BackupResult/RestoreResult
rather than raised, so callers (the CLI, a UI) only inspect one object.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from waypost.backup.errors import BackupError, RestoreError, StoreNotEmptyError
from waypost.backup.importer import BatchPolicy, Reconciler
from waypost.backup.models import (
    BackupManifest,
    BackupResult,
    BackupSnapshot,
    BackupTaxon,
    BackupVisit,
    RestoreResult,
    RestoreState,
)
from waypost.backup.reader import ArchiveReader
from waypost.backup.relocator import PhotoRelocator
from waypost.backup.writer import ArchiveWriter
from waypost.storage.models import TaxonomyKind
from waypost.storage.visit_store import StorageError, VisitStore

logger = logging.getLogger(__name__)


class BackupManager:
    """
    Manages backup and restore operations for one VisitStore.

    Export and restore are serialized: an operation started while another
    is running waits for it. The store session lock is held for the whole
    of each operation, so no other writer interleaves with a restore.

    Attributes:
        store: The store being exported from / restored into.
        output_dir: Default directory for new archives.
        policy: Batch cadence used by restore.
        state: Current restore stage.
    """

    def __init__(
        self,
        store: VisitStore,
        output_dir: Path | str | None = None,
        policy: BatchPolicy | None = None,
    ) -> None:
        """
        Initialize backup manager.

        Args:
            store: Visit store to operate on.
            output_dir: Default archive directory (default: current directory)
            policy: Restore batching policy.
        """
        self.store = store
        self.output_dir = Path(output_dir).expanduser() if output_dir else None
        self.policy = policy or BatchPolicy()
        self.relocator = PhotoRelocator()
        self.writer = ArchiveWriter(self.relocator)
        self.reader = ArchiveReader()
        self.state = RestoreState.IDLE
        self._lock = threading.Lock()

    def build_snapshot(self) -> BackupSnapshot:
        """Read everything an export writes from the store."""
        return BackupSnapshot(
            visits=[BackupVisit.from_aggregate(agg) for agg in self.store.fetch_all()],
            labels=[BackupTaxon.from_taxon(t) for t in self.store.all_taxa(TaxonomyKind.LABEL)],
            groups=[BackupTaxon.from_taxon(t) for t in self.store.all_taxa(TaxonomyKind.GROUP)],
            members=[
                BackupTaxon.from_taxon(t) for t in self.store.all_taxa(TaxonomyKind.MEMBER)
            ],
            photo_store=self.store.photo_store,
        )

    def create_backup(self, output_path: Path | str | None = None) -> BackupResult:
        """
        Create a backup archive of the store.

        Args:
            output_path: Directory to save backup (default: output_dir, then
                the current directory)

        Returns:
            BackupResult with success status and backup details
        """
        target = Path(output_path).expanduser() if output_path else self.output_dir
        target = target or Path.cwd()

        with self._lock, self.store.session.lock:
            try:
                snapshot = self.build_snapshot()
                logger.info(
                    f"Exporting {len(snapshot.visits)} visits, "
                    f"{len(snapshot.labels)} labels, {len(snapshot.groups)} groups, "
                    f"{len(snapshot.members)} members"
                )
                return self.writer.write(snapshot, target)
            except BackupError as e:
                logger.error(f"Backup failed: {e}")
                return BackupResult(success=False, error=str(e))
            except Exception as e:
                logger.exception("Backup failed")
                return BackupResult(success=False, error=str(e))

    def restore_backup(
        self,
        backup_path: Path | str,
        require_empty: bool = False,
    ) -> RestoreResult:
        """
        Restore from a backup archive.

        The archive is extracted, validated and fully decoded before the
        store is touched. Restore merges into existing data: archived ids
        are kept, existing taxonomy is renamed to the archived name, and
        visits whose id already exists are counted as failed.

        Args:
            backup_path: Path to backup archive
            require_empty: Refuse to restore into a store that has visits.

        Returns:
            RestoreResult with success status and restore details
        """
        with self._lock, self.store.session.lock:
            self._set_state(RestoreState.IDLE)
            manifest: BackupManifest | None = None
            try:
                if require_empty:
                    existing = self.store.count_visits()
                    if existing:
                        raise StoreNotEmptyError(existing)

                with self.reader.open(backup_path, on_state=self._set_state) as documents:
                    manifest = documents.manifest
                    reconciler = Reconciler(self.store, self.policy, self.relocator)
                    report = reconciler.reconcile(documents, on_state=self._set_state)

                self._set_state(RestoreState.DONE)
                logger.info(
                    f"Restore completed: {report.visits_imported} visits imported, "
                    f"{report.visits_failed} failed, {len(report.photos.copied)} photos"
                )
                return RestoreResult(
                    success=True,
                    visits_imported=report.visits_imported,
                    visits_failed=report.visits_failed,
                    photos_restored=len(report.photos.copied),
                    photos_failed=len(report.photos.missing),
                    manifest=manifest,
                    report=report,
                    final_state=self.state,
                )

            except RestoreError as e:
                return self._failed(str(e), e.code, manifest)
            except StorageError as e:
                logger.exception("Restore failed in the store")
                return self._failed(str(e), "storage", manifest)
            except Exception as e:
                logger.exception("Restore failed")
                return self._failed(str(e), RestoreError.code, manifest)

    def get_backup_info(self, backup_path: Path | str) -> BackupManifest | None:
        """
        Get information about a backup without extracting it.

        Args:
            backup_path: Path to backup archive

        Returns:
            BackupManifest or None if unable to read
        """
        try:
            return self.reader.inspect(backup_path)
        except RestoreError as e:
            logger.warning(f"Could not read backup info: {e}")
            return None

    def _set_state(self, state: RestoreState) -> None:
        logger.debug(f"Restore state: {self.state.value} -> {state.value}")
        self.state = state

    def _failed(
        self, error: str, code: str, manifest: BackupManifest | None
    ) -> RestoreResult:
        failed_in = self.state
        if failed_in.mutates_store:
            # staged, unflushed rows of the interrupted batch are discarded
            self.store.session.rollback()
        logger.error(f"Restore failed during {failed_in.value}: {error}")
        self._set_state(RestoreState.FAILED)
        return RestoreResult(
            success=False,
            manifest=manifest,
            final_state=RestoreState.FAILED,
            error=error,
            error_code=code,
        )
