"""
Backup and restore functionality for Waypost.

Provides portable ZIP archives of the visit store and an identity-preserving
restore that can be replayed onto a store that already has data.

Usage:
    from waypost.backup import BackupManager

    manager = BackupManager(store, output_dir=Path("~/backups"))
    result = manager.create_backup()
    restored = manager.restore_backup(result.path)
"""

from waypost.backup.codec import REFERENCE_EPOCH, SUPPORTED_SCHEMA_VERSION, DateStrategy
from waypost.backup.errors import (
    BackupError,
    InvalidArchiveError,
    RestoreError,
    StoreNotEmptyError,
    UnsupportedVersionError,
)
from waypost.backup.importer import BatchPolicy, Reconciler
from waypost.backup.manager import BackupManager
from waypost.backup.models import (
    ArchiveDocuments,
    BackupManifest,
    BackupResult,
    BackupSnapshot,
    BackupTaxon,
    BackupVisit,
    ImportReport,
    PhotoTransferReport,
    RestoreResult,
    RestoreState,
    TaxonomyImportCounts,
    VisitImportFailure,
)
from waypost.backup.reader import ArchiveReader, locate_root
from waypost.backup.relocator import PhotoRelocator
from waypost.backup.writer import ArchiveWriter, archive_filename

__all__ = [
    "BackupManager",
    "ArchiveWriter",
    "ArchiveReader",
    "PhotoRelocator",
    "Reconciler",
    "BatchPolicy",
    "locate_root",
    "archive_filename",
    "DateStrategy",
    "REFERENCE_EPOCH",
    "SUPPORTED_SCHEMA_VERSION",
    "ArchiveDocuments",
    "BackupManifest",
    "BackupResult",
    "BackupSnapshot",
    "BackupTaxon",
    "BackupVisit",
    "ImportReport",
    "PhotoTransferReport",
    "RestoreResult",
    "RestoreState",
    "TaxonomyImportCounts",
    "VisitImportFailure",
    "BackupError",
    "RestoreError",
    "InvalidArchiveError",
    "UnsupportedVersionError",
    "StoreNotEmptyError",
]
