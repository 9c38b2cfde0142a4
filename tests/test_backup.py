"""
Tests for the backup and restore functionality.

Tests cover:
- Archive writing (layout, manifest, photos, atomic output)
- Archive reading (validation, root location, unsafe entries)
- Photo relocation
- BackupManager export/restore round trips and error results
"""

import json
import os
import shutil
import tempfile
import unittest
import zipfile
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

from factories import full_details, make_visit, manifest_doc, visit_row, write_archive

from waypost import __version__
from waypost.backup import (
    ArchiveReader,
    ArchiveWriter,
    BackupError,
    BackupManager,
    BackupResult,
    InvalidArchiveError,
    PhotoRelocator,
    RestoreState,
    UnsupportedVersionError,
    archive_filename,
    locate_root,
)
from waypost.events import TAXONOMY_CHANGED, VISITS_CHANGED
from waypost.storage import PhotoStore, TaxonomyKind, VisitDetails, VisitStore


class BackupTestCase(unittest.TestCase):
    """Base class with a populated source store and an empty target store."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.output_dir = self.temp_dir / "backups"
        self.source = VisitStore(data_dir=self.temp_dir / "source")
        self.target = VisitStore(data_dir=self.temp_dir / "target")

    def tearDown(self) -> None:
        self.source.close()
        self.target.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def populate_source(self) -> None:
        store = self.source
        store.import_taxon(TaxonomyKind.LABEL, "L1", "Work")
        store.import_taxon(TaxonomyKind.LABEL, "L2", "Travel")
        store.import_taxon(TaxonomyKind.GROUP, "G1", "Team Vienna")
        store.import_taxon(TaxonomyKind.MEMBER, "M1", "Ana")
        store.import_taxon(TaxonomyKind.MEMBER, "M2", "Ben")

        self.photo_a = store.photo_store.save(b"photo-a")
        self.photo_b = store.photo_store.save(b"photo-b")

        store.create(
            make_visit(1),
            full_details(
                label_ids={"L1", "L2"},
                group_id="G1",
                member_ids={"M1"},
                photo_paths=[self.photo_b, self.photo_a],
            ),
        )
        store.create(make_visit(2), VisitDetails(title="Depot", member_ids={"M1", "M2"}))
        store.create(make_visit(3), VisitDetails())


class TestArchiveWriter(BackupTestCase):
    """Tests for ArchiveWriter."""

    def _write(self) -> BackupResult:
        manager = BackupManager(self.source, output_dir=self.output_dir)
        return ArchiveWriter().write(manager.build_snapshot(), self.output_dir)

    def test_archive_filename(self) -> None:
        name = archive_filename(datetime(2024, 5, 17, 9, 5, 3))
        self.assertEqual(name, "waypost_backup_20240517_090503.zip")

    def test_archive_layout(self) -> None:
        """Test the archive holds the manifest, four documents and photos."""
        self.populate_source()
        result = self._write()

        self.assertTrue(result.success)
        self.assertTrue(result.path.exists())
        self.assertRegex(result.filename, r"^waypost_backup_\d{8}_\d{6}\.zip$")
        self.assertEqual(result.size_bytes, result.path.stat().st_size)

        with zipfile.ZipFile(result.path) as archive:
            names = set(archive.namelist())
            self.assertTrue(
                {"manifest.json", "visits.json", "labels.json", "groups.json", "members.json"}
                <= names
            )
            self.assertIn(f"photos/{self.photo_a}", names)
            self.assertIn(f"photos/{self.photo_b}", names)

            manifest = json.loads(archive.read("manifest.json"))
            visits = json.loads(archive.read("visits.json"))
            labels = json.loads(archive.read("labels.json"))

        self.assertEqual(manifest["version"], "1.0")
        self.assertEqual(manifest["appVersion"], __version__)
        self.assertEqual(manifest["visitCount"], 3)
        self.assertEqual(manifest["labelCount"], 2)
        self.assertEqual(manifest["groupCount"], 1)
        self.assertEqual(manifest["memberCount"], 2)
        self.assertEqual(manifest["photoCount"], 2)
        self.assertTrue(manifest["backupDate"].endswith("Z"))

        first = visits[0]
        self.assertEqual(first["id"], "VISIT-0001")
        self.assertEqual(first["labelIds"], ["L1", "L2"])
        self.assertEqual(first["photoPaths"], [self.photo_b, self.photo_a])
        self.assertTrue(first["timestampUTC"].endswith("Z"))
        self.assertEqual(labels, [{"id": "L2", "name": "Travel"}, {"id": "L1", "name": "Work"}])

    def test_missing_photo_skipped(self) -> None:
        """Test a referenced photo file that is gone is skipped, not fatal."""
        self.populate_source()
        (self.source.photo_store.photo_dir / self.photo_a).unlink()

        result = self._write()

        self.assertTrue(result.success)
        self.assertEqual(result.missing_photos, [self.photo_a])
        self.assertEqual(result.manifest.photo_count, 1)
        with zipfile.ZipFile(result.path) as archive:
            self.assertNotIn(f"photos/{self.photo_a}", archive.namelist())

    def test_unreferenced_photos_not_exported(self) -> None:
        self.populate_source()
        stray = self.source.photo_store.save(b"stray")
        result = self._write()
        with zipfile.ZipFile(result.path) as archive:
            self.assertNotIn(f"photos/{stray}", archive.namelist())

    def test_empty_store(self) -> None:
        result = self._write()
        self.assertTrue(result.success)
        self.assertEqual(result.visit_count, 0)
        with zipfile.ZipFile(result.path) as archive:
            self.assertEqual(json.loads(archive.read("visits.json")), [])

    def test_output_path_is_file(self) -> None:
        blocker = self.temp_dir / "blocker"
        blocker.write_text("x")
        manager = BackupManager(self.source)
        with self.assertRaises(BackupError):
            ArchiveWriter().write(manager.build_snapshot(), blocker)

    def test_failed_packaging_leaves_no_files(self) -> None:
        """Test a failure while zipping leaves neither a final nor a temp archive."""
        self.populate_source()
        with patch("waypost.backup.writer.zipfile.ZipFile", side_effect=OSError("disk full")):
            with self.assertRaises(BackupError):
                self._write()
        self.assertEqual(list(self.output_dir.iterdir()), [])


class TestArchiveReader(BackupTestCase):
    """Tests for ArchiveReader and root location."""

    def test_missing_file(self) -> None:
        with self.assertRaises(InvalidArchiveError):
            with ArchiveReader().open(self.temp_dir / "nope.zip"):
                pass

    def test_not_a_zip(self) -> None:
        bogus = self.temp_dir / "bogus.zip"
        bogus.write_text("not a zip")
        with self.assertRaises(InvalidArchiveError):
            with ArchiveReader().open(bogus):
                pass

    def test_wrapped_root_folder(self) -> None:
        """Test an archive whose documents sit in one wrapping folder."""
        path = write_archive(
            self.temp_dir / "wrapped.zip",
            visits=[visit_row(1)],
            labels=[{"id": "L1", "name": "Work"}],
            prefix="My Backup/",
        )
        with ArchiveReader().open(path) as documents:
            self.assertEqual(documents.root.name, "My Backup")
            self.assertEqual(len(documents.visits), 1)
            self.assertEqual(documents.labels[0].name, "Work")

    def test_manifest_not_found(self) -> None:
        path = write_archive(self.temp_dir / "a.zip", omit=("manifest.json",))
        with self.assertRaises(InvalidArchiveError):
            with ArchiveReader().open(path):
                pass

    def test_missing_document(self) -> None:
        path = write_archive(self.temp_dir / "a.zip", omit=("members.json",))
        with self.assertRaises(InvalidArchiveError) as ctx:
            with ArchiveReader().open(path):
                pass
        self.assertIn("members.json", str(ctx.exception))

    def test_unsupported_version(self) -> None:
        path = write_archive(self.temp_dir / "a.zip", manifest=manifest_doc(version="2.0"))
        with self.assertRaises(UnsupportedVersionError):
            with ArchiveReader().open(path):
                pass

    def test_unsafe_entry_rejected(self) -> None:
        """Test entries escaping the extraction directory are rejected."""
        path = self.temp_dir / "evil.zip"
        write_archive(path)
        with zipfile.ZipFile(path, "a") as archive:
            archive.writestr("../escape.txt", "x")
        with self.assertRaises(InvalidArchiveError):
            with ArchiveReader().open(path):
                pass
        self.assertFalse((self.temp_dir / "escape.txt").exists())

    def test_states_reported_in_order(self) -> None:
        path = write_archive(self.temp_dir / "a.zip")
        states: list[RestoreState] = []
        with ArchiveReader().open(path, on_state=states.append):
            pass
        self.assertEqual(
            states,
            [
                RestoreState.EXTRACTING,
                RestoreState.ROOT_LOCATING,
                RestoreState.MANIFEST_VALIDATING,
                RestoreState.DECODING,
            ],
        )

    def test_extraction_directory_removed(self) -> None:
        path = write_archive(self.temp_dir / "a.zip")
        with ArchiveReader().open(path) as documents:
            root = documents.root
            self.assertTrue(root.exists())
        self.assertFalse(root.exists())

    def test_count_mismatch_only_warns(self) -> None:
        path = write_archive(
            self.temp_dir / "a.zip", visits=[visit_row(1)], manifest=manifest_doc(visits=5)
        )
        with self.assertLogs("waypost.backup.reader", level="WARNING"):
            with ArchiveReader().open(path) as documents:
                self.assertEqual(len(documents.visits), 1)

    def test_inspect_reads_manifest(self) -> None:
        path = write_archive(self.temp_dir / "a.zip", visits=[visit_row(1)], prefix="wrap/")
        manifest = ArchiveReader().inspect(path)
        self.assertEqual(manifest.visit_count, 1)

    def test_inspect_and_open_agree_on_root(self) -> None:
        """Test inspect ignores a __MACOSX manifest the same way extraction does."""
        path = write_archive(self.temp_dir / "a.zip", visits=[visit_row(1)], prefix="backup/")
        with zipfile.ZipFile(path, "a") as archive:
            archive.writestr("__MACOSX/manifest.json", json.dumps(manifest_doc(visits=99)))

        manifest = ArchiveReader().inspect(path)

        self.assertEqual(manifest.visit_count, 1)
        with ArchiveReader().open(path) as documents:
            self.assertEqual(documents.manifest.visit_count, manifest.visit_count)

    def test_locate_root_skips_hidden(self) -> None:
        base = self.temp_dir / "extracted"
        (base / ".hidden").mkdir(parents=True)
        (base / ".hidden" / "manifest.json").write_text("{}")
        (base / "real").mkdir()
        (base / "real" / "manifest.json").write_text("{}")
        self.assertEqual(locate_root(base), base / "real")


class TestPhotoRelocator(unittest.TestCase):
    """Tests for PhotoRelocator."""

    def setUp(self) -> None:
        self.temp_dir = Path(tempfile.mkdtemp())
        self.photos = PhotoStore(self.temp_dir / "Photos")
        self.relocator = PhotoRelocator()

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_stage_deduplicates_by_filename(self) -> None:
        name = self.photos.save(b"one")
        staging = self.temp_dir / "staging"
        staging.mkdir()

        report = self.relocator.stage_photos([name, name], self.photos, staging)

        self.assertEqual(report.copied, [name])
        self.assertEqual(os.listdir(staging / "photos"), [name])

    def test_stage_skips_paths_with_directories(self) -> None:
        """Test a stored value with a directory part is not archived under another name."""
        name = self.photos.save(b"one")
        staging = self.temp_dir / "staging"
        staging.mkdir()

        with self.assertLogs("waypost.backup.relocator", level="WARNING"):
            report = self.relocator.stage_photos(
                [f"nested/{name}", f"..\\{name}"], self.photos, staging
            )

        self.assertEqual(report.copied, [])
        self.assertEqual(report.missing, [f"nested/{name}", f"..\\{name}"])
        self.assertFalse((staging / "photos").exists())

    def test_restore_copies_all_files(self) -> None:
        """Test every archived photo is restored, overwriting same names."""
        root = self.temp_dir / "archive"
        (root / "photos").mkdir(parents=True)
        (root / "photos" / "a.jpg").write_bytes(b"new")
        (root / "photos" / "unreferenced.jpg").write_bytes(b"extra")
        self.photos.ensure_dir()
        (self.photos.photo_dir / "a.jpg").write_bytes(b"old")

        report = self.relocator.restore_photos(root, self.photos)

        self.assertEqual(sorted(report.copied), ["a.jpg", "unreferenced.jpg"])
        self.assertEqual(self.photos.load("a.jpg"), b"new")
        self.assertEqual(self.photos.load("unreferenced.jpg"), b"extra")

    def test_restore_without_photos_directory(self) -> None:
        root = self.temp_dir / "archive"
        root.mkdir()
        report = self.relocator.restore_photos(root, self.photos)
        self.assertEqual(report.copied, [])
        self.assertFalse(self.photos.photo_dir.exists())


class TestBackupManagerRoundTrip(BackupTestCase):
    """Tests for export followed by restore."""

    def test_round_trip(self) -> None:
        """Test a restore into an empty store reproduces the source."""
        self.populate_source()
        source_manager = BackupManager(self.source, output_dir=self.output_dir)
        backup = source_manager.create_backup()
        self.assertTrue(backup.success, backup.error)

        result = BackupManager(self.target).restore_backup(backup.path, require_empty=True)

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.visits_imported, 3)
        self.assertEqual(result.visits_failed, 0)
        self.assertEqual(result.photos_restored, 2)
        self.assertEqual(result.final_state, RestoreState.DONE)

        source_visits = self.source.fetch_all()
        target_visits = self.target.fetch_all()
        self.assertEqual([a.id for a in target_visits], [a.id for a in source_visits])
        for original, restored in zip(source_visits, target_visits):
            self.assertEqual(restored.visit, original.visit)
            self.assertEqual(restored.details, original.details)

        for kind in TaxonomyKind:
            self.assertEqual(
                [(t.id, t.name) for t in self.target.all_taxa(kind)],
                [(t.id, t.name) for t in self.source.all_taxa(kind)],
            )
        self.assertEqual(self.target.photo_store.load(self.photo_a), b"photo-a")
        self.assertEqual(self.target.photo_store.load(self.photo_b), b"photo-b")

    def test_restore_twice_is_idempotent_for_taxonomy(self) -> None:
        """Test a second restore renames nothing and duplicates nothing."""
        self.populate_source()
        backup = BackupManager(self.source, output_dir=self.output_dir).create_backup()
        manager = BackupManager(self.target)

        manager.restore_backup(backup.path)
        second = manager.restore_backup(backup.path)

        self.assertTrue(second.success)
        self.assertEqual(second.visits_imported, 0)
        self.assertEqual(second.visits_failed, 3)
        labels = second.report.taxonomy["label"]
        self.assertEqual(labels.created, 0)
        self.assertEqual(labels.unchanged, 2)
        self.assertEqual(len(self.target.all_taxa(TaxonomyKind.LABEL)), 2)
        self.assertEqual(self.target.count_visits(), 3)

    def test_retry_after_failed_taxonomy_import(self) -> None:
        """Test a restore retried after a mid-taxonomy failure keeps every relation."""
        from waypost.storage import StorageError

        self.populate_source()
        backup = BackupManager(self.source, output_dir=self.output_dir).create_backup()
        manager = BackupManager(self.target)

        import_taxon = self.target.import_taxon
        calls: list[tuple] = []

        def fail_second_call(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise StorageError("disk full")
            return import_taxon(*args, **kwargs)

        with patch.object(self.target, "import_taxon", side_effect=fail_second_call):
            failed = manager.restore_backup(backup.path)
        self.assertFalse(failed.success)
        self.assertEqual(self.target.all_taxa(TaxonomyKind.LABEL), [])

        retried = manager.restore_backup(backup.path)

        self.assertTrue(retried.success, retried.error)
        self.assertEqual(retried.report.taxonomy["label"].created, 2)
        self.assertEqual(
            {t.id for t in self.target.all_taxa(TaxonomyKind.LABEL)}, {"L1", "L2"}
        )
        details = self.target.get("VISIT-0001").details
        self.assertEqual(details.label_ids, {"L1", "L2"})
        self.assertEqual(details.group_id, "G1")
        self.assertEqual(details.member_ids, {"M1"})

    def test_restore_with_missing_photo_file(self) -> None:
        """Test a visit whose photo file was not archived keeps its photo paths."""
        self.populate_source()
        (self.source.photo_store.photo_dir / self.photo_a).unlink()
        backup = BackupManager(self.source, output_dir=self.output_dir).create_backup()
        self.assertEqual(backup.missing_photos, [self.photo_a])

        result = BackupManager(self.target).restore_backup(backup.path)

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.visits_imported, 3)
        self.assertEqual(result.photos_restored, 1)
        details = self.target.get("VISIT-0001").details
        self.assertEqual(details.photo_paths, [self.photo_b, self.photo_a])
        self.assertTrue(self.target.photo_store.exists(self.photo_b))
        self.assertFalse(self.target.photo_store.exists(self.photo_a))

    def test_notifications_posted_once(self) -> None:
        self.populate_source()
        backup = BackupManager(self.source, output_dir=self.output_dir).create_backup()
        events: list[str] = []
        self.target.notifier.subscribe(VISITS_CHANGED, events.append)
        self.target.notifier.subscribe(TAXONOMY_CHANGED, events.append)

        BackupManager(self.target).restore_backup(backup.path)

        self.assertEqual(sorted(events), [TAXONOMY_CHANGED, VISITS_CHANGED])

    def test_legacy_numeric_archive(self) -> None:
        """Test an archive with numeric reference-epoch dates restores."""
        row = visit_row(1, timestampUTC=737_510_400.0, integrityCreatedAtUTC=737_510_400.0)
        path = write_archive(self.temp_dir / "legacy.zip", visits=[row])

        result = BackupManager(self.target).restore_backup(path)

        self.assertTrue(result.success, result.error)
        restored = self.target.get("VISIT-0001").visit
        self.assertEqual(restored.timestamp_utc, datetime(2024, 5, 16, tzinfo=UTC))


class TestBackupManagerErrors(BackupTestCase):
    """Tests for failures reported through result objects."""

    def test_unsupported_version_result(self) -> None:
        """Test a wrong version fails before any mutation."""
        path = write_archive(
            self.temp_dir / "future.zip",
            visits=[visit_row(1)],
            labels=[{"id": "L1", "name": "Work"}],
            manifest=manifest_doc(visits=1, labels=1, version="2.0"),
        )
        manager = BackupManager(self.target)
        result = manager.restore_backup(path)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "unsupported_version")
        self.assertIn("2.0", result.error)
        self.assertEqual(manager.state, RestoreState.FAILED)
        self.assertEqual(self.target.count_visits(), 0)
        self.assertEqual(self.target.all_taxa(TaxonomyKind.LABEL), [])

    def test_invalid_archive_result(self) -> None:
        bogus = self.temp_dir / "bogus.zip"
        bogus.write_bytes(b"\x00\x01")
        result = BackupManager(self.target).restore_backup(bogus)
        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "invalid_archive")

    def test_undecodable_document_mutates_nothing(self) -> None:
        """Test a bad visits.json aborts before taxonomy is imported."""
        path = write_archive(
            self.temp_dir / "bad.zip",
            visits=[{"id": "V"}],
            labels=[{"id": "L1", "name": "Work"}],
        )
        result = BackupManager(self.target).restore_backup(path)
        self.assertEqual(result.error_code, "invalid_archive")
        self.assertEqual(self.target.all_taxa(TaxonomyKind.LABEL), [])

    def test_require_empty(self) -> None:
        """Test restore into a non-empty store can be refused."""
        self.target.create(make_visit(9), VisitDetails())
        path = write_archive(self.temp_dir / "a.zip", visits=[visit_row(1)])

        result = BackupManager(self.target).restore_backup(path, require_empty=True)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "store_not_empty")
        self.assertEqual(self.target.count_visits(), 1)

    def test_storage_failure_during_import(self) -> None:
        """Test a store error in the taxonomy phase becomes a storage result."""
        from waypost.storage import StorageError

        path = write_archive(self.temp_dir / "a.zip", labels=[{"id": "L1", "name": "Work"}])
        with patch.object(self.target, "import_taxon", side_effect=StorageError("locked")):
            result = BackupManager(self.target).restore_backup(path)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "storage")

    def test_backup_failure_result(self) -> None:
        blocker = self.temp_dir / "blocker"
        blocker.write_text("x")
        result = BackupManager(self.source).create_backup(blocker)
        self.assertFalse(result.success)
        self.assertIn("file", result.error)

    def test_get_backup_info(self) -> None:
        path = write_archive(self.temp_dir / "a.zip", visits=[visit_row(1)])
        manager = BackupManager(self.target)
        self.assertEqual(manager.get_backup_info(path).visit_count, 1)
        self.assertIsNone(manager.get_backup_info(self.temp_dir / "missing.zip"))


if __name__ == "__main__":
    unittest.main()
