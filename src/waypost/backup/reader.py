"""
Archive reader: opens, extracts, locates and decodes a backup archive.

Nothing here touches the store. Every failure is raised before the
importer runs, so an unreadable archive never causes a partial restore.
"""

from __future__ import annotations

import logging
import tempfile
import zipfile
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath

from waypost.backup.codec import (
    check_version,
    decode_document,
    decode_manifest,
    decode_taxon,
    decode_visit,
)
from waypost.backup.errors import InvalidArchiveError
from waypost.backup.models import ArchiveDocuments, BackupManifest, RestoreState
from waypost.backup.writer import (
    GROUPS_FILE,
    LABELS_FILE,
    MANIFEST_FILE,
    MEMBERS_FILE,
    VISITS_FILE,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[RestoreState], None]


def _ignore_state(state: RestoreState) -> None:
    pass


def _check_entry_name(name: str) -> None:
    """Reject entries that would extract outside the target directory."""
    normalized = name.replace("\\", "/")
    path = PurePosixPath(normalized)
    if normalized.startswith("/") or path.is_absolute() or ".." in path.parts:
        raise InvalidArchiveError(f"unsafe entry path {name!r}")
    if len(normalized) > 1 and normalized[1] == ":":
        raise InvalidArchiveError(f"unsafe entry path {name!r}")


def _is_ignored_dir(name: str) -> bool:
    """Folders such as .git or __MACOSX never hold the archive root."""
    return name.startswith(".") or name.startswith("__")


def locate_root(extracted: Path) -> Path:
    """
    Find the directory holding manifest.json.

    Archives re-zipped by hand often wrap everything in one folder, so the
    immediate subdirectories are searched too (sorted, hidden ones skipped).

    Raises:
        InvalidArchiveError: If no manifest is found.
    """
    if (extracted / MANIFEST_FILE).is_file():
        return extracted

    for child in sorted(extracted.iterdir()):
        if child.is_dir() and not _is_ignored_dir(child.name):
            if (child / MANIFEST_FILE).is_file():
                logger.debug(f"Archive root located in subdirectory: {child.name}")
                return child

    raise InvalidArchiveError("manifest.json not found")


class ArchiveReader:
    """Reads backup archives written by ArchiveWriter (or older exporters)."""

    def _open_zip(self, archive_path: Path) -> zipfile.ZipFile:
        if not archive_path.exists():
            raise InvalidArchiveError(f"file not found: {archive_path}")
        if not archive_path.is_file():
            raise InvalidArchiveError(f"not a file: {archive_path}")
        try:
            return zipfile.ZipFile(archive_path)
        except zipfile.BadZipFile as e:
            raise InvalidArchiveError(f"not a valid ZIP archive: {archive_path}") from e
        except OSError as e:
            raise InvalidArchiveError(f"cannot read {archive_path}: {e}") from e

    def inspect(self, archive_path: Path | str) -> BackupManifest:
        """
        Read the manifest without extracting the archive.

        Raises:
            InvalidArchiveError: If the archive or its manifest is unreadable.
        """
        archive_path = Path(archive_path)
        with self._open_zip(archive_path) as archive:
            names = []
            for name in archive.namelist():
                parts = PurePosixPath(name.replace("\\", "/")).parts
                if not parts or parts[-1] != MANIFEST_FILE or len(parts) > 2:
                    continue
                if len(parts) == 2 and _is_ignored_dir(parts[0]):
                    continue
                names.append(name)
            if not names:
                raise InvalidArchiveError("manifest.json not found")
            # shallowest first, then sorted, mirroring locate_root()
            names.sort(key=lambda name: (len(PurePosixPath(name).parts), name))
            return decode_manifest(archive.read(names[0]))

    @contextmanager
    def open(
        self,
        archive_path: Path | str,
        on_state: StateCallback | None = None,
    ) -> Generator[ArchiveDocuments, None, None]:
        """
        Extract and decode an archive.

        The extraction directory lives until the context exits, so the
        photos under ``documents.root / "photos"`` can still be copied.

        Args:
            archive_path: Path to the ZIP archive.
            on_state: Called when each read stage begins.

        Yields:
            The decoded documents.

        Raises:
            InvalidArchiveError: If the archive cannot be opened, located
                or decoded.
            UnsupportedVersionError: If the schema version is not supported.
        """
        archive_path = Path(archive_path)
        on_state = on_state or _ignore_state

        with tempfile.TemporaryDirectory(prefix="waypost-restore-") as temp_dir:
            extracted = Path(temp_dir)

            on_state(RestoreState.EXTRACTING)
            self._extract(archive_path, extracted)

            on_state(RestoreState.ROOT_LOCATING)
            root = locate_root(extracted)

            on_state(RestoreState.MANIFEST_VALIDATING)
            manifest = decode_manifest(self._read(root, MANIFEST_FILE))
            check_version(manifest)
            logger.info(
                f"Archive manifest: version {manifest.version}, "
                f"written by {manifest.app_version} on {manifest.backup_date}"
            )

            on_state(RestoreState.DECODING)
            documents = ArchiveDocuments(
                root=root,
                manifest=manifest,
                visits=decode_document(VISITS_FILE, self._read(root, VISITS_FILE), decode_visit),
                labels=decode_document(LABELS_FILE, self._read(root, LABELS_FILE), decode_taxon),
                groups=decode_document(GROUPS_FILE, self._read(root, GROUPS_FILE), decode_taxon),
                members=decode_document(
                    MEMBERS_FILE, self._read(root, MEMBERS_FILE), decode_taxon
                ),
            )
            self._compare_counts(documents)

            yield documents

    def _extract(self, archive_path: Path, target: Path) -> None:
        with self._open_zip(archive_path) as archive:
            for name in archive.namelist():
                _check_entry_name(name)
            try:
                archive.extractall(target)
            except (zipfile.BadZipFile, OSError, RuntimeError) as e:
                raise InvalidArchiveError(f"extraction failed: {e}") from e
        logger.debug(f"Extracted {archive_path.name} to {target}")

    def _read(self, root: Path, name: str) -> bytes:
        path = root / name
        if not path.is_file():
            raise InvalidArchiveError(f"{name} not found")
        try:
            return path.read_bytes()
        except OSError as e:
            raise InvalidArchiveError(f"cannot read {name}: {e}") from e

    def _compare_counts(self, documents: ArchiveDocuments) -> None:
        manifest = documents.manifest
        expected = {
            "visits": (manifest.visit_count, len(documents.visits)),
            "labels": (manifest.label_count, len(documents.labels)),
            "groups": (manifest.group_count, len(documents.groups)),
            "members": (manifest.member_count, len(documents.members)),
        }
        for name, (declared, actual) in expected.items():
            if declared != actual:
                logger.warning(
                    f"Manifest declares {declared} {name} but archive contains {actual}"
                )
