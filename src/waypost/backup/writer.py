"""
Archive writer: packages a BackupSnapshot into one ZIP file.

The documents and photos are first written to a scoped staging directory,
zipped into a temporary file inside the output directory, and then renamed
into place. A failed export never leaves a partial archive behind.
"""

from __future__ import annotations

import logging
import os
import tempfile
import zipfile
from datetime import UTC, datetime
from pathlib import Path

from waypost import __version__
from waypost.backup.codec import (
    SUPPORTED_SCHEMA_VERSION,
    dumps,
    encode_date,
    encode_taxon,
    encode_visit,
)
from waypost.backup.errors import BackupError
from waypost.backup.models import BackupManifest, BackupResult, BackupSnapshot
from waypost.backup.relocator import PhotoRelocator

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
VISITS_FILE = "visits.json"
LABELS_FILE = "labels.json"
GROUPS_FILE = "groups.json"
MEMBERS_FILE = "members.json"

ARCHIVE_PREFIX = "waypost_backup_"
ARCHIVE_SUFFIX = ".zip"


def archive_filename(moment: datetime | None = None) -> str:
    """Archive name for a moment, e.g. waypost_backup_20250131_142500.zip."""
    moment = moment or datetime.now()
    return f"{ARCHIVE_PREFIX}{moment.strftime('%Y%m%d_%H%M%S')}{ARCHIVE_SUFFIX}"


class ArchiveWriter:
    """
    Writes backup archives.

    Attributes:
        relocator: Copies the referenced photo files into staging.
    """

    def __init__(self, relocator: PhotoRelocator | None = None) -> None:
        self.relocator = relocator or PhotoRelocator()

    def write(
        self,
        snapshot: BackupSnapshot,
        output_dir: Path,
        now: datetime | None = None,
    ) -> BackupResult:
        """
        Write one archive for the snapshot.

        Args:
            snapshot: The data to export.
            output_dir: Directory receiving the archive (created if needed).
            now: Backup moment, defaults to the current time.

        Returns:
            BackupResult describing the written archive.

        Raises:
            BackupError: If the archive cannot be written.
        """
        output_dir = Path(output_dir).expanduser()
        if output_dir.is_file():
            raise BackupError(f"Output path is a file: {output_dir}")

        now = now or datetime.now(UTC)
        filename = archive_filename(now.astimezone())
        final_path = output_dir / filename

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupError(f"Cannot create output directory {output_dir}: {e}") from e

        with tempfile.TemporaryDirectory(prefix="waypost-export-") as staging:
            staging_dir = Path(staging)

            photos = self.relocator.stage_photos(
                snapshot.referenced_photo_paths(), snapshot.photo_store, staging_dir
            )

            manifest = BackupManifest(
                version=SUPPORTED_SCHEMA_VERSION,
                app_version=__version__,
                backup_date=encode_date(now),
                visit_count=len(snapshot.visits),
                label_count=len(snapshot.labels),
                group_count=len(snapshot.groups),
                member_count=len(snapshot.members),
                photo_count=len(photos.copied),
            )

            documents = {
                MANIFEST_FILE: manifest.to_dict(),
                VISITS_FILE: [encode_visit(visit) for visit in snapshot.visits],
                LABELS_FILE: [encode_taxon(taxon) for taxon in snapshot.labels],
                GROUPS_FILE: [encode_taxon(taxon) for taxon in snapshot.groups],
                MEMBERS_FILE: [encode_taxon(taxon) for taxon in snapshot.members],
            }
            try:
                for name, document in documents.items():
                    (staging_dir / name).write_text(dumps(document), encoding="utf-8")
            except OSError as e:
                raise BackupError(f"Failed to stage backup documents: {e}") from e

            self._package(staging_dir, final_path)

        size_bytes = final_path.stat().st_size
        logger.info(
            f"Backup created: {final_path} ({size_bytes:,} bytes, "
            f"{manifest.visit_count} visits, {manifest.photo_count} photos)"
        )

        return BackupResult(
            success=True,
            filename=filename,
            path=final_path,
            size_bytes=size_bytes,
            visit_count=manifest.visit_count,
            manifest=manifest,
            missing_photos=list(photos.missing),
        )

    def _package(self, staging_dir: Path, final_path: Path) -> None:
        """Zip the staging directory into final_path atomically."""
        temp_fd, temp_path = tempfile.mkstemp(
            prefix=".waypost-", suffix=".zip.tmp", dir=str(final_path.parent)
        )
        os.close(temp_fd)
        try:
            with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for path in sorted(staging_dir.rglob("*")):
                    if path.is_file():
                        archive.write(path, arcname=path.relative_to(staging_dir).as_posix())
            os.replace(temp_path, final_path)
        except Exception as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise BackupError(f"Failed to write archive {final_path.name}: {e}") from e
