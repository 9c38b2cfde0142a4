"""
Photo file transfer between the live photo directory and an archive.

Archives keep photos in a flat ``photos/`` directory, one file per distinct
filename. Export copies only referenced files out; restore copies every
file in ``photos/`` back, including files no visit references.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from waypost.backup.models import PhotoTransferReport
from waypost.storage.photo_store import PhotoStore

logger = logging.getLogger(__name__)

PHOTOS_DIR_NAME = "photos"


class PhotoRelocator:
    """Copies photo files into export staging and out of extracted archives."""

    def stage_photos(
        self,
        photo_paths: Iterable[str],
        photo_store: PhotoStore,
        staging_dir: Path,
    ) -> PhotoTransferReport:
        """
        Copy referenced photos into ``staging_dir/photos``.

        Each file is staged under the value stored in ``photo_paths``;
        duplicates are copied once. A value that is not a bare filename, or
        a file that is missing or unreadable, is logged and skipped.

        Args:
            photo_paths: Photo path values from the exported visits.
            photo_store: Live photo directory.
            staging_dir: Export staging directory.

        Returns:
            Report of copied and missing filenames.
        """
        report = PhotoTransferReport()
        target_dir = staging_dir / PHOTOS_DIR_NAME
        seen: set[str] = set()

        for name in photo_paths:
            if not name or name in seen:
                continue
            seen.add(name)

            # archive photos/ is flat; the stored value is the archived name
            if "/" in name or "\\" in name or name in (".", ".."):
                logger.warning(f"Photo path is not a bare filename, skipping: {name}")
                report.missing.append(name)
                continue

            source = photo_store.path_for(name)
            if not source.is_file():
                logger.warning(f"Photo not found, skipping: {name}")
                report.missing.append(name)
                continue

            target_dir.mkdir(parents=True, exist_ok=True)
            try:
                shutil.copy2(source, target_dir / name)
            except OSError as e:
                logger.warning(f"Could not copy photo {name}: {e}")
                report.missing.append(name)
                continue
            report.copied.append(name)

        logger.info(
            f"Staged {len(report.copied)} photo(s), {len(report.missing)} missing"
        )
        return report

    def restore_photos(self, archive_root: Path, photo_store: PhotoStore) -> PhotoTransferReport:
        """
        Copy every file under ``archive_root/photos`` into the photo store.

        Same-named files are overwritten. A missing ``photos/`` directory is
        not an error. Per-file failures are logged and counted as missing.
        """
        report = PhotoTransferReport()
        source_dir = archive_root / PHOTOS_DIR_NAME
        if not source_dir.is_dir():
            logger.info("Archive contains no photos directory")
            return report

        target_dir = photo_store.ensure_dir()
        for source in sorted(source_dir.iterdir()):
            if not source.is_file() or source.name.startswith("."):
                continue
            try:
                shutil.copy2(source, target_dir / source.name)
            except OSError as e:
                logger.warning(f"Could not restore photo {source.name}: {e}")
                report.missing.append(source.name)
                continue
            logger.debug(f"Restored photo: {source.name}")
            report.copied.append(source.name)

        logger.info(
            f"Restored {len(report.copied)} photo(s), {len(report.missing)} failed"
        )
        return report
