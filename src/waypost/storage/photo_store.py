"""
Photo asset store.

Photos are plain files in one directory, keyed by filename. Visit details
store only the filename, so the directory can move with the data directory.
"""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


class PhotoStore:
    """
    Directory of photo files referenced by visit details.

    Attributes:
        photo_dir: Directory holding the files. Created on first write.
    """

    def __init__(self, photo_dir: Path | str) -> None:
        self.photo_dir = Path(photo_dir)

    def ensure_dir(self) -> Path:
        """Create the photo directory if needed and return it."""
        if not self.photo_dir.exists():
            self.photo_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created photos directory at: {self.photo_dir}")
        return self.photo_dir

    def path_for(self, name: str) -> Path:
        """Full path of a stored photo (the file may not exist)."""
        return self.photo_dir / name

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def save(self, data: bytes, suffix: str = ".jpg") -> str:
        """
        Store photo bytes under a new unique filename.

        The file is written atomically (temp file + rename).

        Returns:
            The filename to record in VisitDetails.photo_paths.
        """
        directory = self.ensure_dir()
        name = f"{str(uuid.uuid4()).upper()}{suffix}"

        temp_fd, temp_path = tempfile.mkstemp(suffix=suffix, dir=str(directory))
        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(data)
            os.replace(temp_path, directory / name)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

        return name

    def load(self, name: str) -> bytes | None:
        """Read a photo, or None if it is missing."""
        try:
            return self.path_for(name).read_bytes()
        except OSError:
            return None

    def delete(self, name: str) -> None:
        """Delete a photo file. A missing file is not an error."""
        if not name:
            return
        try:
            self.path_for(name).unlink()
            logger.debug(f"Deleted photo file: {name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not delete photo file {name}: {e}")

    def list_files(self) -> list[str]:
        """Filenames currently in the store, sorted."""
        if not self.photo_dir.is_dir():
            return []
        return sorted(p.name for p in self.photo_dir.iterdir() if p.is_file())
