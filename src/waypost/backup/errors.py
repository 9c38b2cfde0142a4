"""Exceptions raised by the backup and restore pipeline."""

from __future__ import annotations


class BackupError(Exception):
    """Error during backup operation."""

    pass


class RestoreError(Exception):
    """
    Error during restore operation.

    Every restore error aborts the whole run. The ``code`` is a stable,
    machine-readable name carried into RestoreResult.error_code.
    """

    code = "restore_failed"


class InvalidArchiveError(RestoreError):
    """The archive cannot be opened, located, or decoded."""

    code = "invalid_archive"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid backup archive: {reason}")
        self.reason = reason


class UnsupportedVersionError(RestoreError):
    """The archive manifest declares a schema version this build cannot read."""

    code = "unsupported_version"

    def __init__(self, actual: str) -> None:
        super().__init__(f"Unsupported backup version: {actual}")
        self.actual = actual


class StoreNotEmptyError(RestoreError):
    """Restore into a non-empty store was refused."""

    code = "store_not_empty"

    def __init__(self, visit_count: int) -> None:
        super().__init__(
            f"Store already contains {visit_count} visit(s); "
            "reset it before restoring or restore in merge mode"
        )
        self.visit_count = visit_count
