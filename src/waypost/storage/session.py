"""
Single-writer store session.

All reads and writes go through one SQLite connection guarded by one lock.
Writes are *staged* inside an open transaction and only become durable when
the session is *flushed* (COMMIT). This is the explicit batch boundary that
restore uses to commit every N rows instead of every row:

    session.begin()          # open (or join) the staging transaction
    ... stage N writes ...
    session.flush()          # durable commit, counted in flush_count

``refresh()`` flushes and then asks every registered listener to drop its
in-memory view so it is rebuilt from durable state on next use.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import unicodedata
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


def fold_text(value: str) -> str:
    """Case- and accent-insensitive normal form used for text search."""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def _folded_contains(haystack: str | None, needle: str | None) -> int:
    if haystack is None or needle is None:
        return 0
    return 1 if fold_text(needle) in fold_text(haystack) else 0


class StoreSession:
    """
    The one logical writer session over the store.

    Attributes:
        db_path: Path to the SQLite database file.
        flush_count: Number of durable commits performed.
        refresh_count: Number of refreshes performed.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.lock = threading.RLock()
        self.flush_count = 0
        self.refresh_count = 0
        self._refresh_listeners: list[Callable[[], None]] = []

        self._conn = sqlite3.connect(
            str(self.db_path),
            isolation_level=None,  # Autocommit mode, we manage transactions manually
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.create_function(
            "folded_contains", 2, _folded_contains, deterministic=True
        )

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def has_pending_changes(self) -> bool:
        """True while staged writes are waiting for a flush."""
        return self._conn.in_transaction

    def execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        with self.lock:
            return self._conn.execute(sql, params)

    def begin(self) -> None:
        """Open the staging transaction unless one is already open."""
        with self.lock:
            if not self._conn.in_transaction:
                self._conn.execute("BEGIN")

    @contextmanager
    def savepoint(self, name: str = "write") -> Generator[sqlite3.Connection, None, None]:
        """
        Stage a group of statements atomically inside the staging transaction.

        On error the statements of this group are rolled back, earlier staged
        writes are kept, and the exception propagates.
        """
        with self.lock:
            self.begin()
            self._conn.execute(f"SAVEPOINT {name}")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                self._conn.execute(f"RELEASE SAVEPOINT {name}")
                raise
            else:
                self._conn.execute(f"RELEASE SAVEPOINT {name}")

    def flush(self) -> bool:
        """
        Make all staged writes durable.

        Returns:
            True if there was a transaction to commit.
        """
        with self.lock:
            if not self._conn.in_transaction:
                return False
            self._conn.execute("COMMIT")
            self.flush_count += 1
            logger.debug(f"Session flushed ({self.flush_count} total)")
            return True

    def rollback(self) -> None:
        """
        Discard all staged writes.

        In-memory views are invalidated too, since they may hold rows that
        only existed in the discarded transaction. This is not counted in
        refresh_count.
        """
        with self.lock:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
                logger.debug("Session rolled back")
            self._invalidate()

    def refresh(self) -> None:
        """Flush, then invalidate every in-memory view built on this session."""
        with self.lock:
            self.flush()
            self._invalidate()
            self.refresh_count += 1
            logger.info("Store session refreshed")

    def _invalidate(self) -> None:
        for listener in list(self._refresh_listeners):
            listener()

    def add_refresh_listener(self, listener: Callable[[], None]) -> None:
        self._refresh_listeners.append(listener)

    def close(self) -> None:
        with self.lock:
            if self._conn.in_transaction:
                logger.warning("Closing session with staged writes; committing them")
                self._conn.execute("COMMIT")
            self._conn.close()
