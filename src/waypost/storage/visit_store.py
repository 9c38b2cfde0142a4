"""
Visit storage engine for Waypost.

This module provides the VisitStore class, the data access layer over the
canonical store:
    - SQLite database for visits, details, taxonomy and photo rows
    - A PhotoStore directory for the photo files themselves

Storage Structure:
    data/
        waypost.db          # SQLite database
        Photos/
            {UUID}.jpg      # photo files, referenced by filename

Design Decisions:
    - Taxonomy references are resolved through reconcile_id_set(); ids that
      match nothing are dropped, never stored as broken references
    - Photo paths are child rows with an explicit order_index so the order
      round-trips
    - Writes are staged in the StoreSession and flushed either immediately
      (flush_now=True) or by the caller at a batch boundary
    - An id-indexed in-memory view of the taxonomy backs reference
      resolution and is rebuilt whenever the session is refreshed

Thread Safety:
    Every operation holds the session lock; the store is a single writer.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from waypost.events import ChangeNotifier
from waypost.storage.models import (
    Integrity,
    TaxonomyKind,
    Taxon,
    Visit,
    VisitAggregate,
    VisitDetails,
    VisitFilter,
    ensure_utc,
    new_id,
)
from waypost.storage.photo_store import PhotoStore
from waypost.storage.relations import (
    dangling_ids,
    reconcile_id_set,
    reconcile_optional_id,
)
from waypost.storage.session import StoreSession

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class DuplicateVisitError(StorageError):
    """Raised when creating a visit whose id already exists."""

    def __init__(self, visit_id: str) -> None:
        super().__init__(f"Visit with ID {visit_id} already exists")
        self.visit_id = visit_id


class NotFoundError(StorageError):
    """Raised when a requested entity does not exist."""

    pass


class VisitNotFoundError(NotFoundError):
    """Raised when a requested visit does not exist."""

    pass


class TaxonNotFoundError(NotFoundError):
    """Raised when a requested label, group or member does not exist."""

    pass


class InvalidNameError(StorageError):
    """Raised when a taxonomy name is blank."""

    pass


class TaxonImportOutcome(Enum):
    """What import_taxon() did with one archived entity."""

    CREATED = "created"
    RENAMED = "renamed"
    UNCHANGED = "unchanged"


# Database schema version for migrations
SCHEMA_VERSION = 1

# Bound on host parameters per link query (SQLite default limit is 999)
LINK_QUERY_CHUNK = 500

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS taxonomy_labels (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS taxonomy_groups (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS taxonomy_members (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

-- Immutable visit core, including the opaque integrity record
CREATE TABLE IF NOT EXISTS visits (
    id TEXT PRIMARY KEY,
    timestamp_utc TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    horizontal_accuracy REAL,
    is_simulated_by_software INTEGER,
    is_produced_by_accessory INTEGER,
    integrity_algo TEXT NOT NULL,
    integrity_signature_b64 TEXT NOT NULL,
    integrity_public_key_b64 TEXT NOT NULL,
    integrity_payload_hash_hex TEXT NOT NULL,
    integrity_created_at_utc TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_visits_timestamp ON visits(timestamp_utc);

-- Mutable details, 1:1 with visits
CREATE TABLE IF NOT EXISTS visit_details (
    visit_id TEXT PRIMARY KEY,
    title TEXT,
    facility_name TEXT,
    facility_address TEXT,
    facility_category TEXT,
    comment TEXT,
    group_id TEXT,
    resolved_address TEXT,
    FOREIGN KEY (visit_id) REFERENCES visits(id) ON DELETE CASCADE,
    FOREIGN KEY (group_id) REFERENCES taxonomy_groups(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_details_group ON visit_details(group_id);

CREATE TABLE IF NOT EXISTS visit_labels (
    visit_id TEXT NOT NULL,
    label_id TEXT NOT NULL,
    PRIMARY KEY (visit_id, label_id),
    FOREIGN KEY (visit_id) REFERENCES visit_details(visit_id) ON DELETE CASCADE,
    FOREIGN KEY (label_id) REFERENCES taxonomy_labels(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_visit_labels_label ON visit_labels(label_id);

CREATE TABLE IF NOT EXISTS visit_members (
    visit_id TEXT NOT NULL,
    member_id TEXT NOT NULL,
    PRIMARY KEY (visit_id, member_id),
    FOREIGN KEY (visit_id) REFERENCES visit_details(visit_id) ON DELETE CASCADE,
    FOREIGN KEY (member_id) REFERENCES taxonomy_members(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_visit_members_member ON visit_members(member_id);

-- Ordered photo sub-collection
CREATE TABLE IF NOT EXISTS visit_photos (
    id TEXT PRIMARY KEY,
    visit_id TEXT NOT NULL,
    file_path TEXT NOT NULL,
    order_index INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (visit_id) REFERENCES visit_details(visit_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_visit_photos_visit ON visit_photos(visit_id, order_index);
"""

# join table and column per to-many kind
_LINK_TABLES = {
    TaxonomyKind.LABEL: ("visit_labels", "label_id"),
    TaxonomyKind.MEMBER: ("visit_members", "member_id"),
}


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC ISO string; sorts lexically in time order."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_time(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def _to_db_bool(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _from_db_bool(value: int | None) -> bool | None:
    if value is None:
        return None
    return bool(value)


def _normalized_name(name: str) -> str:
    return name.strip()


class VisitStore:
    """
    Persistent storage for visits, their details and the taxonomy.

    Example:
        store = VisitStore(data_dir=Path("./data"))

        store.create(visit, details)
        store.update_details(visit.id, lambda d: d.photo_paths.append(name))
        visits = store.fetch_all(VisitFilter(text="station"))
        store.delete(visit.id)

    Attributes:
        data_dir: Base directory for all data storage.
        db_path: Path to the SQLite database file.
        session: The single writer session.
        photo_store: Directory of photo files.
        notifier: Change notifier that bulk operations post to.
    """

    def __init__(
        self,
        data_dir: Path | str | None = None,
        photo_store: PhotoStore | None = None,
        notifier: ChangeNotifier | None = None,
        photo_dir_name: str = "Photos",
    ) -> None:
        """
        Initialize the visit store.

        Args:
            data_dir: Base directory for data storage. Defaults to ~/.waypost/data
            photo_store: Photo file store. Defaults to data_dir/photo_dir_name.
            notifier: Change notifier. A private one is created if omitted.
            photo_dir_name: Name of the photo directory under data_dir.
        """
        if data_dir is None:
            data_dir = Path.home() / ".waypost" / "data"
        data_dir = Path(data_dir).expanduser()

        self.data_dir = data_dir
        self.db_path = data_dir / "waypost.db"
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.photo_store = photo_store or PhotoStore(data_dir / photo_dir_name)
        self.notifier = notifier or ChangeNotifier()

        self.session = StoreSession(self.db_path)
        self.session.add_refresh_listener(self._invalidate_views)

        # id-indexed in-memory views, rebuilt lazily from durable state
        self._taxonomy_view: dict[TaxonomyKind, dict[str, str]] | None = None
        self._live: dict[str, VisitAggregate] = {}

        self._init_database()

    def __enter__(self) -> VisitStore:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self.session.lock:
            conn = self.session.connection
            conn.executescript(CREATE_TABLES_SQL)

            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()

            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(f"Initialized database schema version {SCHEMA_VERSION}")
            elif row[0] < SCHEMA_VERSION:
                logger.warning(
                    f"Database schema version {row[0]} is older than "
                    f"expected version {SCHEMA_VERSION}"
                )

    # -------------------------------------------------------------------------
    # In-memory views
    # -------------------------------------------------------------------------

    def _invalidate_views(self) -> None:
        self._taxonomy_view = None
        self._live.clear()

    def _taxonomy(self) -> dict[TaxonomyKind, dict[str, str]]:
        """The id -> name view of every taxonomy kind."""
        if self._taxonomy_view is None:
            view: dict[TaxonomyKind, dict[str, str]] = {}
            for kind in TaxonomyKind:
                rows = self.session.execute(f"SELECT id, name FROM {kind.table}")
                view[kind] = {row["id"]: row["name"] for row in rows}
            self._taxonomy_view = view
        return self._taxonomy_view

    # -------------------------------------------------------------------------
    # Visit Methods
    # -------------------------------------------------------------------------

    def create(self, visit: Visit, details: VisitDetails, flush_now: bool = True) -> None:
        """
        Create a visit with its details.

        Args:
            visit: Immutable visit core.
            details: Mutable details. Unknown taxonomy ids are dropped.
            flush_now: Commit immediately. When False the write stays staged
                until the next session flush.

        Raises:
            DuplicateVisitError: If a visit with this id already exists.
            StorageError: If the write fails.
        """
        with self.session.lock:
            if self._visit_exists(visit.id):
                logger.warning(f"Visit with ID {visit.id} already exists")
                raise DuplicateVisitError(visit.id)

            view = self._taxonomy()
            label_ids = reconcile_id_set(details.label_ids, view[TaxonomyKind.LABEL])
            member_ids = reconcile_id_set(details.member_ids, view[TaxonomyKind.MEMBER])
            group_id = reconcile_optional_id(details.group_id, view[TaxonomyKind.GROUP])
            self._log_dangling(visit.id, details, view)

            try:
                with self.session.savepoint("create_visit") as conn:
                    self._insert_visit(conn, visit)
                    self._write_details(conn, visit.id, details, group_id, insert=True)
                    self._write_links(conn, visit.id, TaxonomyKind.LABEL, label_ids)
                    self._write_links(conn, visit.id, TaxonomyKind.MEMBER, member_ids)
                    now = to_db_time(datetime.now(UTC))
                    for index, path in enumerate(details.photo_paths):
                        conn.execute(
                            "INSERT INTO visit_photos (id, visit_id, file_path, order_index, created_at) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (new_id(), visit.id, path, index, now),
                        )
            except Exception as e:
                raise StorageError(f"Failed to create visit {visit.id}: {e}") from e

            if flush_now:
                self.session.flush()

    def update_details(self, visit_id: str, mutate: Callable[[VisitDetails], None]) -> VisitDetails:
        """
        Edit the mutable details of a visit.

        The current details are loaded, passed to ``mutate`` to be edited in
        place, and written back. Photo rows are diffed by path: rows whose
        path disappeared are deleted together with their files, rows whose
        path survives are reused (keeping their id), new paths get new rows,
        and every row gets its new order index.

        Returns:
            The details as written.

        Raises:
            VisitNotFoundError: If the visit does not exist.
        """
        with self.session.lock:
            if not self._visit_exists(visit_id):
                raise VisitNotFoundError(f"Visit not found: {visit_id}")

            current = self._load_details(visit_id)
            mutate(current)

            view = self._taxonomy()
            label_ids = reconcile_id_set(current.label_ids, view[TaxonomyKind.LABEL])
            member_ids = reconcile_id_set(current.member_ids, view[TaxonomyKind.MEMBER])
            group_id = reconcile_optional_id(current.group_id, view[TaxonomyKind.GROUP])
            self._log_dangling(visit_id, current, view)

            existing = self.session.execute(
                "SELECT id, file_path FROM visit_photos WHERE visit_id = ? ORDER BY order_index",
                (visit_id,),
            ).fetchall()
            available: dict[str, deque[str]] = defaultdict(deque)
            for row in existing:
                available[row["file_path"]].append(row["id"])

            new_paths = set(current.photo_paths)
            extinct_files: list[str] = []

            try:
                with self.session.savepoint("update_details") as conn:
                    self._write_details(conn, visit_id, current, group_id, insert=False)
                    conn.execute("DELETE FROM visit_labels WHERE visit_id = ?", (visit_id,))
                    conn.execute("DELETE FROM visit_members WHERE visit_id = ?", (visit_id,))
                    self._write_links(conn, visit_id, TaxonomyKind.LABEL, label_ids)
                    self._write_links(conn, visit_id, TaxonomyKind.MEMBER, member_ids)

                    now = to_db_time(datetime.now(UTC))
                    for index, path in enumerate(current.photo_paths):
                        if available[path]:
                            conn.execute(
                                "UPDATE visit_photos SET order_index = ? WHERE id = ?",
                                (index, available[path].popleft()),
                            )
                        else:
                            conn.execute(
                                "INSERT INTO visit_photos (id, visit_id, file_path, order_index, created_at) "
                                "VALUES (?, ?, ?, ?, ?)",
                                (new_id(), visit_id, path, index, now),
                            )

                    for path, photo_ids in available.items():
                        for photo_id in photo_ids:
                            conn.execute("DELETE FROM visit_photos WHERE id = ?", (photo_id,))
                        if photo_ids and path not in new_paths:
                            extinct_files.append(path)
            except Exception as e:
                raise StorageError(f"Failed to update visit {visit_id}: {e}") from e

            for path in extinct_files:
                self.photo_store.delete(path)

            self._live.pop(visit_id, None)
            self.session.flush()

            written = current.copy()
            written.label_ids = label_ids
            written.member_ids = member_ids
            written.group_id = group_id
            return written

    def delete(self, visit_id: str) -> None:
        """
        Delete a visit, its details and its photo files.

        Raises:
            VisitNotFoundError: If the visit does not exist.
        """
        with self.session.lock:
            if not self._visit_exists(visit_id):
                raise VisitNotFoundError(f"Visit not found: {visit_id}")

            rows = self.session.execute(
                "SELECT file_path FROM visit_photos WHERE visit_id = ?", (visit_id,)
            ).fetchall()
            for row in rows:
                self.photo_store.delete(row["file_path"])

            with self.session.savepoint("delete_visit") as conn:
                conn.execute("DELETE FROM visits WHERE id = ?", (visit_id,))

            self._live.pop(visit_id, None)
            self.session.flush()
            logger.info(f"Deleted visit {visit_id} ({len(rows)} photo file(s))")

    def delete_all_visits(self) -> int:
        """
        Delete every visit.

        Detail rows are deleted before visit rows, then the deleted ids are
        evicted from the in-memory view. Photo files are left in place.

        Returns:
            Number of visits deleted.
        """
        with self.session.lock:
            deleted_ids = [
                row["id"] for row in self.session.execute("SELECT id FROM visits")
            ]

            with self.session.savepoint("delete_all") as conn:
                conn.execute("DELETE FROM visit_details")
                conn.execute("DELETE FROM visits")
            self.session.flush()

            for visit_id in deleted_ids:
                self._live.pop(visit_id, None)

            logger.info(f"Deleted all visits ({len(deleted_ids)})")
            return len(deleted_ids)

    def get(self, visit_id: str) -> VisitAggregate | None:
        """Get one visit with its details, or None."""
        with self.session.lock:
            cached = self._live.get(visit_id)
            if cached is None:
                results = self._query_aggregates("WHERE v.id = ?", [visit_id])
                if not results:
                    logger.debug(f"Visit not found: {visit_id}")
                    return None
                cached = results[0]
                self._live[visit_id] = cached
            return VisitAggregate(
                id=cached.id, visit=cached.visit, details=cached.details.copy()
            )

    def fetch_all(self, query: VisitFilter | None = None) -> list[VisitAggregate]:
        """
        Fetch visits matching a filter, oldest first.

        Args:
            query: Filter criteria (AND-ed). None returns every visit.
        """
        query = query or VisitFilter()
        clauses: list[str] = []
        params: list[Any] = []

        if query.label_id is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM visit_labels vl "
                "WHERE vl.visit_id = v.id AND vl.label_id = ?)"
            )
            params.append(query.label_id)

        if query.group_id is not None:
            clauses.append("d.group_id = ?")
            params.append(query.group_id)

        if query.member_id is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM visit_members vm "
                "WHERE vm.visit_id = v.id AND vm.member_id = ?)"
            )
            params.append(query.member_id)

        if query.text is not None and query.text.strip():
            # title OR resolved address
            clauses.append(
                "(folded_contains(d.title, ?) OR folded_contains(d.resolved_address, ?))"
            )
            params.extend([query.text.strip(), query.text.strip()])

        if query.date_from is not None:
            clauses.append("v.timestamp_utc >= ?")
            params.append(to_db_time(query.date_from))

        if query.date_to_exclusive is not None:
            clauses.append("v.timestamp_utc < ?")
            params.append(to_db_time(query.date_to_exclusive))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.session.lock:
            return self._query_aggregates(where, params)

    def count_visits(self) -> int:
        row = self.session.execute("SELECT COUNT(*) FROM visits").fetchone()
        return int(row[0])

    # -------------------------------------------------------------------------
    # Taxonomy Methods
    # -------------------------------------------------------------------------

    def all_taxa(self, kind: TaxonomyKind) -> list[Taxon]:
        """All entities of one kind, sorted by name."""
        rows = self.session.execute(
            f"SELECT id, name FROM {kind.table} ORDER BY name, id"
        ).fetchall()
        return [Taxon(id=row["id"], name=row["name"], kind=kind) for row in rows]

    def get_taxon(self, kind: TaxonomyKind, taxon_id: str) -> Taxon | None:
        row = self.session.execute(
            f"SELECT id, name FROM {kind.table} WHERE id = ?", (taxon_id,)
        ).fetchone()
        if row is None:
            return None
        return Taxon(id=row["id"], name=row["name"], kind=kind)

    def create_taxon(self, kind: TaxonomyKind, name: str) -> Taxon:
        """
        Create a new entity with a fresh id.

        Raises:
            InvalidNameError: If the name is blank.
        """
        trimmed = self._require_name(kind, name)
        taxon_id = new_id()
        with self.session.lock:
            with self.session.savepoint("create_taxon") as conn:
                conn.execute(
                    f"INSERT INTO {kind.table} (id, name) VALUES (?, ?)",
                    (taxon_id, trimmed),
                )
            self._taxonomy()[kind][taxon_id] = trimmed
            self.session.flush()
        return Taxon(id=taxon_id, name=trimmed, kind=kind)

    def upsert_taxon(self, kind: TaxonomyKind, name: str) -> Taxon:
        """Return the entity with exactly this name, creating it if needed."""
        trimmed = self._require_name(kind, name)
        row = self.session.execute(
            f"SELECT id, name FROM {kind.table} WHERE name = ? LIMIT 1", (trimmed,)
        ).fetchone()
        if row is not None:
            return Taxon(id=row["id"], name=row["name"], kind=kind)
        return self.create_taxon(kind, trimmed)

    def import_taxon(
        self,
        kind: TaxonomyKind,
        taxon_id: str,
        name: str,
        flush_now: bool = True,
    ) -> TaxonImportOutcome:
        """
        Create or rename an entity keeping the given id.

        Used by restore: an existing id is renamed only if the name differs,
        otherwise the entity is created with the archived id.

        Raises:
            InvalidNameError: If the name is blank.
        """
        trimmed = self._require_name(kind, name)
        with self.session.lock:
            view = self._taxonomy()[kind]
            existing = view.get(taxon_id)

            if existing is not None:
                if existing == trimmed:
                    logger.debug(f"{kind.value.title()} {taxon_id} already exists, unchanged")
                    return TaxonImportOutcome.UNCHANGED
                with self.session.savepoint("import_taxon") as conn:
                    conn.execute(
                        f"UPDATE {kind.table} SET name = ? WHERE id = ?",
                        (trimmed, taxon_id),
                    )
                outcome = TaxonImportOutcome.RENAMED
                logger.info(f"Updated {kind.value} name to: {trimmed} ({taxon_id})")
            else:
                with self.session.savepoint("import_taxon") as conn:
                    conn.execute(
                        f"INSERT INTO {kind.table} (id, name) VALUES (?, ?)",
                        (taxon_id, trimmed),
                    )
                outcome = TaxonImportOutcome.CREATED
                logger.debug(f"Created {kind.value} with existing ID: {trimmed} ({taxon_id})")

            view[taxon_id] = trimmed
            if flush_now:
                self.session.flush()
            return outcome

    def rename_taxon(self, kind: TaxonomyKind, taxon_id: str, new_name: str) -> None:
        """
        Rename an entity.

        Raises:
            InvalidNameError: If the name is blank.
            TaxonNotFoundError: If the entity does not exist.
        """
        trimmed = self._require_name(kind, new_name)
        with self.session.lock:
            if taxon_id not in self._taxonomy()[kind]:
                raise TaxonNotFoundError(f"{kind.value.title()} not found: {taxon_id}")
            with self.session.savepoint("rename_taxon") as conn:
                conn.execute(
                    f"UPDATE {kind.table} SET name = ? WHERE id = ?", (trimmed, taxon_id)
                )
            self._taxonomy()[kind][taxon_id] = trimmed
            self.session.flush()

    def delete_taxon(self, kind: TaxonomyKind, taxon_id: str) -> None:
        """
        Delete an entity after detaching it from every visit.

        Raises:
            TaxonNotFoundError: If the entity does not exist.
        """
        with self.session.lock:
            if taxon_id not in self._taxonomy()[kind]:
                raise TaxonNotFoundError(f"{kind.value.title()} not found: {taxon_id}")

            with self.session.savepoint("delete_taxon") as conn:
                if kind is TaxonomyKind.GROUP:
                    conn.execute(
                        "UPDATE visit_details SET group_id = NULL WHERE group_id = ?",
                        (taxon_id,),
                    )
                else:
                    table, column = _LINK_TABLES[kind]
                    conn.execute(f"DELETE FROM {table} WHERE {column} = ?", (taxon_id,))
                conn.execute(f"DELETE FROM {kind.table} WHERE id = ?", (taxon_id,))

            self._taxonomy()[kind].pop(taxon_id, None)
            self._live.clear()
            self.session.flush()

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def statistics(self) -> dict[str, Any]:
        """Counts of every stored entity plus the photo directory."""
        counts: dict[str, Any] = {"visits": self.count_visits()}
        for kind in TaxonomyKind:
            row = self.session.execute(f"SELECT COUNT(*) FROM {kind.table}").fetchone()
            counts[f"{kind.value}s"] = int(row[0])
        row = self.session.execute("SELECT COUNT(*) FROM visit_photos").fetchone()
        counts["photo_references"] = int(row[0])
        counts["photo_files"] = len(self.photo_store.list_files())
        counts["database_size_bytes"] = (
            self.db_path.stat().st_size if self.db_path.exists() else 0
        )
        return counts

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require_name(self, kind: TaxonomyKind, name: str) -> str:
        trimmed = _normalized_name(name)
        if not trimmed:
            logger.warning(f"Attempted to write {kind.value} with empty name")
            raise InvalidNameError(f"{kind.value.title()} name must not be blank")
        return trimmed

    def _visit_exists(self, visit_id: str) -> bool:
        row = self.session.execute(
            "SELECT 1 FROM visits WHERE id = ? LIMIT 1", (visit_id,)
        ).fetchone()
        return row is not None

    def _log_dangling(
        self,
        visit_id: str,
        details: VisitDetails,
        view: dict[TaxonomyKind, dict[str, str]],
    ) -> None:
        missing = dangling_ids(details.label_ids, view[TaxonomyKind.LABEL])
        missing |= dangling_ids(details.member_ids, view[TaxonomyKind.MEMBER])
        if details.group_id is not None:
            missing |= dangling_ids([details.group_id], view[TaxonomyKind.GROUP])
        if missing:
            logger.warning(
                f"Visit {visit_id}: dropping unresolved taxonomy references {sorted(missing)}"
            )

    def _insert_visit(self, conn: Any, visit: Visit) -> None:
        integrity = visit.integrity
        conn.execute(
            """
            INSERT INTO visits (
                id, timestamp_utc, latitude, longitude, horizontal_accuracy,
                is_simulated_by_software, is_produced_by_accessory,
                integrity_algo, integrity_signature_b64, integrity_public_key_b64,
                integrity_payload_hash_hex, integrity_created_at_utc
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                visit.id,
                to_db_time(visit.timestamp_utc),
                visit.latitude,
                visit.longitude,
                visit.horizontal_accuracy,
                _to_db_bool(visit.is_simulated_by_software),
                _to_db_bool(visit.is_produced_by_accessory),
                integrity.algorithm,
                integrity.signature_base64,
                integrity.public_key_base64,
                integrity.payload_hash_hex,
                to_db_time(integrity.created_at_utc),
            ),
        )

    def _write_details(
        self,
        conn: Any,
        visit_id: str,
        details: VisitDetails,
        group_id: str | None,
        insert: bool,
    ) -> None:
        values = (
            details.title,
            details.facility_name,
            details.facility_address,
            details.facility_category,
            details.comment,
            group_id,
            details.resolved_address,
        )
        if insert:
            conn.execute(
                """
                INSERT INTO visit_details (
                    title, facility_name, facility_address, facility_category,
                    comment, group_id, resolved_address, visit_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*values, visit_id),
            )
        else:
            conn.execute(
                """
                UPDATE visit_details SET
                    title = ?, facility_name = ?, facility_address = ?,
                    facility_category = ?, comment = ?, group_id = ?,
                    resolved_address = ?
                WHERE visit_id = ?
                """,
                (*values, visit_id),
            )

    def _write_links(
        self, conn: Any, visit_id: str, kind: TaxonomyKind, ids: set[str]
    ) -> None:
        table, column = _LINK_TABLES[kind]
        conn.executemany(
            f"INSERT INTO {table} (visit_id, {column}) VALUES (?, ?)",
            [(visit_id, item_id) for item_id in sorted(ids)],
        )

    def _load_details(self, visit_id: str) -> VisitDetails:
        aggregates = self._query_aggregates("WHERE v.id = ?", [visit_id])
        return aggregates[0].details

    def _query_aggregates(self, where: str, params: list[Any]) -> list[VisitAggregate]:
        rows = self.session.execute(
            f"""
            SELECT v.*, d.title, d.facility_name, d.facility_address,
                   d.facility_category, d.comment, d.group_id, d.resolved_address
            FROM visits v
            LEFT JOIN visit_details d ON d.visit_id = v.id
            {where}
            ORDER BY v.timestamp_utc, v.id
            """,
            params,
        ).fetchall()
        if not rows:
            return []

        wanted = [row["id"] for row in rows]
        labels: dict[str, set[str]] = defaultdict(set)
        members: dict[str, set[str]] = defaultdict(set)
        photos: dict[str, list[str]] = defaultdict(list)

        for start in range(0, len(wanted), LINK_QUERY_CHUNK):
            chunk = wanted[start:start + LINK_QUERY_CHUNK]
            marks = ", ".join("?" for _ in chunk)
            for link in self.session.execute(
                f"SELECT visit_id, label_id FROM visit_labels WHERE visit_id IN ({marks})", chunk
            ):
                labels[link["visit_id"]].add(link["label_id"])
            for link in self.session.execute(
                f"SELECT visit_id, member_id FROM visit_members WHERE visit_id IN ({marks})", chunk
            ):
                members[link["visit_id"]].add(link["member_id"])
            for photo in self.session.execute(
                f"SELECT visit_id, file_path FROM visit_photos WHERE visit_id IN ({marks}) "
                "ORDER BY visit_id, order_index",
                chunk,
            ):
                photos[photo["visit_id"]].append(photo["file_path"])

        return [
            self._row_to_aggregate(row, labels[row["id"]], members[row["id"]], photos[row["id"]])
            for row in rows
        ]

    def _row_to_aggregate(
        self,
        row: Any,
        label_ids: set[str],
        member_ids: set[str],
        photo_paths: list[str],
    ) -> VisitAggregate:
        visit = Visit(
            id=row["id"],
            timestamp_utc=from_db_time(row["timestamp_utc"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
            horizontal_accuracy=row["horizontal_accuracy"],
            is_simulated_by_software=_from_db_bool(row["is_simulated_by_software"]),
            is_produced_by_accessory=_from_db_bool(row["is_produced_by_accessory"]),
            integrity=Integrity(
                algorithm=row["integrity_algo"],
                signature_base64=row["integrity_signature_b64"],
                public_key_base64=row["integrity_public_key_b64"],
                payload_hash_hex=row["integrity_payload_hash_hex"],
                created_at_utc=from_db_time(row["integrity_created_at_utc"]),
            ),
        )
        details = VisitDetails(
            title=row["title"],
            facility_name=row["facility_name"],
            facility_address=row["facility_address"],
            facility_category=row["facility_category"],
            comment=row["comment"],
            label_ids=set(label_ids),
            group_id=row["group_id"],
            member_ids=set(member_ids),
            resolved_address=row["resolved_address"],
            photo_paths=list(photo_paths),
        )
        return VisitAggregate(id=visit.id, visit=visit, details=details)
