"""
Visit storage engine.

This module provides persistent storage for visits using SQLite for records
and relations, and a plain directory for photo files.

Features:
    - Identity-preserving writes (ids are never re-generated on restore)
    - Explicit reconciliation of taxonomy references by id set
    - Ordered photo sub-collection with diffing on edit
    - Single-writer session with explicit flush boundaries for batching

Storage Structure:
    data/
        waypost.db          # SQLite database
        Photos/             # photo files, referenced by filename

Usage:
    from waypost.storage import VisitStore, VisitFilter

    store = VisitStore()
    store.create(visit, details)
    visits = store.fetch_all(VisitFilter(text="harbor"))
"""

from waypost.storage.models import (
    Integrity,
    Taxon,
    TaxonomyKind,
    Visit,
    VisitAggregate,
    VisitDetails,
    VisitFilter,
)
from waypost.storage.photo_store import PhotoStore
from waypost.storage.relations import (
    dangling_ids,
    reconcile_id_set,
    reconcile_optional_id,
)
from waypost.storage.session import StoreSession
from waypost.storage.visit_store import (
    DuplicateVisitError,
    InvalidNameError,
    NotFoundError,
    StorageError,
    TaxonImportOutcome,
    TaxonNotFoundError,
    VisitNotFoundError,
    VisitStore,
)

__all__ = [
    # Main store classes
    "VisitStore",
    "StoreSession",
    "PhotoStore",
    # Data models
    "Integrity",
    "Visit",
    "VisitDetails",
    "VisitAggregate",
    "VisitFilter",
    "Taxon",
    "TaxonomyKind",
    "TaxonImportOutcome",
    # Relations
    "reconcile_id_set",
    "reconcile_optional_id",
    "dangling_ids",
    # Exceptions
    "StorageError",
    "DuplicateVisitError",
    "NotFoundError",
    "VisitNotFoundError",
    "TaxonNotFoundError",
    "InvalidNameError",
]
