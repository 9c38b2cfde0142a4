"""
Reconciliation of taxonomy references against the known id sets.

Visit details reference labels, members and a group by id. The store does
not enforce these references with foreign keys at write time; instead every
write passes the requested ids through the functions below, which keep the
ids that resolve and silently drop the rest. The visit itself is kept.
Callers that want to surface the loss can use ``dangling_ids``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Set


def reconcile_id_set(requested: Iterable[str], known: Set[str] | Mapping[str, object]) -> set[str]:
    """
    Resolve a to-many reference.

    Args:
        requested: Ids the caller wants to relate (duplicates collapse).
        known: Ids that currently exist, as a set or an id-indexed map.

    Returns:
        The requested ids that exist. Unresolved ids are dropped.
    """
    return {item_id for item_id in requested if item_id in known}


def reconcile_optional_id(
    requested: str | None, known: Set[str] | Mapping[str, object]
) -> str | None:
    """Resolve a to-one reference; an unresolved id becomes None."""
    if requested is None or requested not in known:
        return None
    return requested


def dangling_ids(requested: Iterable[str], known: Set[str] | Mapping[str, object]) -> set[str]:
    """Return the requested ids that do not resolve."""
    return {item_id for item_id in requested if item_id not in known}
