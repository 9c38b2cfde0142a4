"""
Data models for the visit store.

This module defines the dataclasses used to represent visits, their mutable
details, and the taxonomy entities they reference.

Schema Design Decisions:
    - IDs are UUID strings, kept exactly as received (never re-generated on
      restore)
    - Timestamps are timezone-aware UTC datetimes in memory and fixed-width
      ISO strings in the database
    - Visit and Integrity are frozen; only VisitDetails is mutable
    - Taxonomy references are id sets; photo paths are an ordered list
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


def new_id() -> str:
    """Generate a new entity identifier."""
    return str(uuid.uuid4()).upper()


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class Integrity:
    """
    Tamper-evidence record attached to a visit.

    Produced by the signing service when the visit is captured. Waypost
    stores and exports it verbatim and never recomputes or verifies it.

    Attributes:
        algorithm: Signature algorithm name (e.g. "ES256").
        signature_base64: DER signature, base64 encoded.
        public_key_base64: Raw public key, base64 encoded.
        payload_hash_hex: Hex digest of the signed payload.
        created_at_utc: When the record was signed.
    """

    algorithm: str
    signature_base64: str
    public_key_base64: str
    payload_hash_hex: str
    created_at_utc: datetime


@dataclass(frozen=True)
class Visit:
    """
    Immutable core of a visit record.

    Attributes:
        id: Globally unique visit identifier.
        timestamp_utc: When the visit was recorded.
        latitude: WGS84 latitude in degrees.
        longitude: WGS84 longitude in degrees.
        horizontal_accuracy: Location accuracy radius in meters, if known.
        is_simulated_by_software: Location source flag, if known.
        is_produced_by_accessory: Location source flag, if known.
        integrity: Opaque tamper-evidence record.
    """

    id: str
    timestamp_utc: datetime
    latitude: float
    longitude: float
    integrity: Integrity
    horizontal_accuracy: float | None = None
    is_simulated_by_software: bool | None = None
    is_produced_by_accessory: bool | None = None


@dataclass
class VisitDetails:
    """
    Mutable annotation layer attached 1:1 to a visit.

    The order of photo_paths is significant and is preserved by the store
    and by backup archives.
    """

    title: str | None = None
    facility_name: str | None = None
    facility_address: str | None = None
    facility_category: str | None = None
    comment: str | None = None
    label_ids: set[str] = field(default_factory=set)
    group_id: str | None = None
    member_ids: set[str] = field(default_factory=set)
    resolved_address: str | None = None
    photo_paths: list[str] = field(default_factory=list)

    def copy(self) -> VisitDetails:
        """Return an independent copy (collections are not shared)."""
        return VisitDetails(
            title=self.title,
            facility_name=self.facility_name,
            facility_address=self.facility_address,
            facility_category=self.facility_category,
            comment=self.comment,
            label_ids=set(self.label_ids),
            group_id=self.group_id,
            member_ids=set(self.member_ids),
            resolved_address=self.resolved_address,
            photo_paths=list(self.photo_paths),
        )


@dataclass
class VisitAggregate:
    """A visit together with its details."""

    id: str
    visit: Visit
    details: VisitDetails


class TaxonomyKind(Enum):
    """The three taxonomy entity kinds referenced from visit details."""

    LABEL = "label"
    GROUP = "group"
    MEMBER = "member"

    @property
    def table(self) -> str:
        """Database table holding entities of this kind."""
        return f"taxonomy_{self.value}s"


@dataclass
class Taxon:
    """
    A label, group or member.

    Only the name is mutable; it is never blank.
    """

    id: str
    name: str
    kind: TaxonomyKind = TaxonomyKind.LABEL


@dataclass
class VisitFilter:
    """
    Query parameters for fetching visits.

    All set criteria are AND-ed. The text query matches the title OR the
    resolved address.

    Attributes:
        label_id: Only visits carrying this label.
        group_id: Only visits in this group.
        member_id: Only visits with this member.
        text: Case- and accent-insensitive substring.
        date_from: Inclusive lower bound on timestamp_utc.
        date_to_exclusive: Exclusive upper bound on timestamp_utc.
    """

    label_id: str | None = None
    group_id: str | None = None
    member_id: str | None = None
    text: str | None = None
    date_from: datetime | None = None
    date_to_exclusive: datetime | None = None
