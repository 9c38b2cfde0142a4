"""
Data models for backup archives and backup/restore results.

Archive layout (one ZIP file):
    manifest.json       # BackupManifest
    visits.json         # [BackupVisit]  one flattened row per visit
    labels.json         # [BackupTaxon]
    groups.json         # [BackupTaxon]
    members.json        # [BackupTaxon]
    photos/             # optional, files named by their photo path value
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from waypost.storage.models import (
    Integrity,
    Taxon,
    TaxonomyKind,
    Visit,
    VisitAggregate,
    VisitDetails,
)
from waypost.storage.photo_store import PhotoStore


@dataclass
class BackupManifest:
    """Archive metadata header."""

    version: str
    app_version: str
    backup_date: str
    visit_count: int
    label_count: int
    group_count: int
    member_count: int
    photo_count: int

    def to_dict(self) -> dict[str, Any]:
        """Convert manifest to its JSON document form."""
        return {
            "version": self.version,
            "appVersion": self.app_version,
            "backupDate": self.backup_date,
            "visitCount": self.visit_count,
            "labelCount": self.label_count,
            "groupCount": self.group_count,
            "memberCount": self.member_count,
            "photoCount": self.photo_count,
        }


@dataclass
class BackupVisit:
    """
    One visits.json row: Visit + VisitDetails + Integrity, flattened.

    label_ids and member_ids are sets in the store; they are lists here so
    the document is stable (sorted) when written.
    """

    id: str
    timestamp_utc: datetime
    latitude: float
    longitude: float
    integrity_algo: str
    integrity_signature_base64: str
    integrity_public_key_base64: str
    integrity_payload_hash_hex: str
    integrity_created_at_utc: datetime
    horizontal_accuracy: float | None = None
    is_simulated_by_software: bool | None = None
    is_produced_by_accessory: bool | None = None
    title: str | None = None
    facility_name: str | None = None
    facility_address: str | None = None
    facility_category: str | None = None
    comment: str | None = None
    label_ids: list[str] = field(default_factory=list)
    group_id: str | None = None
    member_ids: list[str] = field(default_factory=list)
    resolved_address: str | None = None
    photo_paths: list[str] = field(default_factory=list)

    @classmethod
    def from_aggregate(cls, aggregate: VisitAggregate) -> BackupVisit:
        visit = aggregate.visit
        details = aggregate.details
        return cls(
            id=visit.id,
            timestamp_utc=visit.timestamp_utc,
            latitude=visit.latitude,
            longitude=visit.longitude,
            horizontal_accuracy=visit.horizontal_accuracy,
            is_simulated_by_software=visit.is_simulated_by_software,
            is_produced_by_accessory=visit.is_produced_by_accessory,
            integrity_algo=visit.integrity.algorithm,
            integrity_signature_base64=visit.integrity.signature_base64,
            integrity_public_key_base64=visit.integrity.public_key_base64,
            integrity_payload_hash_hex=visit.integrity.payload_hash_hex,
            integrity_created_at_utc=visit.integrity.created_at_utc,
            title=details.title,
            facility_name=details.facility_name,
            facility_address=details.facility_address,
            facility_category=details.facility_category,
            comment=details.comment,
            label_ids=sorted(details.label_ids),
            group_id=details.group_id,
            member_ids=sorted(details.member_ids),
            resolved_address=details.resolved_address,
            photo_paths=list(details.photo_paths),
        )

    def to_visit(self) -> Visit:
        """Rebuild the immutable visit; the integrity fields are copied as-is."""
        return Visit(
            id=self.id,
            timestamp_utc=self.timestamp_utc,
            latitude=self.latitude,
            longitude=self.longitude,
            horizontal_accuracy=self.horizontal_accuracy,
            is_simulated_by_software=self.is_simulated_by_software,
            is_produced_by_accessory=self.is_produced_by_accessory,
            integrity=Integrity(
                algorithm=self.integrity_algo,
                signature_base64=self.integrity_signature_base64,
                public_key_base64=self.integrity_public_key_base64,
                payload_hash_hex=self.integrity_payload_hash_hex,
                created_at_utc=self.integrity_created_at_utc,
            ),
        )

    def to_details(self) -> VisitDetails:
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
class BackupTaxon:
    """One labels/groups/members.json row."""

    id: str
    name: str

    @classmethod
    def from_taxon(cls, taxon: Taxon) -> BackupTaxon:
        return cls(id=taxon.id, name=taxon.name)


@dataclass
class BackupSnapshot:
    """Everything one export writes, read from the store up front."""

    visits: list[BackupVisit]
    labels: list[BackupTaxon]
    groups: list[BackupTaxon]
    members: list[BackupTaxon]
    photo_store: PhotoStore

    def referenced_photo_paths(self) -> list[str]:
        """Photo paths referenced by the exported visits, in visit order."""
        return [path for visit in self.visits for path in visit.photo_paths]


@dataclass
class ArchiveDocuments:
    """A validated, decoded archive and the directory it was extracted to."""

    root: Path
    manifest: BackupManifest
    visits: list[BackupVisit]
    labels: list[BackupTaxon]
    groups: list[BackupTaxon]
    members: list[BackupTaxon]

    def taxa(self, kind: TaxonomyKind) -> list[BackupTaxon]:
        return {
            TaxonomyKind.LABEL: self.labels,
            TaxonomyKind.GROUP: self.groups,
            TaxonomyKind.MEMBER: self.members,
        }[kind]


class RestoreState(Enum):
    """Stages of a restore run, in order."""

    IDLE = "idle"
    EXTRACTING = "extracting"
    ROOT_LOCATING = "root_locating"
    MANIFEST_VALIDATING = "manifest_validating"
    DECODING = "decoding"
    TAXONOMY_IMPORTING = "taxonomy_importing"
    CONTEXT_REFRESHING = "context_refreshing"
    VISIT_IMPORTING = "visit_importing"
    PHOTO_RESTORING = "photo_restoring"
    NOTIFYING_OBSERVERS = "notifying_observers"
    DONE = "done"
    FAILED = "failed"

    @property
    def mutates_store(self) -> bool:
        """True for the stages that write to the store."""
        return self in _MUTATING_STATES


_MUTATING_STATES = frozenset(
    {
        RestoreState.TAXONOMY_IMPORTING,
        RestoreState.CONTEXT_REFRESHING,
        RestoreState.VISIT_IMPORTING,
        RestoreState.PHOTO_RESTORING,
    }
)


@dataclass
class TaxonomyImportCounts:
    """Outcome of importing one taxonomy document."""

    created: int = 0
    renamed: int = 0
    unchanged: int = 0
    skipped_blank: int = 0

    @property
    def imported(self) -> int:
        return self.created + self.renamed + self.unchanged


@dataclass
class VisitImportFailure:
    """Diagnostic context for one visit that could not be imported."""

    visit_id: str
    title: str | None
    label_ids: list[str]
    group_id: str | None
    member_ids: list[str]
    error: str


@dataclass
class PhotoTransferReport:
    """Files copied by the relocator, and files that could not be copied."""

    copied: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


@dataclass
class ImportReport:
    """
    Outcome of a reconcile run.

    Attributes:
        taxonomy: Counts per kind ("label", "group", "member").
        visits_total: Rows in visits.json.
        visits_imported: Rows created.
        failures: One entry per row that failed.
        flush_points: Cumulative row positions at which the batch was committed.
        failure_refreshes: Refreshes triggered by the failure cadence.
        photos: Photo files restored from the archive.
    """

    taxonomy: dict[str, TaxonomyImportCounts] = field(default_factory=dict)
    visits_total: int = 0
    visits_imported: int = 0
    failures: list[VisitImportFailure] = field(default_factory=list)
    flush_points: list[int] = field(default_factory=list)
    failure_refreshes: int = 0
    photos: PhotoTransferReport = field(default_factory=PhotoTransferReport)

    @property
    def visits_failed(self) -> int:
        return len(self.failures)


@dataclass
class BackupResult:
    """Result of a backup operation."""

    success: bool
    filename: str | None = None
    path: Path | None = None
    size_bytes: int = 0
    visit_count: int = 0
    manifest: BackupManifest | None = None
    missing_photos: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    success: bool
    visits_imported: int = 0
    visits_failed: int = 0
    photos_restored: int = 0
    photos_failed: int = 0
    manifest: BackupManifest | None = None
    report: ImportReport | None = None
    final_state: RestoreState = RestoreState.IDLE
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["final_state"] = self.final_state.value
        return data
