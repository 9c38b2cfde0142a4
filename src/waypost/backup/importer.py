"""
Importer/reconciler: applies decoded archive documents to the store.

Import order:
    1. Taxonomy (labels, groups, members), identity preserving, staged
    2. Session refresh so visit references resolve against the new taxonomy
    3. Visits in archive order, flushed every ``batch_size`` rows
    4. Photo files
    5. One VISITS_CHANGED and one TAXONOMY_CHANGED notification

A visit that fails to import is logged and counted; the run continues.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from waypost.backup.models import (
    ArchiveDocuments,
    BackupVisit,
    ImportReport,
    RestoreState,
    TaxonomyImportCounts,
    VisitImportFailure,
)
from waypost.backup.relocator import PhotoRelocator
from waypost.config.settings import DEFAULT_BATCH_SIZE, DEFAULT_REFRESH_EVERY_FAILURES
from waypost.events import TAXONOMY_CHANGED, VISITS_CHANGED
from waypost.storage.models import TaxonomyKind
from waypost.storage.visit_store import TaxonImportOutcome, VisitStore

logger = logging.getLogger(__name__)

TAXONOMY_ORDER = (TaxonomyKind.LABEL, TaxonomyKind.GROUP, TaxonomyKind.MEMBER)


@dataclass(frozen=True)
class BatchPolicy:
    """
    Flush and refresh cadence for the visit import loop.

    Attributes:
        batch_size: Rows per durable flush.
        refresh_every_failures: A session refresh follows every Nth failure.
    """

    batch_size: int = DEFAULT_BATCH_SIZE
    refresh_every_failures: int = DEFAULT_REFRESH_EVERY_FAILURES

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.refresh_every_failures < 1:
            raise ValueError("refresh_every_failures must be at least 1")

    def should_flush(self, position: int, total: int) -> bool:
        """True after the last row of a full batch and after the final row."""
        return position % self.batch_size == 0 or position == total

    def should_refresh(self, failures: int) -> bool:
        return failures > 0 and failures % self.refresh_every_failures == 0


class Reconciler:
    """
    Imports archive documents into a VisitStore.

    The caller is expected to hold the store session lock for the whole
    run; the reconciler itself only stages, flushes and refreshes.
    """

    def __init__(
        self,
        store: VisitStore,
        policy: BatchPolicy | None = None,
        relocator: PhotoRelocator | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or BatchPolicy()
        self.relocator = relocator or PhotoRelocator()

    def reconcile(
        self,
        documents: ArchiveDocuments,
        on_state: Callable[[RestoreState], None] | None = None,
    ) -> ImportReport:
        """
        Run every import phase.

        Args:
            documents: Decoded archive.
            on_state: Called when each phase begins.

        Returns:
            ImportReport with the counts of every phase.
        """
        notify = on_state or (lambda state: None)
        report = ImportReport()

        notify(RestoreState.TAXONOMY_IMPORTING)
        report.taxonomy = self.import_taxonomy(documents)

        notify(RestoreState.CONTEXT_REFRESHING)
        self.refresh_context()

        notify(RestoreState.VISIT_IMPORTING)
        self.import_visits(documents.visits, report)

        notify(RestoreState.PHOTO_RESTORING)
        report.photos = self.relocator.restore_photos(documents.root, self.store.photo_store)

        notify(RestoreState.NOTIFYING_OBSERVERS)
        self.broadcast()

        logger.info(
            f"Import finished: {report.visits_imported}/{report.visits_total} visits, "
            f"{report.visits_failed} failed, {len(report.photos.copied)} photos"
        )
        return report

    def import_taxonomy(self, documents: ArchiveDocuments) -> dict[str, TaxonomyImportCounts]:
        """
        Stage every taxonomy row, keeping archived ids.

        Blank names are skipped. Nothing is flushed here.
        """
        results: dict[str, TaxonomyImportCounts] = {}
        for kind in TAXONOMY_ORDER:
            counts = TaxonomyImportCounts()
            for taxon in documents.taxa(kind):
                if not taxon.name.strip():
                    logger.warning(f"Skipping {kind.value} {taxon.id} with empty name")
                    counts.skipped_blank += 1
                    continue

                outcome = self.store.import_taxon(kind, taxon.id, taxon.name, flush_now=False)
                if outcome is TaxonImportOutcome.CREATED:
                    counts.created += 1
                elif outcome is TaxonImportOutcome.RENAMED:
                    counts.renamed += 1
                else:
                    counts.unchanged += 1

            logger.info(
                f"Imported {counts.imported} {kind.value}(s) "
                f"({counts.created} new, {counts.renamed} renamed, "
                f"{counts.skipped_blank} skipped)"
            )
            results[kind.value] = counts
        return results

    def refresh_context(self) -> None:
        """Flush staged taxonomy and rebuild the store's in-memory views."""
        self.store.session.refresh()

    def import_visits(self, visits: list[BackupVisit], report: ImportReport) -> ImportReport:
        """
        Create every visit in order, tolerating per-row failures.

        Args:
            visits: Decoded visits.json rows.
            report: Report to update.

        Returns:
            The updated report.
        """
        session = self.store.session
        total = len(visits)
        report.visits_total = total

        for position, row in enumerate(visits, start=1):
            try:
                self.store.create(row.to_visit(), row.to_details(), flush_now=False)
                report.visits_imported += 1
            except Exception as e:
                report.failures.append(
                    VisitImportFailure(
                        visit_id=row.id,
                        title=row.title,
                        label_ids=list(row.label_ids),
                        group_id=row.group_id,
                        member_ids=list(row.member_ids),
                        error=str(e),
                    )
                )
                logger.error(
                    f"Failed to import visit {row.id} (title={row.title!r}, "
                    f"labels={row.label_ids}, group={row.group_id}, "
                    f"members={row.member_ids}): {e}"
                )
                if self.policy.should_refresh(report.visits_failed):
                    session.refresh()
                    report.failure_refreshes += 1

            if self.policy.should_flush(position, total):
                session.flush()
                report.flush_points.append(position)
                logger.info(f"Imported {position}/{total} visits")

        return report

    def broadcast(self) -> None:
        """Post the two bulk change notifications."""
        self.store.notifier.post(VISITS_CHANGED)
        self.store.notifier.post(TAXONOMY_CHANGED)
