# =============================================================================
# casefile_core/offline/version_reconciler.py
# Detects stale form definitions and replaces them
# =============================================================================
"""
VersionReconciler - keeps the cached form catalog in step with the server.

For every remote summary whose version is newer than the cached one (or that
is not cached at all) the full definition is downloaded. Downloads run
concurrently and are joined; a failing form never aborts its siblings and is
reported in ReconcileReport.failed.

A form is only replaced once its new definition has been fetched and found
non-empty. Replacement deletes the Question/Answer/Note rows recorded against
older versions and installs the new definition in one unit of work, so a
failed download leaves the previous version and its answers untouched.
"""

from __future__ import annotations
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from casefile_core.errors import CaseFileError, IncorrectFormatError
from casefile_core.models.forms import FormDefinition, FormSummary
from casefile_core.models.records import EntityKind
from casefile_core.offline.local_cache import LocalCache, form_key, FORM_SUMMARIES_KEY
from casefile_core.offline.local_database import LocalDatabase
from casefile_core.offline.remote_gateway import RemoteGateway
from casefile_core.services.base_service import BaseService


@dataclass
class FormSyncFailure:
    form_id: int
    version: int
    error: CaseFileError

    @property
    def reason(self) -> str:
        return self.error.message


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation batch."""
    up_to_date: List[int] = field(default_factory=list)
    installed: List[FormSummary] = field(default_factory=list)
    failed: List[FormSyncFailure] = field(default_factory=list)
    invalidated_questions: Dict[int, int] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def fetch_count(self) -> int:
        return len(self.installed) + len(self.failed)

    @property
    def failed_form_ids(self) -> List[int]:
        return [f.form_id for f in self.failed]


class VersionReconciler(BaseService):
    """
    Compares local and remote form summaries and installs newer definitions.

    Usage:
        reconciler = VersionReconciler(cache, db, gateway)
        report = reconciler.download_updated_forms()
        if report.failed:
            ...  # those forms keep their previous version
    """

    def __init__(
        self,
        cache: LocalCache,
        store: LocalDatabase,
        gateway: RemoteGateway,
        max_workers: int = 4,
    ):
        super().__init__()
        self.cache = cache
        self.store = store
        self.gateway = gateway
        self.max_workers = max(1, max_workers)
        self._generation = 0
        self._generation_lock = threading.Lock()

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def _begin(self) -> int:
        with self._generation_lock:
            self._generation += 1
            return self._generation

    def _is_superseded(self, generation: int) -> bool:
        with self._generation_lock:
            return generation != self._generation

    def cancel(self) -> None:
        """Stop in-flight reconciliations from installing anything further."""
        with self._generation_lock:
            self._generation += 1
        self.logger.info("Reconciliation cancelled")

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def download_updated_forms(self) -> ReconcileReport:
        """
        Fetch remote summaries, then reconcile against them.

        Raises:
            NetworkError / IncorrectFormatError if the summary list itself
            cannot be fetched; nothing local is touched in that case.
        """
        self.logger.info("Downloading new form summaries")
        remote = self.gateway.fetch_form_summaries()
        return self.reconcile(remote)

    def forms_needing_update(
        self,
        remote_summaries: List[FormSummary],
        local: Optional[Dict[int, FormSummary]] = None,
    ) -> List[FormSummary]:
        """Remote summaries that are not cached or are newer than the cached version."""
        if local is None:
            local = {s.id: s for s in self.cache.get_form_summaries()}
        return [s for s in remote_summaries if s.is_newer_than(local.get(s.id))]

    def reconcile(self, remote_summaries: List[FormSummary]) -> ReconcileReport:
        generation = self._begin()
        report = ReconcileReport()

        with self.log_operation("Reconciling form versions", forms=len(remote_summaries)):
            remote = self._latest_by_id(remote_summaries)
            local = {s.id: s for s in self.cache.get_form_summaries()}
            needing_update = self.forms_needing_update(list(remote.values()), local)
            report.up_to_date = sorted(set(remote) - {s.id for s in needing_update})

            if not needing_update:
                self.logger.info("No new forms")
                self._store_summaries(generation, remote, report)
                return report

            self.logger.info(f"Downloading {len(needing_update)} new forms")
            workers = min(self.max_workers, len(needing_update))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="FormFetch") as pool:
                futures = {
                    pool.submit(self._update_form, generation, summary, report): summary
                    for summary in needing_update
                }
                for future in as_completed(futures):
                    summary = futures[future]
                    try:
                        future.result()
                    except CaseFileError as e:
                        self.logger.warning(f"Form #{summary.id} v{summary.version} not updated: {e}")
                        report.failed.append(FormSyncFailure(summary.id, summary.version, e))

            self._store_summaries(generation, remote, report)
            self.logger.info(
                f"Done downloading new forms: {len(report.installed)} installed, "
                f"{len(report.failed)} failed"
            )
        return report

    @staticmethod
    def _latest_by_id(summaries: List[FormSummary]) -> Dict[int, FormSummary]:
        latest: Dict[int, FormSummary] = {}
        for summary in summaries:
            if summary.is_newer_than(latest.get(summary.id)):
                latest[summary.id] = summary
        return latest

    def _update_form(self, generation: int, summary: FormSummary, report: ReconcileReport) -> None:
        sections = self.gateway.fetch_form_definition(summary.id)
        if not sections:
            raise IncorrectFormatError(
                f"Form #{summary.id} returned no sections",
                payload_kind="form definition",
                details={"form_id": summary.id},
            )
        definition = FormDefinition(summary.id, summary.version, tuple(sections))

        with self.cache.lock_for(form_key(summary.id)):
            if self._is_superseded(generation):
                report.cancelled = True
                self.logger.info(f"Discarding form #{summary.id} v{summary.version}: superseded")
                return

            current = self.cache.get_form_summary(summary.id)
            if current is not None and current.version >= summary.version:
                report.up_to_date.append(summary.id)
                return

            with self.store.transaction():
                superseded = self.store.query(
                    EntityKind.QUESTION,
                    {"form_id": summary.id, "form_version__lt": summary.version},
                )
                self.store.delete(superseded)
                # Cache write inside the unit of work: a failed install rolls the deletes back
                self.cache.install_form(summary, definition)

        report.invalidated_questions[summary.id] = len(superseded)
        report.installed.append(summary)
        self.logger.info(f"Downloaded new version for form #{summary.id}. New version: {summary.version}")

    def _store_summaries(
        self,
        generation: int,
        remote: Dict[int, FormSummary],
        report: ReconcileReport,
    ) -> None:
        """
        The cached summary set becomes the remote set, except that forms whose
        download failed keep their previous summary (or stay absent).
        """
        failed = set(report.failed_form_ids)
        with self.cache.lock_for(FORM_SUMMARIES_KEY):
            if self._is_superseded(generation):
                report.cancelled = True
                return
            installed = {s.id: s for s in self.cache.get_form_summaries()}
            summaries = []
            for form_id, summary in remote.items():
                if form_id in failed:
                    if form_id in installed:
                        summaries.append(installed[form_id])
                elif installed.get(form_id, summary).version > summary.version:
                    summaries.append(installed[form_id])
                else:
                    summaries.append(summary)
            if sorted(summaries, key=lambda s: s.id) != sorted(installed.values(), key=lambda s: s.id):
                self.cache.set_form_summaries(summaries)
