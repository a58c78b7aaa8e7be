# =============================================================================
# casefile_core/offline/sync_dispatcher.py
# Pushes locally recorded answers to the remote system
# =============================================================================
"""
SyncDispatcher - drains unsynced Answer rows to the Remote Gateway.

Features:
- One batch per (beneficiary, form, form version); a batch is accepted whole
  or left unsynced for the next pass
- Re-entrant: a request arriving while a pass runs makes that pass scan again
  instead of starting a second, overlapping push
- Fire-and-forget entry point for callers that must not block on the network
- Background retry loop and sync-on-reconnect
"""

from __future__ import annotations
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from itertools import groupby
from typing import Any, Callable, Dict, List, Optional, Tuple

from casefile_core.errors import CaseFileError, NetworkError
from casefile_core.models.records import AnswerRecord
from casefile_core.offline.connection_manager import ConnectionState, ConnectionStatus
from casefile_core.offline.local_database import LocalDatabase
from casefile_core.offline.remote_gateway import AnswerBatch, RemoteGateway
from casefile_core.services.base_service import BaseService


@dataclass
class SyncState:
    """Current sync state."""
    is_syncing: bool = False
    last_sync: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    pending_count: int = 0
    failed_count: int = 0
    total_synced: int = 0


@dataclass
class SyncReport:
    """Outcome of one sync_unsynced_data call."""
    batches_sent: int = 0
    answers_synced: int = 0
    failed_batches: List[Tuple[Tuple[int, int, int], CaseFileError]] = field(default_factory=list)
    skipped_local_only: int = 0
    deferred: bool = False

    @property
    def success(self) -> bool:
        return not self.failed_batches

    @property
    def errors(self) -> List[CaseFileError]:
        return [error for _, error in self.failed_batches]


class SyncDispatcher(BaseService):
    """
    Usage:
        dispatcher = SyncDispatcher(db, gateway)
        report = dispatcher.sync_unsynced_data()   # blocking pass
        dispatcher.request_sync()                  # fire-and-forget
        dispatcher.start()                         # background retries
    """

    SYNC_INTERVAL = 30          # Seconds between background sync attempts
    MAX_BATCHES_PER_PASS = 50   # Batches pushed before a pass rescans

    def __init__(
        self,
        store: LocalDatabase,
        gateway: RemoteGateway,
        batch_limit: int = MAX_BATCHES_PER_PASS,
        sync_interval: int = SYNC_INTERVAL,
        connection_manager=None,
    ):
        super().__init__()
        self.store = store
        self.gateway = gateway
        self.batch_limit = max(1, batch_limit)
        self.sync_interval = sync_interval
        self._connection_manager = connection_manager
        self._state = SyncState()
        self._state_lock = threading.Lock()
        self._running = False
        self._rerun_requested = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="SyncDispatch")
        self._sync_thread: Optional[threading.Thread] = None
        self._stop_sync = threading.Event()
        self._callbacks: List[Callable[[SyncState], None]] = []

        if connection_manager is not None:
            connection_manager.register_callback(self._on_connection_change)

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state.is_syncing

    @property
    def pending_count(self) -> int:
        return self.store.get_pending_count()

    # =========================================================================
    # SYNC PASS
    # =========================================================================

    def sync_unsynced_data(self) -> SyncReport:
        """
        Push every unsynced answer. Safe to call from several threads: only
        one pass pushes at a time and later callers fold into it.
        """
        with self._state_lock:
            if self._running:
                self._rerun_requested = True
                return SyncReport(deferred=True)
            self._running = True
            self._rerun_requested = False

        report = SyncReport()
        self._state.is_syncing = True
        self._state.last_sync = datetime.now()
        self._notify_callbacks()
        try:
            with self.log_operation("Pushing unsynced answers"):
                while True:
                    more_pending = self._run_pass(report)
                    with self._state_lock:
                        if not (more_pending or self._rerun_requested):
                            self._running = False
                            break
                        self._rerun_requested = False
        except BaseException:
            with self._state_lock:
                self._running = False
            raise
        finally:
            self._state.is_syncing = False
            self._state.failed_count = len(report.failed_batches)
            self._state.total_synced += report.answers_synced
            self._state.pending_count = self.store.get_pending_count()
            if report.success:
                self._state.last_sync_success = datetime.now()
            self._notify_callbacks()

        self.logger.info(
            f"Sync complete: {report.batches_sent} batches, {report.answers_synced} answers, "
            f"{len(report.failed_batches)} failed"
        )
        return report

    def _collect_batches(self, report: SyncReport) -> List[AnswerBatch]:
        batches = []
        skipped = 0

        def owner(answer: AnswerRecord):
            return (answer.beneficiary_id, answer.form_id, answer.form_version)

        rows = sorted(self.store.get_unsynced_answers(), key=lambda a: (owner(a), a.id))
        for (beneficiary_id, form_id, form_version), group in groupby(rows, key=owner):
            answers = list(group)
            if beneficiary_id < 0:
                # Not on the server yet; pushed once a permanent id is assigned
                skipped += len(answers)
                continue
            batches.append(AnswerBatch(beneficiary_id, form_id, form_version, answers))
        # Latest scan wins; passes within one call see the same held-back rows
        report.skipped_local_only = skipped
        return batches

    def _run_pass(self, report: SyncReport) -> bool:
        """
        Push up to batch_limit batches.

        Returns:
            True when more batches are waiting beyond the limit. Batches that
            already failed during this sync wait for the next one.
        """
        failed = {key for key, _ in report.failed_batches}
        batches = [
            batch for batch in self._collect_batches(report)
            if (batch.beneficiary_id, batch.form_id, batch.form_version) not in failed
        ]
        if not batches:
            return False

        self.logger.info(f"Syncing {len(batches)} answer batches")
        for batch in batches[:self.batch_limit]:
            key = (batch.beneficiary_id, batch.form_id, batch.form_version)
            try:
                self.gateway.push_answers(batch)
            except CaseFileError as e:
                self.logger.warning(f"Answer batch {key} not synced: {e}")
                report.failed_batches.append((key, e))
                if isinstance(e, NetworkError):
                    # Remote unreachable; remaining batches wait for the next sync
                    return False
                continue

            report.batches_sent += 1
            report.answers_synced += self.store.mark_answers_synced(batch.answer_ids)

        return len(batches) > self.batch_limit

    # =========================================================================
    # ASYNC / BACKGROUND
    # =========================================================================

    def request_sync(
        self,
        on_complete: Optional[Callable[[Optional[SyncReport], Optional[BaseException]], None]] = None,
    ) -> Future:
        """
        Schedule a sync pass without blocking.

        on_complete(report, error) runs on the sync worker before the returned
        future resolves. Failures are logged; callers may ignore the future.
        """
        def _run() -> SyncReport:
            try:
                report = self.sync_unsynced_data()
            except Exception as e:
                self.logger.error(f"Background sync failed: {e}", exc_info=True)
                self._run_completion(on_complete, None, e)
                raise
            self._run_completion(on_complete, report, None)
            return report

        return self._executor.submit(_run)

    def _run_completion(self, on_complete, report: Optional[SyncReport], error: Optional[BaseException]) -> None:
        if on_complete is None:
            return
        try:
            on_complete(report, error)
        except Exception as e:
            self.logger.error(f"Error in sync completion callback: {e}")

    def start(self) -> None:
        """Start background sync thread."""
        if self._sync_thread is not None and self._sync_thread.is_alive():
            return

        self._stop_sync.clear()
        self._sync_thread = threading.Thread(
            target=self._sync_loop,
            daemon=True,
            name="SyncDispatcher",
        )
        self._sync_thread.start()
        self.logger.info("Sync dispatcher started")

    def stop(self) -> None:
        """Stop background sync thread and wait for queued passes."""
        self._stop_sync.set()
        if self._sync_thread:
            self._sync_thread.join(timeout=10)
        self._executor.shutdown(wait=True)
        self.logger.info("Sync dispatcher stopped")

    def _is_online(self) -> bool:
        return self._connection_manager is None or self._connection_manager.is_online

    def _sync_loop(self) -> None:
        while not self._stop_sync.is_set():
            if self._stop_sync.wait(timeout=self.sync_interval):
                break
            if self._is_online():
                try:
                    self.sync_unsynced_data()
                except CaseFileError as e:
                    self.logger.error(f"Sync error: {e}")

    def _on_connection_change(self, state: ConnectionState) -> None:
        if state.status == ConnectionStatus.ONLINE:
            self.logger.info("Connection restored, triggering sync")
            self.request_sync()

    # =========================================================================
    # CALLBACKS / STATUS
    # =========================================================================

    def register_callback(self, callback: Callable[[SyncState], None]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in self._callbacks:
            try:
                callback(self._state)
            except Exception as e:
                self.logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        """Get sync status for UI display."""
        return {
            "is_syncing": self._state.is_syncing,
            "last_sync": self._state.last_sync.isoformat() if self._state.last_sync else None,
            "last_success": self._state.last_sync_success.isoformat() if self._state.last_sync_success else None,
            "pending_count": self.pending_count,
            "failed_count": self._state.failed_count,
            "total_synced": self._state.total_synced,
        }
