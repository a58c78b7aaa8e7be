# =============================================================================
# casefile_core/offline/field_session.py
# Field Session - single entry point wiring the offline engine together
# =============================================================================
"""
FieldSession - the API the Streamlit app talks to.

Every collaborator is passed in explicitly; build_session() does the wiring
from Settings for the running app, while tests assemble a session from a
temporary store, a temporary cache and a fake gateway.

Usage:
------
from casefile_core.offline import build_session

session = build_session(Settings.load())
result = session.download_updated_forms()
view = session.answers.build_view(form_id=10, beneficiary_id=4)
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

import pandas as pd

from casefile_core.config import Settings
from casefile_core.models.beneficiary_form import CityRef, CountyRef
from casefile_core.models.records import EntityKind
from casefile_core.offline.answer_store import AnswerStore
from casefile_core.offline.beneficiary_registry import BeneficiaryRegistry
from casefile_core.offline.connection_manager import ConnectionManager
from casefile_core.offline.local_cache import LocalCache, COUNTIES_KEY, cities_key
from casefile_core.offline.local_database import LocalDatabase
from casefile_core.offline.remote_gateway import RemoteGateway, create_gateway
from casefile_core.offline.sync_dispatcher import SyncDispatcher
from casefile_core.offline.version_reconciler import VersionReconciler
from casefile_core.services.base_service import BaseService, ServiceResult


class FieldSession(BaseService):
    """
    Owns the cache, the record store, the gateway and the services built on
    top of them for one running client.
    """

    def __init__(
        self,
        cache: LocalCache,
        store: LocalDatabase,
        gateway: RemoteGateway,
        connection_manager: Optional[ConnectionManager] = None,
        sync_batch_size: int = SyncDispatcher.MAX_BATCHES_PER_PASS,
        sync_interval: int = SyncDispatcher.SYNC_INTERVAL,
        max_fetch_workers: int = 4,
    ):
        super().__init__()
        self.cache = cache
        self.store = store
        self.gateway = gateway
        self.connection_manager = connection_manager

        self.store.initialize()
        self.dispatcher = SyncDispatcher(
            store,
            gateway,
            batch_limit=sync_batch_size,
            sync_interval=sync_interval,
            connection_manager=connection_manager,
        )
        self.reconciler = VersionReconciler(cache, store, gateway, max_workers=max_fetch_workers)
        self.answers = AnswerStore(cache, store, self.dispatcher)
        self.beneficiaries = BeneficiaryRegistry(cache, store, self.dispatcher)
        self._started = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start connectivity monitoring and the background sync loop."""
        if self._started:
            return
        if self.connection_manager is not None:
            self.connection_manager.initialize()
        self.dispatcher.start()
        self._started = True
        self.logger.info("Field session started")

    def close(self) -> None:
        self.reconciler.cancel()
        self.dispatcher.stop()
        if self.connection_manager is not None:
            self.connection_manager.stop_monitoring()
        self.store.close()
        self._started = False

    @property
    def is_online(self) -> bool:
        return self.connection_manager is None or self.connection_manager.is_online

    # =========================================================================
    # FORMS AND SYNC
    # =========================================================================

    def download_updated_forms(self) -> ServiceResult:
        """
        Pull the form catalog and install newer definitions.

        Returns:
            ServiceResult whose data is the ReconcileReport. A failure to fetch
            the summary list is returned as a failed result; per-form failures
            are listed in the report, in metadata["failed_forms"] and as warnings.
        """
        result = self.safe_execute("Downloading updated forms", self.reconciler.download_updated_forms)
        if result.success:
            report = result.data
            result.metadata = {
                "installed": [s.id for s in report.installed],
                "failed_forms": {f.form_id: f.reason for f in report.failed},
            }
            result.warnings = [
                f"Form #{f.form_id} kept its previous version: {f.reason}" for f in report.failed
            ]
        return result

    def sync_now(self) -> ServiceResult:
        """Push unsynced answers now, blocking until the pass is done."""
        if not self.is_online:
            self.logger.warning("Cannot sync: offline")
            return ServiceResult.fail("Device is offline", error_code="OFFLINE")

        result = self.safe_execute("Syncing answers", self.dispatcher.sync_unsynced_data)
        if result.success and not result.data.success:
            first = result.data.errors[0]
            return ServiceResult(
                success=False,
                data=result.data,
                error=first.message,
                error_code=first.code,
                metadata={"failed_batches": len(result.data.failed_batches)},
            )
        return result

    # =========================================================================
    # REFERENCE LISTS
    # =========================================================================

    def fetch_counties(self, refresh: bool = False) -> List[CountyRef]:
        """Counties from the cache, downloading them when missing or on refresh."""
        with self.cache.lock_for(COUNTIES_KEY):
            cached = None if refresh else self.cache.get_counties()
            if cached is not None:
                return cached
            counties = self.gateway.fetch_counties()
            self.cache.set_counties(counties)
            return counties

    def fetch_cities(self, county_id: int, refresh: bool = False) -> List[CityRef]:
        with self.cache.lock_for(cities_key(county_id)):
            cached = None if refresh else self.cache.get_cities(county_id)
            if cached is not None:
                return cached
            cities = self.gateway.fetch_cities(county_id)
            self.cache.set_cities(cities, county_id)
            return cities

    # =========================================================================
    # STATUS
    # =========================================================================

    def answers_dataframe(self, beneficiary_id: Optional[int] = None) -> pd.DataFrame:
        where = {"beneficiary_id": beneficiary_id} if beneficiary_id is not None else None
        return self.store.to_dataframe(EntityKind.ANSWER, where)

    def get_status(self) -> Dict[str, Any]:
        """Status information for UI display."""
        return {
            "connection": self.connection_manager.get_status_display() if self.connection_manager else None,
            "sync": self.dispatcher.get_status_display(),
            "is_online": self.is_online,
            "forms": len(self.cache.get_form_summaries()),
        }


def build_session(
    settings: Settings,
    gateway: Optional[RemoteGateway] = None,
    monitor_connection: bool = True,
) -> FieldSession:
    """
    Wire a FieldSession from settings.

    Args:
        settings: Loaded Settings (validated here when no gateway is given)
        gateway: Use this gateway instead of building one from settings
        monitor_connection: Attach a ConnectionManager for sync-on-reconnect
    """
    if gateway is None:
        settings.validate()
        gateway = create_gateway(settings)
    connection = ConnectionManager(settings.remote_url) if monitor_connection else None
    return FieldSession(
        cache=LocalCache(settings.cache_dir),
        store=LocalDatabase(settings.db_path),
        gateway=gateway,
        connection_manager=connection,
        sync_batch_size=settings.sync_batch_size,
        sync_interval=settings.sync_interval,
        max_fetch_workers=settings.max_fetch_workers,
    )
