# =============================================================================
# casefile_core/offline/__init__.py
# Offline-first engine for the CaseFile field client
# =============================================================================
"""
Offline-first engine.

Architecture:
------------
    FieldSession (composition root, used by the app)
        |
        +-- VersionReconciler   form catalog -> LocalCache, invalidates old answers
        +-- AnswerStore         FormFillView <-> answers in LocalDatabase
        +-- BeneficiaryRegistry beneficiaries and assigned forms
        +-- SyncDispatcher      unsynced answers -> RemoteGateway
                |
                +-- ConnectionManager (sync on reconnect)

Usage:
------
from casefile_core.offline import build_session

session = build_session(settings)
session.download_updated_forms()
view = session.answers.build_view(form_id, beneficiary_id)
"""

from casefile_core.offline.answer_store import AnswerStore
from casefile_core.offline.beneficiary_registry import BeneficiaryRegistry
from casefile_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
)
from casefile_core.offline.field_session import FieldSession, build_session
from casefile_core.offline.local_cache import LocalCache
from casefile_core.offline.local_database import LocalDatabase
from casefile_core.offline.remote_gateway import (
    AnswerBatch,
    HttpRemoteGateway,
    RemoteGateway,
    SupabaseRemoteGateway,
    create_gateway,
)
from casefile_core.offline.sync_dispatcher import SyncDispatcher, SyncReport, SyncState
from casefile_core.offline.version_reconciler import (
    FormSyncFailure,
    ReconcileReport,
    VersionReconciler,
)

__all__ = [
    # Storage
    "LocalCache",
    "LocalDatabase",
    # Remote
    "AnswerBatch",
    "RemoteGateway",
    "HttpRemoteGateway",
    "SupabaseRemoteGateway",
    "create_gateway",
    # Services
    "VersionReconciler",
    "ReconcileReport",
    "FormSyncFailure",
    "AnswerStore",
    "BeneficiaryRegistry",
    "SyncDispatcher",
    "SyncReport",
    "SyncState",
    # Connectivity
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    # Entry point
    "FieldSession",
    "build_session",
]
