# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import threading
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from casefile_core.errors import NetworkError
from casefile_core.models.beneficiary_form import CityRef, CountyRef
from casefile_core.models.forms import (
    AnswerOption,
    FormSummary,
    QuestionMeta,
    QuestionType,
    Section,
)
from casefile_core.models.records import EntityKind
from casefile_core.offline.answer_store import AnswerStore
from casefile_core.offline.beneficiary_registry import BeneficiaryRegistry
from casefile_core.offline.local_cache import LocalCache
from casefile_core.offline.local_database import LocalDatabase
from casefile_core.offline.remote_gateway import AnswerBatch, RemoteGateway
from casefile_core.offline.sync_dispatcher import SyncDispatcher
from casefile_core.offline.version_reconciler import VersionReconciler


# =============================================================================
# FAKE REMOTE GATEWAY
# =============================================================================

class FakeGateway(RemoteGateway):
    """
    Scriptable in-memory gateway.

    - summaries / definitions: what the "server" currently publishes
    - failing_forms: form ids whose definition fetch raises NetworkError
    - fail_push: when True every push raises NetworkError
    """

    def __init__(self):
        self.summaries: List[FormSummary] = []
        self.definitions: Dict[int, List[Section]] = {}
        self.failing_forms = set()
        self.fail_push = False
        self.pushed: List[AnswerBatch] = []
        self.definition_fetches: List[int] = []
        self.counties: List[CountyRef] = [CountyRef(1, "Alba", "AB"), CountyRef(2, "Cluj", "CJ")]
        self.cities: Dict[int, List[CityRef]] = {1: [CityRef(10, "Blaj")], 2: [CityRef(20, "Dej")]}
        self.county_fetches = 0
        self._lock = threading.Lock()

    def publish(self, form_id: int, version: int, sections: List[Section], code: str = "") -> FormSummary:
        summary = FormSummary(id=form_id, version=version, code=code or f"F{form_id}",
                              description=f"Form {form_id}")
        self.summaries = [s for s in self.summaries if s.id != form_id] + [summary]
        self.definitions[form_id] = sections
        return summary

    def fetch_form_summaries(self) -> List[FormSummary]:
        return list(self.summaries)

    def fetch_form_definition(self, form_id: int) -> List[Section]:
        with self._lock:
            self.definition_fetches.append(form_id)
        if form_id in self.failing_forms:
            raise NetworkError(f"Form {form_id} unavailable", endpoint=f"v1/form/{form_id}")
        return list(self.definitions.get(form_id, []))

    def push_answers(self, batch: AnswerBatch) -> None:
        if self.fail_push:
            raise NetworkError("Remote unreachable", endpoint="v1/answers")
        with self._lock:
            self.pushed.append(batch)

    def fetch_counties(self) -> List[CountyRef]:
        self.county_fetches += 1
        return list(self.counties)

    def fetch_cities(self, county_id: int) -> List[CityRef]:
        return list(self.cities.get(county_id, []))


# =============================================================================
# FORM DEFINITION BUILDERS
# =============================================================================

def make_question(
    question_id: int,
    question_type: QuestionType = QuestionType.SINGLE,
    options: Optional[List[str]] = None,
    mandatory: bool = False,
    free_text_last: bool = False,
) -> QuestionMeta:
    texts = options or ["A", "B", "C"]
    answer_options = tuple(
        AnswerOption(
            id=question_id * 10 + i,
            text=text,
            is_free_text=free_text_last and i == len(texts) - 1,
        )
        for i, text in enumerate(texts)
    )
    return QuestionMeta(
        id=question_id,
        code=f"Q{question_id}",
        text=f"Question {question_id}",
        type=question_type,
        mandatory=mandatory,
        options=answer_options,
    )


def make_section(section_id: int, *questions: QuestionMeta) -> Section:
    return Section(id=section_id, code=f"S{section_id}", description=f"Section {section_id}",
                   questions=tuple(questions))


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def sample_sections():
    """One section: a single-choice, a multiple-choice and a single-with-text question."""
    return [
        make_section(
            1,
            make_question(101, QuestionType.SINGLE, mandatory=True),
            make_question(102, QuestionType.MULTIPLE),
            make_question(103, QuestionType.SINGLE_WITH_TEXT, ["Yes", "No", ""], free_text_last=True),
        )
    ]


# =============================================================================
# STORAGE FIXTURES
# =============================================================================

@pytest.fixture
def local_db(tmp_path):
    db = LocalDatabase(tmp_path / "casefile.db")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def local_cache(tmp_path):
    return LocalCache(tmp_path / "cache")


@pytest.fixture
def beneficiary(local_db):
    """A beneficiary already known to the server."""
    return local_db.insert(EntityKind.BENEFICIARY, {"id": 4, "name": "Ana Pop", "user_id": 1})


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def reconciler(local_cache, local_db, fake_gateway):
    return VersionReconciler(local_cache, local_db, fake_gateway, max_workers=4)


@pytest.fixture
def dispatcher(local_db, fake_gateway):
    dispatcher = SyncDispatcher(local_db, fake_gateway, sync_interval=3600)
    yield dispatcher
    dispatcher.stop()


@pytest.fixture
def answer_store(local_cache, local_db):
    """AnswerStore without a dispatcher: sync is driven explicitly in tests."""
    return AnswerStore(local_cache, local_db)


@pytest.fixture
def registry(local_cache, local_db):
    return BeneficiaryRegistry(local_cache, local_db)


@pytest.fixture
def installed_form(fake_gateway, reconciler, sample_sections):
    """Form 10 v1 published and installed locally."""
    summary = fake_gateway.publish(10, 1, sample_sections)
    reconciler.download_updated_forms()
    return summary


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit():
    """Mock Streamlit for testing"""
    import sys

    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.secrets = {}
    mock_st.cache_data = lambda f: f
    mock_st.cache_resource = lambda f: f

    original_st = sys.modules.get('streamlit')
    sys.modules['streamlit'] = mock_st

    yield mock_st

    if original_st:
        sys.modules['streamlit'] = original_st
    else:
        sys.modules.pop('streamlit', None)


@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    mock_client.table.return_value.select.return_value.execute.return_value.data = []
    return mock_client
