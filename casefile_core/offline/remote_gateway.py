# =============================================================================
# casefile_core/offline/remote_gateway.py
# Remote Gateway: form catalog download and answer upload
# =============================================================================
"""
Gateways are single-attempt request/response wrappers. Retry policy belongs
to the callers (VersionReconciler, SyncDispatcher).

Errors:
- NetworkError for transport failures and non-2xx responses
- IncorrectFormatError for payloads that cannot be decoded
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import requests
from supabase import create_client

from casefile_core.config import Settings
from casefile_core.errors import ConfigurationError, IncorrectFormatError, NetworkError
from casefile_core.models.beneficiary_form import CityRef, CountyRef
from casefile_core.models.forms import FormSummary, Section
from casefile_core.models.records import AnswerRecord

logger = logging.getLogger(__name__)


@dataclass
class AnswerBatch:
    """Answers of one beneficiary for one form version, pushed in one call."""
    beneficiary_id: int
    form_id: int
    form_version: int
    answers: List[AnswerRecord] = field(default_factory=list)

    @property
    def answer_ids(self) -> List[int]:
        return [a.id for a in self.answers]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "beneficiaryId": self.beneficiary_id,
            "formId": self.form_id,
            "formVersion": self.form_version,
            "answers": [a.to_payload() for a in self.answers],
        }


def _decode_summaries(raw: Any) -> List[FormSummary]:
    if isinstance(raw, dict):
        raw = raw.get("formVersions")
    if not isinstance(raw, list):
        raise IncorrectFormatError("Form summaries payload is not a list", payload_kind="form summaries")
    return [FormSummary.from_dict(item) for item in raw]


def _decode_sections(form_id: int, raw: Any) -> List[Section]:
    if not isinstance(raw, list):
        raise IncorrectFormatError(
            f"Form {form_id} definition payload is not a list",
            payload_kind="form definition",
        )
    return [Section.from_dict(item) for item in raw]


class RemoteGateway(ABC):
    """Contract the engine consumes from the remote system."""

    @abstractmethod
    def fetch_form_summaries(self) -> List[FormSummary]:
        """Return the current summary of every form available to the user."""

    @abstractmethod
    def fetch_form_definition(self, form_id: int) -> List[Section]:
        """Return the sections of the latest version of a form."""

    @abstractmethod
    def push_answers(self, batch: AnswerBatch) -> None:
        """Upload one batch. Either the whole batch is accepted or an error is raised."""

    @abstractmethod
    def fetch_counties(self) -> List[CountyRef]:
        """Reference list of counties."""

    @abstractmethod
    def fetch_cities(self, county_id: int) -> List[CityRef]:
        """Reference list of cities in one county."""


# =============================================================================
# HTTP GATEWAY
# =============================================================================

class HttpRemoteGateway(RemoteGateway):
    """
    Gateway for the CaseFile REST API.

    Usage:
        gateway = HttpRemoteGateway("https://casefile.example.org/api", token="...")
        summaries = gateway.fetch_form_summaries()
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Optional[Dict] = None,
    ) -> Any:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise NetworkError(
                f"{method} {endpoint} failed: {e}",
                endpoint=endpoint,
                status_code=e.response.status_code if e.response is not None else None,
            ) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} {endpoint} failed: {e}", endpoint=endpoint) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise IncorrectFormatError(
                f"{method} {endpoint} returned invalid JSON",
                payload_kind=endpoint,
            ) from e

    def fetch_form_summaries(self) -> List[FormSummary]:
        return _decode_summaries(self._make_request("v1/form"))

    def fetch_form_definition(self, form_id: int) -> List[Section]:
        return _decode_sections(form_id, self._make_request(f"v1/form/{form_id}"))

    def push_answers(self, batch: AnswerBatch) -> None:
        self._make_request("v1/answers", method="POST", data=batch.to_payload())

    def fetch_counties(self) -> List[CountyRef]:
        raw = self._make_request("v1/county")
        if not isinstance(raw, list):
            raise IncorrectFormatError("Counties payload is not a list", payload_kind="counties")
        return [CountyRef.from_dict(item) for item in raw]

    def fetch_cities(self, county_id: int) -> List[CityRef]:
        raw = self._make_request(f"v1/county/{county_id}/cities")
        if not isinstance(raw, list):
            raise IncorrectFormatError("Cities payload is not a list", payload_kind="cities")
        return [CityRef.from_dict(item) for item in raw]


# =============================================================================
# SUPABASE GATEWAY
# =============================================================================

class SupabaseRemoteGateway(RemoteGateway):
    """
    Gateway backed by Supabase tables.

    Tables:
        form_summaries(id, version, code, description)
        form_definitions(form_id, version, sections jsonb)
        answers(beneficiary_id, form_id, form_version, question_id, option_id, value, fill_date)
        counties(id, name, code), cities(id, county_id, name)
    """

    ANSWER_CONFLICT_KEY = "beneficiary_id,form_id,question_id,option_id"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_credentials(cls, url: str, key: str) -> SupabaseRemoteGateway:
        return cls(create_client(url, key))

    def _select(self, table: str, build=None) -> List[Dict[str, Any]]:
        try:
            query = self.client.table(table).select("*")
            if build is not None:
                query = build(query)
            response = query.execute()
        except Exception as e:
            raise NetworkError(f"Supabase select on {table} failed: {e}", endpoint=table) from e
        return response.data or []

    def fetch_form_summaries(self) -> List[FormSummary]:
        return _decode_summaries(self._select("form_summaries", lambda q: q.order("id")))

    def fetch_form_definition(self, form_id: int) -> List[Section]:
        rows = self._select(
            "form_definitions",
            lambda q: q.eq("form_id", form_id).order("version", desc=True).limit(1),
        )
        if not rows:
            return []
        return _decode_sections(form_id, rows[0].get("sections"))

    def push_answers(self, batch: AnswerBatch) -> None:
        rows = [
            {
                "beneficiary_id": batch.beneficiary_id,
                "form_id": batch.form_id,
                "form_version": batch.form_version,
                "question_id": answer.question_id,
                "option_id": answer.option_id,
                "value": answer.user_text,
                "fill_date": answer.fill_date.isoformat() if answer.fill_date else None,
            }
            for answer in batch.answers
        ]
        question_ids = sorted({answer.question_id for answer in batch.answers})
        try:
            # Answer sets replace earlier ones per question; a failed upsert is
            # retried by the dispatcher since the local rows stay unsynced
            (
                self.client.table("answers")
                .delete()
                .eq("beneficiary_id", batch.beneficiary_id)
                .eq("form_id", batch.form_id)
                .in_("question_id", question_ids)
                .execute()
            )
            self.client.table("answers").upsert(rows, on_conflict=self.ANSWER_CONFLICT_KEY).execute()
        except Exception as e:
            raise NetworkError(f"Supabase upsert on answers failed: {e}", endpoint="answers") from e

    def fetch_counties(self) -> List[CountyRef]:
        return [CountyRef.from_dict(row) for row in self._select("counties", lambda q: q.order("name"))]

    def fetch_cities(self, county_id: int) -> List[CityRef]:
        rows = self._select("cities", lambda q: q.eq("county_id", county_id).order("name"))
        return [CityRef.from_dict(row) for row in rows]


GATEWAYS = {
    "http": lambda s: HttpRemoteGateway(s.api_base_url, token=s.api_token, timeout=s.request_timeout),
    "supabase": lambda s: SupabaseRemoteGateway.from_credentials(s.supabase_url, s.supabase_key),
}


def create_gateway(settings: Settings) -> RemoteGateway:
    """Build the gateway selected by settings.gateway_provider."""
    factory = GATEWAYS.get(settings.gateway_provider)
    if factory is None:
        raise ConfigurationError(
            f"Unknown gateway provider '{settings.gateway_provider}'",
            config_key="gateway_provider",
        )
    settings.validate()
    logger.info(f"Using {settings.gateway_provider} remote gateway")
    return factory(settings)
