# =============================================================================
# casefile_core/models/records.py
# Entities persisted in the durable record store
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional


class EntityKind(Enum):
    """Entity kinds understood by the record store. Values are table names."""
    BENEFICIARY = "beneficiaries"
    BENEFICIARY_FORM = "beneficiary_forms"
    QUESTION = "questions"
    ANSWER = "answers"
    NOTE = "notes"


# Placeholder id given to a beneficiary created on the device
NEW_BENEFICIARY_ID = -1


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


class _Record:
    """Row <-> dataclass helpers shared by all entities."""
    KIND: ClassVar[EntityKind]

    @classmethod
    def from_row(cls, row) -> _Record:
        keys = set(row.keys())
        values = {f.name: row[f.name] for f in fields(cls) if f.name in keys}
        return cls(**cls._coerce(values))

    @classmethod
    def _coerce(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        return values

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class BeneficiaryRecord(_Record):
    KIND: ClassVar[EntityKind] = EntityKind.BENEFICIARY

    id: int
    name: Optional[str] = None
    birth_date: Optional[date] = None
    civil_status: Optional[int] = None
    county_id: Optional[int] = None
    county: Optional[str] = None
    city_id: Optional[int] = None
    city: Optional[str] = None
    gender: Optional[int] = None
    user_id: Optional[int] = None

    @property
    def is_local_only(self) -> bool:
        """True until the server has assigned a permanent id."""
        return self.id < 0

    @property
    def age(self) -> Optional[int]:
        if self.birth_date is None:
            return None
        today = date.today()
        before_birthday = (today.month, today.day) < (self.birth_date.month, self.birth_date.day)
        return today.year - self.birth_date.year - int(before_birthday)

    @classmethod
    def _coerce(cls, values):
        values["birth_date"] = _parse_date(values.get("birth_date"))
        return values


@dataclass
class BeneficiaryFormRecord(_Record):
    KIND: ClassVar[EntityKind] = EntityKind.BENEFICIARY_FORM

    beneficiary_id: int
    form_id: int


@dataclass
class QuestionRecord(_Record):
    """Which (form, version, question) the device has interacted with."""
    KIND: ClassVar[EntityKind] = EntityKind.QUESTION

    id: int
    question_id: int
    form_id: int
    form_version: int
    section_id: Optional[int] = None
    question_type: Optional[int] = None


@dataclass
class AnswerRecord(_Record):
    """One selected option (with optional free text) for one (beneficiary, question)."""
    KIND: ClassVar[EntityKind] = EntityKind.ANSWER

    id: int
    question_record_id: int
    option_id: int
    question_id: int
    beneficiary_id: int
    form_id: int
    form_version: int
    selected: bool = True
    user_text: Optional[str] = None
    is_free_text: bool = False
    synced: bool = False
    fill_date: Optional[datetime] = None

    @classmethod
    def _coerce(cls, values):
        values["selected"] = bool(values.get("selected"))
        values["is_free_text"] = bool(values.get("is_free_text"))
        values["synced"] = bool(values.get("synced"))
        values["fill_date"] = _parse_datetime(values.get("fill_date"))
        return values

    def to_payload(self) -> Dict[str, Any]:
        """Shape pushed to the remote system."""
        return {
            "questionId": self.question_id,
            "optionId": self.option_id,
            "value": self.user_text,
            "fillDate": self.fill_date.isoformat() if self.fill_date else None,
        }


@dataclass
class NoteRecord(_Record):
    KIND: ClassVar[EntityKind] = EntityKind.NOTE

    id: int
    question_record_id: int
    beneficiary_id: int
    body: str = ""
    created_at: Optional[datetime] = None
    synced: bool = False

    @classmethod
    def _coerce(cls, values):
        values["created_at"] = _parse_datetime(values.get("created_at"))
        values["synced"] = bool(values.get("synced"))
        return values


RECORD_TYPES = {
    EntityKind.BENEFICIARY: BeneficiaryRecord,
    EntityKind.BENEFICIARY_FORM: BeneficiaryFormRecord,
    EntityKind.QUESTION: QuestionRecord,
    EntityKind.ANSWER: AnswerRecord,
    EntityKind.NOTE: NoteRecord,
}
