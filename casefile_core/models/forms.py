# =============================================================================
# casefile_core/models/forms.py
# Form summaries and definitions as served by the remote system
# =============================================================================
"""
Form catalog types.

A FormSummary is the lightweight (id, version) descriptor used to detect
staleness. A FormDefinition holds the ordered sections/questions/options of
exactly one (form_id, version) pair and is never mutated in place.

Both round-trip through plain dicts (the shape stored in the Local Cache and
returned by the gateways). Decoding failures raise IncorrectFormatError.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from casefile_core.errors import IncorrectFormatError


def _require(data: Dict[str, Any], key: str, kind: str) -> Any:
    if not isinstance(data, dict) or key not in data or data[key] is None:
        raise IncorrectFormatError(
            f"Missing '{key}' in {kind} payload",
            payload_kind=kind,
            field=key,
        )
    return data[key]


def _as_int(value: Any, key: str, kind: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise IncorrectFormatError(
            f"Field '{key}' of {kind} is not an integer: {value!r}",
            payload_kind=kind,
            field=key,
        )


class QuestionType(Enum):
    """Selection rules for a question. Values match the remote API."""
    MULTIPLE = 0
    SINGLE = 1
    SINGLE_WITH_TEXT = 2
    MULTIPLE_WITH_TEXT = 3

    @property
    def accepts_multiple(self) -> bool:
        return self in (QuestionType.MULTIPLE, QuestionType.MULTIPLE_WITH_TEXT)


@dataclass(frozen=True)
class FormSummary:
    """Lightweight descriptor of a form. Identity is `id`, staleness is `version`."""
    id: int
    version: int
    code: str = ""
    description: str = ""

    def is_newer_than(self, other: Optional[FormSummary]) -> bool:
        return other is None or self.version > other.version

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FormSummary:
        return cls(
            id=_as_int(_require(data, "id", "form summary"), "id", "form summary"),
            version=_as_int(_require(data, "version", "form summary"), "version", "form summary"),
            code=str(data.get("code") or ""),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "code": self.code,
            "description": self.description,
        }


@dataclass(frozen=True)
class AnswerOption:
    id: int
    text: str = ""
    is_free_text: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AnswerOption:
        return cls(
            id=_as_int(_require(data, "id", "option"), "id", "option"),
            text=str(data.get("text") or ""),
            is_free_text=bool(data.get("isFreeText", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "isFreeText": self.is_free_text}


@dataclass(frozen=True)
class QuestionMeta:
    """A question as described by the form definition (not the persisted record)."""
    id: int
    code: str
    text: str
    type: QuestionType
    mandatory: bool = False
    options: Tuple[AnswerOption, ...] = ()

    @property
    def accepts_multiple(self) -> bool:
        return self.type.accepts_multiple

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> QuestionMeta:
        raw_type = _require(data, "questionType", "question")
        try:
            question_type = QuestionType(_as_int(raw_type, "questionType", "question"))
        except ValueError:
            raise IncorrectFormatError(
                f"Unknown question type {raw_type!r}",
                payload_kind="question",
                field="questionType",
            )
        return cls(
            id=_as_int(_require(data, "id", "question"), "id", "question"),
            code=str(data.get("code") or ""),
            text=str(data.get("text") or ""),
            type=question_type,
            mandatory=bool(data.get("isMandatory", False)),
            options=tuple(AnswerOption.from_dict(o) for o in data.get("optionsToQuestions") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "text": self.text,
            "questionType": self.type.value,
            "isMandatory": self.mandatory,
            "optionsToQuestions": [o.to_dict() for o in self.options],
        }


@dataclass(frozen=True)
class Section:
    id: int
    code: str = ""
    description: str = ""
    questions: Tuple[QuestionMeta, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Section:
        return cls(
            id=_as_int(_require(data, "sectionId", "section"), "sectionId", "section"),
            code=str(data.get("code") or ""),
            description=str(data.get("description") or ""),
            questions=tuple(QuestionMeta.from_dict(q) for q in data.get("questions") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sectionId": self.id,
            "code": self.code,
            "description": self.description,
            "questions": [q.to_dict() for q in self.questions],
        }


@dataclass(frozen=True)
class FormDefinition:
    """Full ordered content of one (form_id, version)."""
    form_id: int
    version: int
    sections: Tuple[Section, ...] = field(default_factory=tuple)

    @property
    def key(self) -> Tuple[int, int]:
        return (self.form_id, self.version)

    @property
    def is_empty(self) -> bool:
        return len(self.sections) == 0

    def iter_questions(self) -> Iterator[Tuple[Section, QuestionMeta]]:
        """Yield (section, question) pairs in definition order."""
        for section in self.sections:
            for question in section.questions:
                yield section, question

    @property
    def questions(self) -> List[QuestionMeta]:
        return [q for _, q in self.iter_questions()]

    def find_question(self, question_id: int) -> Optional[Tuple[Section, QuestionMeta]]:
        for section, question in self.iter_questions():
            if question.id == question_id:
                return section, question
        return None

    @classmethod
    def from_sections(cls, form_id: int, version: int, sections: List[Dict[str, Any]]) -> FormDefinition:
        if not isinstance(sections, list):
            raise IncorrectFormatError(
                f"Form {form_id} sections payload is not a list",
                payload_kind="form definition",
            )
        return cls(
            form_id=form_id,
            version=version,
            sections=tuple(Section.from_dict(s) for s in sections),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FormDefinition:
        return cls.from_sections(
            _as_int(_require(data, "formId", "form definition"), "formId", "form definition"),
            _as_int(_require(data, "version", "form definition"), "version", "form definition"),
            data.get("sections") or [],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formId": self.form_id,
            "version": self.version,
            "sections": [s.to_dict() for s in self.sections],
        }
