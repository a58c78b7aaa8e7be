# =============================================================================
# casefile_core/models/view_models.py
# Fillable view of a form for one beneficiary
# =============================================================================
"""
Immutable view objects produced by the AnswerStore.

Views are recomputed from the cached definition plus the persisted answers;
they never hold memoized state of their own. Selection changes return new
objects so the caller can diff the previous and next view.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional, Tuple

from casefile_core.models.forms import FormSummary, QuestionType

OTHER_OPTION_TEXT = "Other"


@dataclass(frozen=True)
class OptionView:
    option_id: int
    text: str
    is_free_text: bool = False
    user_text: Optional[str] = None
    is_selected: bool = False


@dataclass(frozen=True)
class QuestionView:
    question_id: int
    code: str
    text: str
    type: QuestionType
    section_id: int
    options: Tuple[OptionView, ...]
    is_mandatory: bool = False
    is_note_attached: bool = False
    is_saved: bool = False
    is_synced: bool = False

    @property
    def accepts_multiple(self) -> bool:
        return self.type.accepts_multiple

    @property
    def selected_options(self) -> List[OptionView]:
        return [o for o in self.options if o.is_selected]

    @property
    def is_answered(self) -> bool:
        return any(o.is_selected for o in self.options)

    def _check_index(self, option_index: int) -> None:
        if not 0 <= option_index < len(self.options):
            raise IndexError(
                f"Question {self.question_id} has no option at index {option_index}"
            )

    def with_selection(self, option_index: int) -> QuestionView:
        """Single choice selects exactly this option; multiple choice toggles it."""
        self._check_index(option_index)
        if self.accepts_multiple:
            options = tuple(
                replace(o, is_selected=not o.is_selected) if i == option_index else o
                for i, o in enumerate(self.options)
            )
        else:
            options = tuple(
                replace(o, is_selected=(i == option_index))
                for i, o in enumerate(self.options)
            )
        return replace(self, options=options)

    def with_free_text(self, option_index: int, text: Optional[str]) -> QuestionView:
        """Set free text on an option. Blank text leaves the question unchanged."""
        self._check_index(option_index)
        normalized = (text or "").strip()
        if not normalized:
            return self

        options = []
        for i, option in enumerate(self.options):
            if i == option_index:
                options.append(replace(option, user_text=normalized, is_selected=True))
            elif not self.accepts_multiple:
                options.append(replace(option, is_selected=False))
            else:
                options.append(option)
        return replace(self, options=tuple(options))

    def marked_saved(self) -> QuestionView:
        """State right after a local save: saved if anything is selected, never synced."""
        return replace(self, is_saved=self.is_answered, is_synced=False)


@dataclass(frozen=True)
class FormFillView:
    form: FormSummary
    beneficiary_id: int
    questions: Tuple[QuestionView, ...]
    current_index: int = 0

    @property
    def form_id(self) -> int:
        return self.form.id

    def question_index(self, question_id: int) -> Optional[int]:
        for index, question in enumerate(self.questions):
            if question.question_id == question_id:
                return index
        return None

    def question(self, question_id: int) -> QuestionView:
        index = self.question_index(question_id)
        if index is None:
            raise KeyError(f"Question {question_id} is not part of form {self.form.id}")
        return self.questions[index]

    def with_question(self, updated: QuestionView) -> FormFillView:
        index = self.question_index(updated.question_id)
        questions = list(self.questions)
        questions[index] = updated
        return replace(self, questions=tuple(questions))

    @property
    def current_question(self) -> Optional[QuestionView]:
        if not self.questions:
            return None
        return self.questions[self.current_index]

    @property
    def missing_mandatory(self) -> List[QuestionView]:
        return [q for q in self.questions if q.is_mandatory and not q.is_answered]

    @property
    def is_complete(self) -> bool:
        return bool(self.questions) and all(q.is_saved for q in self.questions)

    @property
    def is_synced(self) -> bool:
        saved = [q for q in self.questions if q.is_saved]
        return bool(saved) and all(q.is_synced for q in saved)


@dataclass(frozen=True)
class FilledFormSummary:
    """A form whose every question has been answered for a beneficiary."""
    form_id: int
    name: str
    synced: bool
    fill_date: Optional[datetime]
