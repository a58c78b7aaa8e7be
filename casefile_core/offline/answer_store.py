# =============================================================================
# casefile_core/offline/answer_store.py
# Fillable form views and answer persistence
# =============================================================================
"""
AnswerStore - merges a cached form definition with the stored answers of one
beneficiary, and persists edits.

Every edit replaces the answer set of its question: all prior rows for the
(beneficiary, question) are deleted and one fresh, unsynced row is inserted
per selected option, in a single unit of work. The sync dispatcher is then
asked to push in the background; the local save does not depend on it.
"""

from __future__ import annotations
import logging
import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from casefile_core.errors import FormNotDownloadedError, FormOutdatedError, ValidationError
from casefile_core.models.forms import FormDefinition, FormSummary
from casefile_core.models.records import AnswerRecord, EntityKind, QuestionRecord
from casefile_core.models.view_models import (
    OTHER_OPTION_TEXT,
    FormFillView,
    OptionView,
    QuestionView,
)
from casefile_core.offline.local_cache import LocalCache, form_key
from casefile_core.offline.local_database import LocalDatabase
from casefile_core.services.base_service import BaseService

ViewCallback = Callable[[FormFillView], None]


class AnswerStore(BaseService):
    """
    Usage:
        store = AnswerStore(cache, db, dispatcher)
        view = store.build_view(form_id=10, beneficiary_id=4)
        view = store.apply_selection(view, question_id=101, option_index=0)
    """

    def __init__(self, cache: LocalCache, store: LocalDatabase, dispatcher=None):
        super().__init__()
        self.cache = cache
        self.store = store
        self.dispatcher = dispatcher
        self._key_locks: Dict[Tuple[int, int, int], threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def _lock_for(self, beneficiary_id: int, form_id: int, question_id: int) -> threading.Lock:
        key = (beneficiary_id, form_id, question_id)
        with self._key_locks_guard:
            if key not in self._key_locks:
                self._key_locks[key] = threading.Lock()
            return self._key_locks[key]

    # =========================================================================
    # VIEW CONSTRUCTION
    # =========================================================================

    def _load(self, form_id: int) -> Tuple[FormSummary, FormDefinition]:
        summary = self.cache.get_form_summary(form_id)
        definition = self.cache.load_form(form_id)
        if summary is None or definition is None:
            raise FormNotDownloadedError(form_id)
        return summary, definition

    def build_view(
        self,
        form_id: int,
        beneficiary_id: int,
        current_question_id: Optional[int] = None,
    ) -> FormFillView:
        """
        Build the fillable view of a form for one beneficiary.

        Args:
            form_id: Cached form to render
            beneficiary_id: Whose answers to merge in
            current_question_id: Question to position the view on

        Returns:
            FormFillView with one QuestionView per question, in definition order
        """
        summary, definition = self._load(form_id)
        version = definition.version

        answers: Dict[int, List[AnswerRecord]] = defaultdict(list)
        for answer in self.store.query(
            EntityKind.ANSWER,
            {"beneficiary_id": beneficiary_id, "form_id": form_id, "form_version": version},
            order_by="id",
        ):
            answers[answer.question_id].append(answer)

        question_records = {
            record.id: record.question_id
            for record in self.store.query(
                EntityKind.QUESTION, {"form_id": form_id, "form_version": version}
            )
        }
        noted = {
            question_records[note.question_record_id]
            for note in self.store.query(
                EntityKind.NOTE,
                {"beneficiary_id": beneficiary_id, "question_record_id": list(question_records)},
            )
        }

        questions = []
        for section, meta in definition.iter_questions():
            rows = answers.get(meta.id, [])
            by_option = {row.option_id: row for row in rows}
            if not meta.accepts_multiple and sum(row.selected for row in rows) > 1:
                self.logger.warning(
                    f"Question #{meta.id} is single choice but has {len(rows)} selected answers "
                    f"for beneficiary #{beneficiary_id}"
                )
            options = tuple(
                OptionView(
                    option_id=option.id,
                    text=option.text or OTHER_OPTION_TEXT,
                    is_free_text=option.is_free_text,
                    user_text=by_option[option.id].user_text if option.id in by_option else None,
                    is_selected=option.id in by_option and by_option[option.id].selected,
                )
                for option in meta.options
            )
            questions.append(QuestionView(
                question_id=meta.id,
                code=meta.code,
                text=meta.text,
                type=meta.type,
                section_id=section.id,
                options=options,
                is_mandatory=meta.mandatory,
                is_note_attached=meta.id in noted,
                is_saved=bool(rows),
                is_synced=bool(rows) and all(row.synced for row in rows),
            ))

        view = FormFillView(form=summary, beneficiary_id=beneficiary_id, questions=tuple(questions))
        if current_question_id is not None:
            index = view.question_index(current_question_id)
            if index is not None:
                view = replace(view, current_index=index)
        return view

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def apply_selection(
        self,
        view: FormFillView,
        question_id: int,
        option_index: int,
        on_update: Optional[ViewCallback] = None,
    ) -> FormFillView:
        """
        Select (single choice) or toggle (multiple choice) an option and save.

        Raises:
            PersistenceError: the answers could not be saved; nothing changed
            FormOutdatedError: the form was upgraded after the view was built
        """
        updated = view.question(question_id).with_selection(option_index)
        return self._save(view, updated, on_update)

    def apply_free_text(
        self,
        view: FormFillView,
        question_id: int,
        option_index: int,
        text: Optional[str],
        on_update: Optional[ViewCallback] = None,
    ) -> FormFillView:
        """Set the text of an option and select it. Blank text changes nothing."""
        question = view.question(question_id)
        updated = question.with_free_text(option_index, text)
        if updated is question:
            return view
        return self._save(view, updated, on_update)

    def _get_or_create_question_record(self, view: FormFillView, question: QuestionView) -> QuestionRecord:
        key = {
            "question_id": question.question_id,
            "form_id": view.form.id,
            "form_version": view.form.version,
        }
        existing = self.store.query(EntityKind.QUESTION, key)
        if existing:
            return existing[0]
        return self.store.insert(EntityKind.QUESTION, dict(
            key,
            section_id=question.section_id,
            question_type=question.type.value,
        ))

    def _save(
        self,
        view: FormFillView,
        question: QuestionView,
        on_update: Optional[ViewCallback],
    ) -> FormFillView:
        form = view.form
        now = datetime.now()
        lock = self._lock_for(view.beneficiary_id, form.id, question.question_id)
        with lock, self.cache.lock_for(form_key(form.id)):
            # The form may have been upgraded since the view was built
            current = self.cache.get_form_summary(form.id)
            if current is None or current.version != form.version:
                raise FormOutdatedError(form.id, form.version, current.version if current else None)

            context = dict(form=form.id, question=question.question_id, beneficiary=view.beneficiary_id)
            with self.log_operation("Saving answers", level=logging.DEBUG, **context), self.store.transaction():
                record = self._get_or_create_question_record(view, question)
                prior = self.store.query(EntityKind.ANSWER, {
                    "beneficiary_id": view.beneficiary_id,
                    "form_id": form.id,
                    "question_id": question.question_id,
                })
                self.store.delete(prior)
                for option in question.selected_options:
                    self.store.insert(EntityKind.ANSWER, {
                        "question_record_id": record.id,
                        "option_id": option.option_id,
                        "question_id": question.question_id,
                        "beneficiary_id": view.beneficiary_id,
                        "form_id": form.id,
                        "form_version": form.version,
                        "selected": True,
                        "user_text": option.user_text,
                        "is_free_text": option.is_free_text,
                        "synced": False,
                        "fill_date": now,
                    })

        saved_view = view.with_question(question.marked_saved())
        self._request_sync(saved_view, question.question_id, on_update)
        return saved_view

    def _request_sync(self, view: FormFillView, question_id: int, on_update: Optional[ViewCallback]) -> None:
        if self.dispatcher is None:
            return

        def _refresh(report, error) -> None:
            if on_update is not None:
                on_update(self.build_view(view.form_id, view.beneficiary_id, question_id))

        self.dispatcher.request_sync(on_complete=_refresh)

    # =========================================================================
    # NOTES
    # =========================================================================

    def get_note(self, view: FormFillView, question_id: int) -> Optional[str]:
        records = self.store.query(EntityKind.QUESTION, {
            "question_id": question_id,
            "form_id": view.form.id,
            "form_version": view.form.version,
        })
        if not records:
            return None
        notes = self.store.query(
            EntityKind.NOTE,
            {"question_record_id": records[0].id, "beneficiary_id": view.beneficiary_id},
            order_by="id DESC",
            limit=1,
        )
        return notes[0].body if notes else None

    def attach_note(self, view: FormFillView, question_id: int, body: Optional[str]) -> FormFillView:
        """Replace the note on a question; blank text removes it."""
        question = view.question(question_id)
        text = (body or "").strip()
        with self._lock_for(view.beneficiary_id, view.form.id, question_id):
            with self.store.transaction():
                record = self._get_or_create_question_record(view, question)
                self.store.delete(self.store.query(
                    EntityKind.NOTE,
                    {"question_record_id": record.id, "beneficiary_id": view.beneficiary_id},
                ))
                if text:
                    self.store.insert(EntityKind.NOTE, {
                        "question_record_id": record.id,
                        "beneficiary_id": view.beneficiary_id,
                        "body": text,
                    })
        return view.with_question(replace(question, is_note_attached=bool(text)))

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    def check_mandatory(self, view: FormFillView) -> None:
        """
        Raises:
            ValidationError: listing the codes of unanswered mandatory questions
        """
        missing = view.missing_mandatory
        if missing:
            codes = [q.code or str(q.question_id) for q in missing]
            raise ValidationError(
                f"{len(missing)} mandatory questions unanswered: {', '.join(codes)}",
                fields=codes,
            )
