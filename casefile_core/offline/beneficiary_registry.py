# =============================================================================
# casefile_core/offline/beneficiary_registry.py
# Beneficiaries, their assigned forms and filled-form summaries
# =============================================================================

from __future__ import annotations
from typing import Iterable, List, Optional

from casefile_core.errors import ValidationError
from casefile_core.models.beneficiary_form import BeneficiaryForm
from casefile_core.models.forms import FormSummary
from casefile_core.models.records import (
    BeneficiaryRecord,
    EntityKind,
    NEW_BENEFICIARY_ID,
)
from casefile_core.models.view_models import FilledFormSummary
from casefile_core.offline.local_cache import LocalCache
from casefile_core.offline.local_database import LocalDatabase
from casefile_core.services.base_service import BaseService


class BeneficiaryRegistry(BaseService):
    """
    Beneficiaries created on the device carry a negative placeholder id until
    the server assigns a permanent one; their answers are held back from sync
    until then.

    Usage:
        registry = BeneficiaryRegistry(cache, db, dispatcher)
        record = registry.create_beneficiary(profile_form)
        registry.assign_forms(record.id, [10, 11])
    """

    def __init__(self, cache: LocalCache, store: LocalDatabase, dispatcher=None):
        super().__init__()
        self.cache = cache
        self.store = store
        self.dispatcher = dispatcher

    # =========================================================================
    # BENEFICIARIES
    # =========================================================================

    def get(self, beneficiary_id: int) -> Optional[BeneficiaryRecord]:
        rows = self.store.query(EntityKind.BENEFICIARY, {"id": beneficiary_id})
        return rows[0] if rows else None

    def list_beneficiaries(self, user_id: Optional[int] = None) -> List[BeneficiaryRecord]:
        where = {"user_id": user_id} if user_id is not None else None
        return self.store.query(EntityKind.BENEFICIARY, where, order_by="name")

    def _next_local_id(self) -> int:
        lowest = self.store.query(
            EntityKind.BENEFICIARY, {"id__lt": 0}, order_by="id", limit=1
        )
        return lowest[0].id - 1 if lowest else NEW_BENEFICIARY_ID

    def create_beneficiary(self, form: BeneficiaryForm, user_id: Optional[int] = None) -> BeneficiaryRecord:
        """
        Validate the profile form and store a new, local-only beneficiary.

        Raises:
            ValidationError: a profile field is missing
        """
        with self.store.transaction():
            record = form.process_form(self._next_local_id(), user_id)
            created = self.store.insert(EntityKind.BENEFICIARY, record.to_dict())
        self.logger.info(f"Created local beneficiary #{created.id}")
        return created

    def update_beneficiary(self, beneficiary_id: int, form: BeneficiaryForm) -> BeneficiaryRecord:
        existing = self.get(beneficiary_id)
        if existing is None:
            raise ValidationError(f"Beneficiary #{beneficiary_id} does not exist", fields=["id"])
        record = form.process_form(beneficiary_id, existing.user_id)
        fields = record.to_dict()
        del fields["id"]
        self.store.update(EntityKind.BENEFICIARY, {"id": beneficiary_id}, fields)
        return self.get(beneficiary_id)

    def assign_permanent_id(self, local_id: int, permanent_id: int) -> BeneficiaryRecord:
        """
        Re-key a local beneficiary with its server id. Assigned forms, answers
        and notes follow through the store's cascading foreign keys.
        """
        if permanent_id < 0:
            raise ValidationError("Permanent ids are non-negative", fields=["permanent_id"])
        if self.store.update(EntityKind.BENEFICIARY, {"id": local_id}, {"id": permanent_id}) == 0:
            raise ValidationError(f"Beneficiary #{local_id} does not exist", fields=["id"])
        self.logger.info(f"Beneficiary #{local_id} is now #{permanent_id}")

        if self.dispatcher is not None:
            # Answers held back while the id was local can go out now
            self.dispatcher.request_sync()
        return self.get(permanent_id)

    # =========================================================================
    # FORM ASSIGNMENT
    # =========================================================================

    def assigned_form_ids(self, beneficiary_id: int) -> List[int]:
        rows = self.store.query(
            EntityKind.BENEFICIARY_FORM, {"beneficiary_id": beneficiary_id}, order_by="form_id"
        )
        return [row.form_id for row in rows]

    def assigned_forms(self, beneficiary_id: int) -> List[FormSummary]:
        """Cached summaries of the forms assigned to a beneficiary."""
        summaries = {s.id: s for s in self.cache.get_form_summaries()}
        return [summaries[i] for i in self.assigned_form_ids(beneficiary_id) if i in summaries]

    def assign_forms(self, beneficiary_id: int, form_ids: Iterable[int]) -> List[int]:
        current = set(self.assigned_form_ids(beneficiary_id))
        added = [form_id for form_id in dict.fromkeys(form_ids) if form_id not in current]
        with self.store.transaction():
            for form_id in added:
                self.store.insert(
                    EntityKind.BENEFICIARY_FORM,
                    {"beneficiary_id": beneficiary_id, "form_id": form_id},
                )
        return self.assigned_form_ids(beneficiary_id)

    def unassign_forms(self, beneficiary_id: int, form_ids: Iterable[int]) -> List[int]:
        rows = self.store.query(
            EntityKind.BENEFICIARY_FORM,
            {"beneficiary_id": beneficiary_id, "form_id": list(form_ids)},
        )
        self.store.delete(rows)
        return self.assigned_form_ids(beneficiary_id)

    # =========================================================================
    # FILLED FORMS
    # =========================================================================

    def filled_forms(self, beneficiary_id: int) -> List[FilledFormSummary]:
        """Assigned forms in which every question of the cached version has an answer."""
        filled = []
        for summary in self.assigned_forms(beneficiary_id):
            definition = self.cache.load_form(summary.id)
            if definition is None or definition.is_empty:
                continue
            answers = self.store.query(
                EntityKind.ANSWER,
                {"beneficiary_id": beneficiary_id, "form_id": summary.id, "form_version": definition.version},
                order_by="id",
            )
            answered = {answer.question_id for answer in answers}
            if not all(question.id in answered for question in definition.questions):
                continue
            fill_dates = [a.fill_date for a in answers if a.fill_date is not None]
            filled.append(FilledFormSummary(
                form_id=summary.id,
                name=summary.description or summary.code,
                synced=all(answer.synced for answer in answers),
                fill_date=min(fill_dates) if fill_dates else None,
            ))
        return filled
