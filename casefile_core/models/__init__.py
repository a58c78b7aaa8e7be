# =============================================================================
# casefile_core/models/__init__.py
# Form catalog, persisted entities and view models
# =============================================================================

from .forms import (
    AnswerOption,
    FormDefinition,
    FormSummary,
    QuestionMeta,
    QuestionType,
    Section,
)
from .records import (
    AnswerRecord,
    BeneficiaryFormRecord,
    BeneficiaryRecord,
    EntityKind,
    NEW_BENEFICIARY_ID,
    NoteRecord,
    QuestionRecord,
)
from .view_models import FilledFormSummary, FormFillView, OptionView, QuestionView
from .beneficiary_form import (
    BeneficiaryForm,
    CityRef,
    CivilStatus,
    CountyRef,
    Gender,
)

__all__ = [
    "AnswerOption",
    "FormDefinition",
    "FormSummary",
    "QuestionMeta",
    "QuestionType",
    "Section",
    "AnswerRecord",
    "BeneficiaryFormRecord",
    "BeneficiaryRecord",
    "EntityKind",
    "NEW_BENEFICIARY_ID",
    "NoteRecord",
    "QuestionRecord",
    "FilledFormSummary",
    "FormFillView",
    "OptionView",
    "QuestionView",
    "BeneficiaryForm",
    "CityRef",
    "CivilStatus",
    "CountyRef",
    "Gender",
]
