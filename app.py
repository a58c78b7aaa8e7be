# =============================================================================
# app.py: CaseFile field client
# Beneficiary list, form filling and sync status.
# =============================================================================
from __future__ import annotations

from datetime import date
from typing import Optional

import streamlit as st

from casefile_core.config import Settings
from casefile_core.errors import (
    CaseFileError,
    ErrorContext,
    FormOutdatedError,
    handle_error,
    safe_execute,
)
from casefile_core.logging import setup_logging
from casefile_core.models import BeneficiaryForm, CivilStatus, FormFillView, Gender
from casefile_core.models.beneficiary_form import (
    BirthDateField,
    CivilStatusField,
    GenderField,
    NameField,
)
from casefile_core.offline import FieldSession, build_session

st.set_page_config(
    page_title="CaseFile - Field Client",
    page_icon="📋",
    layout="wide",
)


# =============================================================================
# SESSION
# =============================================================================
@st.cache_resource
def get_session() -> FieldSession:
    """One engine per server process, shared by every browser tab."""
    settings = Settings.load()
    setup_logging(level=settings.log_level_value, log_dir=settings.log_dir)
    session = build_session(settings)
    session.start()
    return session


def init_state() -> None:
    for k, v in {
        "beneficiary_id": None,
        "form_view": None,
        "show_new_beneficiary": False,
    }.items():
        st.session_state.setdefault(k, v)


# =============================================================================
# SIDEBAR
# =============================================================================
def render_sidebar(session: FieldSession) -> None:
    status = session.get_status()
    sync = status["sync"]
    with st.sidebar:
        st.markdown("### 📡 Status")
        st.metric("Connection", "Online" if status["is_online"] else "Offline")
        st.metric("Unsynced answers", sync["pending_count"])
        if sync["last_success"]:
            st.caption(f"Last successful sync: {sync['last_success']}")

        if st.button("🔄 Sync now", use_container_width=True):
            result = session.sync_now()
            if result:
                st.success(f"Synced {result.data.answers_synced} answers")
            else:
                st.warning(result.error)

        if st.button("⬇️ Download new forms", use_container_width=True):
            result = session.download_updated_forms()
            if not result:
                st.error(result.error)
            else:
                installed = result.metadata["installed"]
                st.success(f"{len(installed)} forms updated" if installed else "No new forms")
                for warning in result.warnings:
                    st.warning(warning)
                st.session_state.form_view = None


# =============================================================================
# BENEFICIARIES
# =============================================================================
def render_new_beneficiary(session: FieldSession) -> None:
    st.markdown("#### New beneficiary")
    name = st.text_input("Name")
    birth_date = st.date_input("Birth date", value=None, max_value=date.today())
    civil_status = st.selectbox("Civil status", list(CivilStatus), format_func=lambda c: c.name.replace("_", " ").title())
    gender = st.selectbox("Gender", list(Gender), format_func=lambda g: g.name.title())

    cities = []
    counties = safe_execute(session.fetch_counties, default=[], error_message="Counties could not be loaded")
    county = st.selectbox("County", counties, index=None, format_func=lambda c: c.name)
    if county is not None:
        cities = safe_execute(session.fetch_cities, county.id, default=[], error_message="Cities could not be loaded")
    city = st.selectbox("City", cities, index=None, format_func=lambda c: c.name)

    if st.button("Save beneficiary", type="primary"):
        created = None
        with ErrorContext("Creating beneficiary"):
            form = BeneficiaryForm(
                name=NameField(name or None),
                birth_date=BirthDateField(birth_date),
                civil_status=CivilStatusField(civil_status),
                gender=GenderField(gender),
            ).with_county(county).with_city(city)
            created = session.beneficiaries.create_beneficiary(form)
        if created is not None:
            st.session_state.beneficiary_id = created.id
            st.session_state.show_new_beneficiary = False
            st.rerun()


def render_beneficiaries(session: FieldSession) -> Optional[int]:
    beneficiaries = session.beneficiaries.list_beneficiaries()
    col1, col2 = st.columns([4, 1])
    with col1:
        ids = [b.id for b in beneficiaries]
        labels = {b.id: f"{b.name} ({'local' if b.is_local_only else b.id})" for b in beneficiaries}
        index = ids.index(st.session_state.beneficiary_id) if st.session_state.beneficiary_id in ids else None
        selected = st.selectbox("Beneficiary", ids, index=index, format_func=labels.get)
    with col2:
        if st.button("➕ New", use_container_width=True):
            st.session_state.show_new_beneficiary = True

    if st.session_state.show_new_beneficiary:
        render_new_beneficiary(session)

    if selected != st.session_state.beneficiary_id:
        st.session_state.beneficiary_id = selected
        st.session_state.form_view = None
    return selected


# =============================================================================
# FORM FILLING
# =============================================================================
def save_answer(action, view: FormFillView, *args) -> FormFillView:
    """Run an answer edit; a form upgraded underneath the page reloads it."""
    with ErrorContext("Saving answer") as ctx:
        return action(view, *args)
    if isinstance(ctx.error, FormOutdatedError):
        st.session_state.form_view = None
        st.rerun()
    return view


def render_question(session: FieldSession, view: FormFillView, index: int) -> FormFillView:
    question = view.questions[index]
    badge = "✅ synced" if question.is_synced else ("💾 saved" if question.is_saved else "")
    st.markdown(f"**{question.code} {question.text}**{' *' if question.is_mandatory else ''}  {badge}")

    if question.accepts_multiple:
        for option_index, option in enumerate(question.options):
            checked = st.checkbox(option.text, value=option.is_selected, key=f"q{question.question_id}_o{option.option_id}")
            if checked != option.is_selected:
                view = save_answer(session.answers.apply_selection, view, question.question_id, option_index)
    else:
        current = next((i for i, o in enumerate(question.options) if o.is_selected), None)
        choice = st.radio(
            question.text, range(len(question.options)), index=current,
            format_func=lambda i: question.options[i].text,
            key=f"q{question.question_id}", label_visibility="collapsed",
        )
        if choice is not None and choice != current:
            view = save_answer(session.answers.apply_selection, view, question.question_id, choice)

    question = view.question(question.question_id)
    for option_index, option in enumerate(question.options):
        if option.is_free_text and option.is_selected:
            text = st.text_input("Specify", value=option.user_text or "", key=f"q{question.question_id}_o{option.option_id}_text")
            if text.strip() and text.strip() != (option.user_text or ""):
                view = save_answer(session.answers.apply_free_text, view, question.question_id, option_index, text)
    return view


def render_form(session: FieldSession, beneficiary_id: int) -> None:
    forms = session.beneficiaries.assigned_forms(beneficiary_id)
    available = session.cache.get_form_summaries()
    assigned_ids = [f.id for f in forms]

    with st.expander("Assigned forms"):
        chosen = st.multiselect(
            "Forms", [f.id for f in available], default=assigned_ids,
            format_func=lambda i: next((f.description or f.code for f in available if f.id == i), str(i)),
        )
        if set(chosen) != set(assigned_ids):
            session.beneficiaries.unassign_forms(beneficiary_id, set(assigned_ids) - set(chosen))
            session.beneficiaries.assign_forms(beneficiary_id, chosen)
            st.rerun()

    if not forms:
        st.info("No forms assigned to this beneficiary.")
        return

    form = st.selectbox("Form", forms, format_func=lambda f: f"{f.description or f.code} (v{f.version})")
    view = st.session_state.form_view
    if view is None or view.form != form or view.beneficiary_id != beneficiary_id:
        view = safe_execute(session.answers.build_view, form.id, beneficiary_id)
        if view is None:
            return

    for index in range(len(view.questions)):
        view = render_question(session, view, index)
        st.divider()
    st.session_state.form_view = view

    if st.button("Finish form", type="primary"):
        with ErrorContext("Checking mandatory questions", success_message="Form complete"):
            session.answers.check_mandatory(view)

    filled = session.beneficiaries.filled_forms(beneficiary_id)
    if filled:
        st.markdown("### Filled forms")
        st.dataframe(
            [{"form": f.name, "synced": f.synced, "filled": f.fill_date} for f in filled],
            use_container_width=True,
        )


# =============================================================================
# PAGE
# =============================================================================
init_state()
try:
    field_session = get_session()
except CaseFileError as e:
    handle_error(e)
    st.stop()

render_sidebar(field_session)
st.title("📋 CaseFile")
beneficiary = render_beneficiaries(field_session)
if beneficiary is not None:
    render_form(field_session, beneficiary)
