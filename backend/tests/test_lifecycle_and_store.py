from __future__ import annotations

import pytest

from fakes import make_session, run
from triage_core import InvalidSessionTransition, SessionLifecycle
from triage_core.pipeline import StepRunner
from triage_core.session_data import SessionLoader
from triage_store import ReportConflictError, StoreScopeError


def test_status_only_moves_forward(store):
    session = make_session(store, "patient-a", text_input="Toux")
    lifecycle = SessionLifecycle(store)

    submitted = lifecycle.advance_status(session["id"], "submitted")
    assert submitted["status"] == "submitted"
    assert submitted["submitted_at"] is not None
    assert lifecycle.advance_status(session["id"], "submitted")["submitted_at"] == submitted["submitted_at"]

    with pytest.raises(InvalidSessionTransition):
        lifecycle.advance_status(session["id"], "draft")

    lifecycle.advance_status(session["id"], "completed")
    with pytest.raises(InvalidSessionTransition):
        lifecycle.advance_status(session["id"], "submitted")


def test_ai_status_can_restart_after_a_finished_run(store):
    session = make_session(store, "patient-a")
    lifecycle = SessionLifecycle(store)

    with pytest.raises(InvalidSessionTransition):
        lifecycle.set_ai_status(session["id"], "completed")

    processing = lifecycle.set_ai_status(session["id"], "processing")
    assert processing["ai_processing_started_at"] is not None
    lifecycle.set_ai_status(session["id"], "failed")
    lifecycle.set_ai_status(session["id"], "processing")
    completed = lifecycle.set_ai_status(session["id"], "completed")
    assert completed["ai_processing_completed_at"] is not None
    assert lifecycle.can_move_ai("completed", "processing")
    assert not lifecycle.can_move_ai("failed", "completed")


def test_inputs_are_appended_without_duplicates(store):
    session = make_session(store, "patient-a", selected_chips=["Fièvre"], image_urls=["a.png"])

    updated = store.analyses.update_inputs(
        session_id=session["id"],
        patient_id="patient-a",
        inputs={"selected_chips": ["Fièvre", "Toux"], "voice_transcripts": "Ça a commencé lundi"},
    )
    assert updated["selected_chips"] == ["Fièvre", "Toux"]
    assert updated["voice_transcripts"] == ["Ça a commencé lundi"]
    assert updated["image_urls"] == ["a.png"]

    replaced = store.analyses.update_inputs(
        session_id=session["id"],
        patient_id="patient-a",
        inputs={"image_urls": ["b.png"]},
        append=False,
    )
    assert replaced["image_urls"] == ["b.png"]


def test_inputs_of_another_patient_cannot_be_changed(store):
    session = make_session(store, "patient-a")

    with pytest.raises(StoreScopeError):
        store.analyses.update_inputs(session_id=session["id"], patient_id="patient-b", inputs={"text_input": "x"})


def test_status_update_scoped_to_owner_touches_nothing_for_strangers(store):
    session = make_session(store, "patient-a")

    assert store.analyses.update_status(session_id=session["id"], patient_id="patient-b", status="completed") == 0
    assert store.analyses.get(session["id"])["status"] == "draft"
    with pytest.raises(ValueError):
        store.analyses.update_status(session_id=session["id"], stamps={"created_at": "2026-01-01"})


def test_second_report_insert_is_a_conflict(store):
    session = make_session(store, "patient-a")
    fields = {"overall_severity": "low", "summary": "Première"}
    store.reports.insert_report(session_id=session["id"], patient_id="patient-a", fields=fields)

    with pytest.raises(ReportConflictError):
        store.reports.insert_report(session_id=session["id"], patient_id="patient-a", fields=fields)


def test_profile_upsert_and_age(store):
    store.analyses.upsert_profile(patient_id="patient-a", profile={"date_of_birth": "1990-06-01", "allergies": ["latex"]})
    store.analyses.upsert_profile(
        patient_id="patient-a",
        profile={"date_of_birth": "1990-06-01", "gender": "M", "allergies": ["latex", " ", "arachide"]},
    )
    session = make_session(store, "patient-a")

    profile = SessionLoader(store).patient_profile(session)

    assert profile.gender == "M"
    assert profile.allergies == ("latex", "arachide")
    assert profile.age is not None and profile.age >= 35


def test_patient_overview_lists_analyses_and_timeline(store):
    first = make_session(store, "patient-a", text_input="Toux")
    make_session(store, "patient-b", text_input="Autre patient")
    store.analyses.add_timeline_event(
        patient_id="patient-a",
        event_type="ai_analysis_completed",
        event_title="Analyse IA terminée",
        event_description=None,
        related_pre_analysis_id=first["id"],
    )

    overview = store.patient_overview("patient-a")

    assert [item["id"] for item in overview["analyses"]] == [first["id"]]
    assert len(overview["timeline"]) == 1


def test_step_runner_records_outcomes():
    runner = StepRunner("analysis-1", "report_generation")

    async def scenario():
        assert await runner.run("ok", lambda: 1) == 1
        assert await runner.run("optional", lambda: 1 / 0, critical=False) is None
        with pytest.raises(ZeroDivisionError):
            await runner.run("required", lambda: 1 / 0)

    run(scenario())

    assert runner.failed_steps() == ["optional", "required"]
    assert [step["critical"] for step in runner.summary()] == [True, False, True]


def test_updating_inputs_of_a_missing_analysis_is_a_scope_error(store):
    with pytest.raises(StoreScopeError) as exc_info:
        store.analyses.update_inputs(session_id="missing-analysis", patient_id="patient-a", inputs={"text_input": "x"})

    assert exc_info.value.session_id == "missing-analysis"
    assert exc_info.value.operation == "analysis_update"


def test_rows_that_cannot_be_read_back_raise_scope_errors(store, monkeypatch):
    session = make_session(store, "patient-a")
    monkeypatch.setattr(store.reports, "get_report", lambda report_id: None)

    with pytest.raises(StoreScopeError) as exc_info:
        store.reports.insert_report(
            session_id=session["id"], patient_id="patient-a", fields={"overall_severity": "low", "summary": "x"}
        )
    assert exc_info.value.operation == "report_insert"

    monkeypatch.setattr(store.analyses, "get_profile", lambda patient_id: None)
    with pytest.raises(StoreScopeError):
        store.analyses.upsert_profile(patient_id="patient-a", profile={"gender": "F"})
