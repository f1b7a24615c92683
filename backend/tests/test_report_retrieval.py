from __future__ import annotations

import pytest

from fakes import FakeExtractor, FakeImages, FakeModel, make_session, report_json, run
from triage_core import (
    IsolationViolation,
    ModelTransientError,
    ReportGenerationFailed,
    ReportGenerator,
    ReportRetrieval,
    SessionLifecycle,
)
from triage_core.models import LOOKUP_FAILED, LOOKUP_FOUND, LOOKUP_NOT_FOUND, LOOKUP_PENDING
from triage_core.report_retrieval import backoff_delay


class RecordingSleep:
    def __init__(self, on_sleep=None) -> None:
        self.delays: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(len(self.delays))


class CountingGenerator:
    def __init__(self, inner=None, error: Exception | None = None) -> None:
        self.inner = inner
        self.error = error
        self.calls = 0

    async def generate(self, session_id: str):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return await self.inner.generate(session_id)


def _retrieval(store, settings, generator, sleep=None) -> ReportRetrieval:
    return ReportRetrieval(store, generator, settings, sleep=sleep or RecordingSleep())


def _real_generator(store, reply=None) -> ReportGenerator:
    return ReportGenerator(store, FakeModel(report=reply or report_json()), FakeExtractor(), FakeImages())


def test_backoff_doubles_up_to_the_cap():
    assert [backoff_delay(attempt, 2.0, 10.0) for attempt in range(5)] == [2.0, 4.0, 8.0, 10.0, 10.0]


def test_stuck_processing_gives_up_after_max_retries(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    SessionLifecycle(store).set_ai_status(session["id"], "processing")
    generator = CountingGenerator(error=AssertionError("must not generate while processing"))
    sleep = RecordingSleep()

    lookup = run(_retrieval(store, settings, generator, sleep).get_or_generate(session["id"], max_retries=3))

    assert lookup.status == LOOKUP_NOT_FOUND
    assert lookup.attempts == 3
    assert sleep.delays == [2.0, 4.0]
    assert generator.calls == 0


def test_existing_report_is_returned_without_generating(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    run(_real_generator(store).generate(session["id"]))
    generator = CountingGenerator(error=AssertionError("already generated"))

    lookup = run(_retrieval(store, settings, generator).get_or_generate(session["id"]))

    assert lookup.found
    assert lookup.attempts == 1
    assert lookup.report["hypotheses"]
    assert generator.calls == 0


def test_pending_analysis_is_generated_on_demand(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    generator = CountingGenerator(_real_generator(store))

    lookup = run(_retrieval(store, settings, generator).get_or_generate(session["id"]))

    assert lookup.status == LOOKUP_FOUND
    assert lookup.report["pre_analysis_id"] == session["id"]
    assert generator.calls == 1


def test_completed_analysis_without_report_is_regenerated(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    lifecycle = SessionLifecycle(store)
    lifecycle.set_ai_status(session["id"], "processing")
    lifecycle.set_ai_status(session["id"], "completed")
    generator = CountingGenerator(_real_generator(store))

    lookup = run(_retrieval(store, settings, generator).get_or_generate(session["id"]))

    assert lookup.found
    assert generator.calls == 1


def test_processing_then_finished_elsewhere_is_picked_up(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    lifecycle = SessionLifecycle(store)
    lifecycle.set_ai_status(session["id"], "processing")

    def finish_elsewhere(_count):
        store.reports.insert_report(
            session_id=session["id"],
            patient_id="patient-a",
            fields={"overall_severity": "low", "summary": "Généré par une autre requête"},
        )

    sleep = RecordingSleep(on_sleep=finish_elsewhere)
    generator = CountingGenerator(error=AssertionError("must not generate"))

    lookup = run(_retrieval(store, settings, generator, sleep).get_or_generate(session["id"]))

    assert lookup.found
    assert lookup.attempts == 2
    assert lookup.report["summary"] == "Généré par une autre requête"
    assert sleep.delays == [2.0]


def test_failed_analysis_is_reported_as_failed(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    SessionLifecycle(store).set_ai_status(session["id"], "failed")
    retrieval = _retrieval(store, settings, CountingGenerator(error=AssertionError("no retry")))

    lookup = run(retrieval.get_or_generate(session["id"]))

    assert lookup.status == LOOKUP_FAILED
    assert lookup.as_envelope()["error"]
    with pytest.raises(ReportGenerationFailed):
        run(retrieval.get_or_raise(session["id"]))


def test_generation_error_becomes_a_failed_lookup(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    generator = CountingGenerator(_real_generator(store, reply="pas de JSON"))

    lookup = run(_retrieval(store, settings, generator).get_or_generate(session["id"]))

    assert lookup.status == LOOKUP_FAILED
    assert "JSON" in lookup.error
    assert store.analyses.get(session["id"])["ai_processing_status"] == "failed"


def test_isolation_violation_is_raised_not_wrapped(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    generator = CountingGenerator(error=IsolationViolation("crossed", session_id=session["id"]))

    with pytest.raises(IsolationViolation):
        run(_retrieval(store, settings, generator).get_or_generate(session["id"]))


def test_peek_never_generates(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    retrieval = _retrieval(store, settings, CountingGenerator(error=AssertionError("peek only")))

    assert retrieval.peek(session["id"]).status == LOOKUP_PENDING

    SessionLifecycle(store).set_ai_status(session["id"], "failed")
    assert retrieval.peek(session["id"]).status == LOOKUP_FAILED


def test_get_or_raise_returns_none_when_exhausted(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    SessionLifecycle(store).set_ai_status(session["id"], "processing")
    retrieval = _retrieval(store, settings, CountingGenerator(error=AssertionError("processing")))

    assert run(retrieval.get_or_raise(session["id"], max_retries=2)) is None


def test_transient_generation_failure_is_retried_with_backoff(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    model = FakeModel(report=[ModelTransientError("provider timeout"), report_json()])
    generator = ReportGenerator(store, model, FakeExtractor(), FakeImages())
    sleep = RecordingSleep()

    lookup = run(_retrieval(store, settings, generator, sleep).get_or_generate(session["id"], max_retries=3))

    assert lookup.status == LOOKUP_FOUND
    assert lookup.attempts == 2
    assert sleep.delays == [2.0]
    assert len(model.calls_for("report")) == 2
    assert store.analyses.get(session["id"])["ai_processing_status"] == "completed"


def test_transient_failures_stop_at_the_retry_bound(store, settings):
    session = make_session(store, "patient-a", text_input="Toux")
    generator = CountingGenerator(_real_generator(store, ModelTransientError("provider timeout")))
    sleep = RecordingSleep()

    lookup = run(_retrieval(store, settings, generator, sleep).get_or_generate(session["id"], max_retries=2))

    assert lookup.status == LOOKUP_FAILED
    assert lookup.attempts == 2
    assert sleep.delays == [2.0]
    assert generator.calls == 2
