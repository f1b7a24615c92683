from __future__ import annotations

import logging
from typing import Any, Protocol

from triage_store import ReportConflictError, TriageStore

from .context_builder import build_unified_context, format_image_analyses, patient_answers
from .errors import ReportGenerationError, ReportPersistenceError, TriageError
from .lifecycle import SessionLifecycle
from .models import ModelCompletion, ReportDraft
from .pipeline import StepRunner
from .prompts import build_report_messages
from .report_schema import enforce_emergency_escalation, parse_report_payload
from .session_data import SessionLoader, raw_inputs, store_scope

logger = logging.getLogger(__name__)


class CompletionModel(Protocol):
    async def complete(self, messages: list[dict[str, Any]], **kwargs: Any) -> ModelCompletion: ...


class TextExtractor(Protocol):
    async def extract_all(self, refs: list[str]) -> list[str]: ...


class ImageSource(Protocol):
    async def image_parts(self, refs: list[str]) -> list[dict[str, Any]]: ...

    async def describe_parts(self, parts: list[dict[str, Any]]) -> list[str]: ...


def _patient_authored_text(session: dict[str, Any], answers: str) -> str:
    parts = [session.get("text_input") or ""]
    parts.extend(session.get("voice_transcripts") or [])
    parts.extend(session.get("selected_chips") or [])
    parts.append(answers)
    return "\n".join(part for part in parts if part)


class ReportGenerator:
    """Builds, validates and stores the one AI report of a pre-analysis."""

    def __init__(
        self,
        store: TriageStore,
        model: CompletionModel,
        extractor: TextExtractor,
        images: ImageSource,
        lifecycle: SessionLifecycle | None = None,
    ) -> None:
        self._store = store
        self._loader = SessionLoader(store)
        self._model = model
        self._extractor = extractor
        self._images = images
        self._lifecycle = lifecycle or SessionLifecycle(store)

    async def _documents(self, session: dict[str, Any]) -> list[str]:
        refs = list(session.get("document_urls") or [])
        if not refs:
            return []
        try:
            return await self._extractor.extract_all(refs)
        except Exception as exc:
            logger.warning("document batch failed for pre-analysis %s: %s", session["id"], exc)
            return [f"[Erreur d'extraction pour {len(refs)} document(s)]"]

    def _replace_existing(self, existing: dict[str, Any], session: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
        reports = self._store.reports
        session_id = session["id"]
        patient_id = session["patient_id"]
        reports.delete_hypotheses(existing["id"])
        if reports.update_report(report_id=existing["id"], patient_id=patient_id, fields=fields) > 0:
            updated = reports.get_report(existing["id"])
            if updated is None:
                raise ReportPersistenceError(
                    "Updated report disappeared before it could be read back.",
                    session_id=session_id,
                    operation="persist_report",
                )
            return updated
        logger.warning("report %s update matched no rows, replacing it", existing["id"])
        if (
            reports.delete_report(report_id=existing["id"], patient_id=patient_id) == 0
            and reports.find_by_session(session_id) is not None
        ):
            raise ReportPersistenceError(
                "Existing report could be neither updated nor deleted.",
                session_id=session_id,
                operation="persist_report",
            )
        return reports.insert_report(session_id=session_id, patient_id=patient_id, fields=fields)

    def _persist(self, session: dict[str, Any], draft: ReportDraft) -> dict[str, Any]:
        session_id = session["id"]
        fields = draft.report_fields()
        with store_scope(session_id, "persist_report"):
            existing = self._store.reports.find_by_session(session_id)
            if existing is not None:
                return self._replace_existing(existing, session, fields)
            try:
                return self._store.reports.insert_report(
                    session_id=session_id,
                    patient_id=session["patient_id"],
                    fields=fields,
                )
            except ReportConflictError:
                logger.info("concurrent generation won the insert for pre-analysis %s, updating its row", session_id)
                winner = self._store.reports.find_by_session(session_id)
                if winner is None:
                    raise ReportPersistenceError(
                        "Report uniqueness conflict without a visible winner.",
                        session_id=session_id,
                        operation="persist_report",
                    ) from None
                return self._replace_existing(winner, session, fields)

    def _replace_hypotheses(self, report_id: str, hypotheses: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self._store.reports.delete_hypotheses(report_id)
        if not hypotheses:
            return []
        return self._store.reports.insert_hypotheses(report_id, hypotheses)

    def _complete(self, session_id: str) -> None:
        self._lifecycle.set_ai_status(session_id, "completed")
        self._lifecycle.advance_status(session_id, "completed")

    def _timeline(self, session: dict[str, Any], report: dict[str, Any]) -> dict[str, Any]:
        primary = report.get("primary_diagnosis") or "non déterminée"
        return self._store.analyses.add_timeline_event(
            patient_id=session["patient_id"],
            event_type="ai_analysis_completed",
            event_title="Analyse IA terminée",
            event_description=f"Hypothèse principale : {primary}",
            status="completed",
            related_pre_analysis_id=session["id"],
            related_ai_report_id=report["id"],
        )

    def _mark_failed(self, session_id: str) -> None:
        try:
            self._lifecycle.set_ai_status(session_id, "failed")
        except TriageError as exc:
            logger.error("could not mark pre-analysis %s as failed: %s", session_id, exc)

    async def generate(self, session_id: str) -> dict[str, Any]:
        runner = StepRunner(session_id, "report_generation")
        session_loaded = False
        try:
            session = await runner.run("load_session", lambda: self._loader.load(session_id, operation="report_load"))
            session_loaded = True
            await runner.run("mark_processing", lambda: self._lifecycle.set_ai_status(session_id, "processing"))
            turns = await runner.run("load_chat", lambda: self._loader.turns(session_id, operation="report_chat"))
            answers = patient_answers(turns)

            image_refs = list(session.get("image_urls") or [])
            descriptions: list[str] = []
            image_parts: list[dict[str, Any]] = []
            if image_refs:
                # Each image is downloaded once; descriptions reuse the fetched parts.
                image_parts = await runner.run(
                    "attach_images", lambda: self._images.image_parts(image_refs), critical=False
                ) or []
            if image_parts:
                descriptions = await runner.run(
                    "describe_images", lambda: self._images.describe_parts(image_parts), critical=False
                ) or []

            documents = await runner.run("extract_documents", lambda: self._documents(session))
            profile = self._loader.patient_profile(session)
            context = build_unified_context(
                raw_inputs(session, turns=turns, document_contents=documents, profile=profile)
            )
            combined = context.combined_text_block
            if descriptions:
                combined = f"{combined}\n{format_image_analyses(descriptions)}\n"

            completion = await runner.run(
                "model_call",
                lambda: self._model.complete(
                    build_report_messages(combined, answers, image_parts),
                    purpose="report",
                    max_tokens=3000,
                    temperature=0.3,
                    json_mode=not image_parts,
                ),
            )
            draft = await runner.run("parse_report", lambda: parse_report_payload(completion))
            draft = enforce_emergency_escalation(draft, _patient_authored_text(session, answers))
            report = await runner.run("persist_report", lambda: self._persist(session, draft))
        except TriageError:
            if session_loaded:
                self._mark_failed(session_id)
            raise
        except Exception as exc:
            if session_loaded:
                self._mark_failed(session_id)
            raise ReportGenerationError(
                f"Report generation failed: {exc}", session_id=session_id, operation="report_generation"
            ) from exc

        await runner.run("replace_hypotheses", lambda: self._replace_hypotheses(report["id"], draft.hypotheses), critical=False)
        await runner.run("mark_completed", lambda: self._complete(session_id), critical=False)
        await runner.run("timeline_event", lambda: self._timeline(session, report), critical=False)

        logger.info(
            "report %s stored for pre-analysis %s (severity=%s, escalated=%s, skipped=%s)",
            report["id"],
            session_id,
            draft.overall_severity,
            draft.emergency_escalated,
            runner.failed_steps(),
        )
        stored = self._store.reports.load_with_hypotheses(session_id) or report
        stored["generation_steps"] = runner.summary()
        return stored
