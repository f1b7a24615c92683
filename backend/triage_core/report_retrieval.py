from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from triage_store import TriageStore

from .errors import IsolationViolation, ReportGenerationFailed, TriageError
from .models import LOOKUP_FAILED, LOOKUP_FOUND, LOOKUP_NOT_FOUND, LOOKUP_PENDING, ReportLookup
from .session_data import SessionLoader, store_scope
from .settings import TriageSettings

logger = logging.getLogger(__name__)


class Generator(Protocol):
    async def generate(self, session_id: str) -> dict[str, Any]: ...


def backoff_delay(attempt: int, base_delay: float, cap: float) -> float:
    return min(base_delay * (2 ** attempt), cap)


class ReportRetrieval:
    """Serves a report, generating it on demand and polling while another run is busy."""

    def __init__(
        self,
        store: TriageStore,
        generator: Generator,
        settings: TriageSettings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._loader = SessionLoader(store)
        self._generator = generator
        self._settings = settings
        self._sleep = sleep

    def _stored_report(self, session_id: str) -> dict[str, Any] | None:
        with store_scope(session_id, "report_lookup"):
            return self._store.reports.load_with_hypotheses(session_id)

    def peek(self, session_id: str) -> ReportLookup:
        report = self._stored_report(session_id)
        if report is not None:
            return ReportLookup(status=LOOKUP_FOUND, report=report)
        session = self._loader.load(session_id, operation="report_lookup")
        if session["ai_processing_status"] == "failed":
            return ReportLookup(status=LOOKUP_FAILED, error="Report generation failed for this analysis.")
        return ReportLookup(status=LOOKUP_PENDING)

    async def get_or_generate(
        self,
        session_id: str,
        max_retries: int | None = None,
        base_delay: float | None = None,
        cap: float | None = None,
    ) -> ReportLookup:
        max_retries = self._settings.report_max_retries if max_retries is None else max_retries
        base_delay = self._settings.report_base_delay_seconds if base_delay is None else base_delay
        cap = self._settings.report_max_delay_seconds if cap is None else cap

        retry_generation = False
        for attempt in range(max_retries):
            report = self._stored_report(session_id)
            if report is not None:
                return ReportLookup(status=LOOKUP_FOUND, report=report, attempts=attempt + 1)

            session = self._loader.load(session_id, operation="report_lookup")
            ai_status = session["ai_processing_status"]
            # A transient failure of our own generation left the status at failed.
            if ai_status == "failed" and not retry_generation:
                return ReportLookup(
                    status=LOOKUP_FAILED,
                    attempts=attempt + 1,
                    error="Report generation failed for this analysis.",
                )
            if ai_status == "processing":
                if attempt < max_retries - 1:
                    delay = backoff_delay(attempt, base_delay, cap)
                    logger.info("report for %s still processing, retrying in %.1fs", session_id, delay)
                    await self._sleep(delay)
                continue

            # pending, or a finished analysis whose report row is missing
            try:
                report = await self._generator.generate(session_id)
            except IsolationViolation:
                raise
            except TriageError as exc:
                if getattr(exc, "retryable", False) and attempt < max_retries - 1:
                    delay = backoff_delay(attempt, base_delay, cap)
                    logger.warning("report generation for %s hit %s, retrying in %.1fs", session_id, exc, delay)
                    await self._sleep(delay)
                    retry_generation = True
                    continue
                return ReportLookup(status=LOOKUP_FAILED, attempts=attempt + 1, error=str(exc))
            return ReportLookup(status=LOOKUP_FOUND, report=report, attempts=attempt + 1)

        logger.warning("report for %s not available after %d attempts", session_id, max_retries)
        return ReportLookup(status=LOOKUP_NOT_FOUND, attempts=max_retries)

    async def get_or_raise(self, session_id: str, **kwargs: Any) -> dict[str, Any] | None:
        lookup = await self.get_or_generate(session_id, **kwargs)
        if lookup.status == LOOKUP_FAILED:
            raise ReportGenerationFailed(
                lookup.error or "Report generation failed.", session_id=session_id, operation="report_lookup"
            )
        return lookup.report
