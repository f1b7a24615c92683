from __future__ import annotations

import logging
from typing import Any

from triage_store import TriageStore
from triage_store.time_utils import to_iso, utc_now

from .errors import InvalidSessionTransition
from .session_data import SessionLoader

logger = logging.getLogger(__name__)


class SessionLifecycle:
    """Guards both status columns of a pre-analysis against regressions."""

    _STATUS_TRANSITIONS = {
        "draft": {"submitted", "completed"},
        "submitted": {"completed"},
        "completed": set(),
    }
    # Regeneration re-enters processing from a finished state; the session
    # status itself stays monotonic.
    _AI_TRANSITIONS = {
        "pending": {"processing", "failed"},
        "processing": {"completed", "failed"},
        "completed": {"processing", "failed"},
        "failed": {"processing"},
    }
    _AI_STAMPS = {
        "processing": "ai_processing_started_at",
        "completed": "ai_processing_completed_at",
    }

    def __init__(self, store: TriageStore) -> None:
        self._store = store
        self._loader = SessionLoader(store)

    def can_advance(self, current: str, next_status: str) -> bool:
        return current == next_status or next_status in self._STATUS_TRANSITIONS.get(current, set())

    def can_move_ai(self, current: str, next_status: str) -> bool:
        return current == next_status or next_status in self._AI_TRANSITIONS.get(current, set())

    def _load(self, session_id: str, operation: str) -> dict[str, Any]:
        return self._loader.load(session_id, operation=operation)

    def advance_status(self, session_id: str, next_status: str) -> dict[str, Any]:
        session = self._load(session_id, "advance_status")
        current = session["status"]
        if current == next_status:
            return session
        if not self.can_advance(current, next_status):
            raise InvalidSessionTransition(
                f"Invalid transition: {current} -> {next_status}",
                session_id=session_id,
                operation="advance_status",
            )
        stamps = {"submitted_at": to_iso(utc_now())} if next_status == "submitted" else None
        self._store.analyses.update_status(
            session_id=session_id,
            patient_id=session["patient_id"],
            status=next_status,
            stamps=stamps,
        )
        logger.info("pre-analysis %s status %s -> %s", session_id, current, next_status)
        return self._load(session_id, "advance_status")

    def set_ai_status(self, session_id: str, next_status: str) -> dict[str, Any]:
        session = self._load(session_id, "set_ai_status")
        current = session["ai_processing_status"]
        if current == next_status:
            return session
        if not self.can_move_ai(current, next_status):
            raise InvalidSessionTransition(
                f"Invalid AI processing transition: {current} -> {next_status}",
                session_id=session_id,
                operation="set_ai_status",
            )
        stamp = self._AI_STAMPS.get(next_status)
        self._store.analyses.update_status(
            session_id=session_id,
            patient_id=session["patient_id"],
            ai_processing_status=next_status,
            stamps={stamp: to_iso(utc_now())} if stamp else None,
        )
        logger.info("pre-analysis %s ai_processing_status %s -> %s", session_id, current, next_status)
        return self._load(session_id, "set_ai_status")
