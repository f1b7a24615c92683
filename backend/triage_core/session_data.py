from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from typing import Any, Iterator

from triage_store import TriageStore
from triage_store import IsolationViolation as StoreIsolationViolation
from triage_store import ReportConflictError, StoreScopeError
from triage_store.time_utils import parse_date

from .errors import IsolationViolation, ReportPersistenceError, SessionNotFound
from .models import PatientProfile, RawMedicalInputs


@contextmanager
def store_scope(session_id: str, operation: str) -> Iterator[None]:
    """Re-raise store-level scope failures as pipeline errors."""
    try:
        yield
    except StoreIsolationViolation as exc:
        raise IsolationViolation(str(exc), session_id=session_id, operation=operation) from exc
    except ReportConflictError as exc:
        raise ReportPersistenceError(str(exc), session_id=session_id, operation=operation) from exc
    except StoreScopeError as exc:
        raise SessionNotFound(str(exc), session_id=session_id, operation=operation) from exc


def age_from_birth_date(date_of_birth: str | None, today: date | None = None) -> int | None:
    born = parse_date(date_of_birth)
    if born is None:
        return None
    today = today or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age if age >= 0 else None


class SessionLoader:
    def __init__(self, store: TriageStore) -> None:
        self._store = store

    def load(self, session_id: str, *, operation: str = "session_load") -> dict[str, Any]:
        with store_scope(session_id, operation):
            session = self._store.analyses.get(session_id)
        if session is None:
            raise SessionNotFound("Pre-analysis not found.", session_id=session_id, operation=operation)
        if session.get("id") != session_id:
            raise IsolationViolation(
                "Loaded pre-analysis does not match the requested id.",
                session_id=session_id,
                operation=operation,
            )
        return session

    def load_owned(self, session_id: str, patient_id: str, *, operation: str = "session_load") -> dict[str, Any]:
        session = self.load(session_id, operation=operation)
        if session["patient_id"] != patient_id:
            # Someone else's analysis is reported as absent.
            raise SessionNotFound("Pre-analysis not found.", session_id=session_id, operation=operation)
        return session

    def turns(self, session_id: str, *, operation: str = "chat_load") -> list[dict[str, Any]]:
        with store_scope(session_id, operation):
            turns = self._store.conversation.load_all(session_id)
        if any(turn.get("pre_analysis_id") != session_id for turn in turns):
            raise IsolationViolation(
                "Chat history contains turns from another pre-analysis.",
                session_id=session_id,
                operation=operation,
            )
        return turns

    def patient_profile(self, session: dict[str, Any], today: date | None = None) -> PatientProfile:
        stored = self._store.analyses.get_profile(session["patient_id"])
        if not stored:
            return PatientProfile()
        return PatientProfile(
            age=age_from_birth_date(stored.get("date_of_birth"), today),
            gender=stored.get("gender") or None,
            blood_group=stored.get("blood_group") or None,
            allergies=tuple(stored.get("allergies") or ()),
            medical_history=stored.get("medical_history") or None,
        )


def raw_inputs(
    session: dict[str, Any],
    *,
    turns: list[dict[str, Any]],
    document_contents: list[str],
    profile: PatientProfile,
) -> RawMedicalInputs:
    return RawMedicalInputs(
        text_input=session.get("text_input"),
        voice_transcripts=session.get("voice_transcripts"),
        selected_chips=session.get("selected_chips"),
        image_urls=session.get("image_urls"),
        document_urls=session.get("document_urls"),
        document_contents=document_contents,
        chat_turns=turns,
        patient_profile=profile,
    )
