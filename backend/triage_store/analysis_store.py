from __future__ import annotations

import json
import uuid
from typing import Any

from .database import SQLiteTriageDB
from .isolation_guard import IsolationGuard, IsolationViolation, StoreScopeError
from .time_utils import to_iso, utc_now

_LIST_FIELDS = {
    "voice_transcripts": "voice_transcripts_json",
    "selected_chips": "selected_chips_json",
    "image_urls": "image_urls_json",
    "document_urls": "document_urls_json",
}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _clean_list(values: Any) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    return [str(value).strip() for value in values if value is not None and str(value).strip()]


def _analysis_from_row(row: Any) -> dict[str, Any]:
    data = dict(row)
    for field, column in _LIST_FIELDS.items():
        data[field] = json.loads(data.pop(column) or "[]")
    return data


class AnalysisStore:
    def __init__(self, db: SQLiteTriageDB, guard: IsolationGuard) -> None:
        self._db = db
        self._guard = guard

    def create(self, *, patient_id: str, inputs: dict[str, Any] | None = None) -> dict[str, Any]:
        inputs = inputs or {}
        analysis_id = uuid.uuid4().hex
        now = to_iso(utc_now())
        text_input = (inputs.get("text_input") or "").strip() or None
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO pre_analyses (
                  id, patient_id, status, text_input, voice_transcripts_json, selected_chips_json,
                  image_urls_json, document_urls_json, ai_processing_status, created_at, updated_at
                )
                VALUES (?, ?, 'draft', ?, ?, ?, ?, ?, 'pending', ?, ?)
                """,
                (
                    analysis_id,
                    patient_id,
                    text_input,
                    _json_dumps(_clean_list(inputs.get("voice_transcripts"))),
                    _json_dumps(_clean_list(inputs.get("selected_chips"))),
                    _json_dumps(_clean_list(inputs.get("image_urls"))),
                    _json_dumps(_clean_list(inputs.get("document_urls"))),
                    now,
                    now,
                ),
            )
        created = self.get(analysis_id)
        if created is None:
            raise StoreScopeError(
                "Created pre-analysis could not be read back.",
                session_id=analysis_id,
                operation="analysis_create",
            )
        return created

    def get(self, session_id: str) -> dict[str, Any] | None:
        session_id = self._guard.ensure_session_scope(session_id, operation="analysis_get")
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM pre_analyses WHERE id = ?", (session_id,)).fetchone()
        if not row:
            return None
        if row["id"] != session_id:
            self._guard.report_violation(session_id=session_id, operation="analysis_get", found=[row["id"]])
            raise IsolationViolation(
                "Loaded pre-analysis does not match the requested id.",
                session_id=session_id,
                operation="analysis_get",
            )
        return _analysis_from_row(row)

    def list_for_patient(self, patient_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM pre_analyses
                WHERE patient_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (patient_id, max(1, limit)),
            ).fetchall()
        return [_analysis_from_row(row) for row in rows]

    def update_inputs(self, *, session_id: str, patient_id: str, inputs: dict[str, Any], append: bool = True) -> dict[str, Any]:
        current = self.get(session_id)
        if current is None:
            raise StoreScopeError(
                "Pre-analysis not found.",
                session_id=session_id,
                operation="analysis_update",
            )
        self._guard.ensure_owner(patient_id, current["patient_id"], session_id=session_id, operation="analysis_update")

        assignments: list[str] = []
        params: list[Any] = []
        if "text_input" in inputs:
            assignments.append("text_input = ?")
            params.append((inputs.get("text_input") or "").strip() or None)
        for field, column in _LIST_FIELDS.items():
            if field not in inputs or inputs[field] is None:
                continue
            values = _clean_list(inputs[field])
            if append:
                values = current[field] + [value for value in values if value not in current[field]]
            assignments.append(f"{column} = ?")
            params.append(_json_dumps(values))
        if assignments:
            assignments.append("updated_at = ?")
            params.append(to_iso(utc_now()))
            with self._db.connection() as conn:
                conn.execute(
                    f"UPDATE pre_analyses SET {', '.join(assignments)} WHERE id = ? AND patient_id = ?",
                    (*params, session_id, patient_id),
                )
        updated = self.get(session_id)
        if updated is None:
            raise StoreScopeError(
                "Pre-analysis disappeared during update.",
                session_id=session_id,
                operation="analysis_update",
            )
        return updated

    def update_status(
        self,
        *,
        session_id: str,
        patient_id: str | None = None,
        status: str | None = None,
        ai_processing_status: str | None = None,
        stamps: dict[str, str] | None = None,
    ) -> int:
        session_id = self._guard.ensure_session_scope(session_id, operation="analysis_status")
        assignments: list[str] = []
        params: list[Any] = []
        if status is not None:
            assignments.append("status = ?")
            params.append(status)
        if ai_processing_status is not None:
            assignments.append("ai_processing_status = ?")
            params.append(ai_processing_status)
        for column, value in (stamps or {}).items():
            if column not in {"submitted_at", "ai_processing_started_at", "ai_processing_completed_at", "chat_finalized_at"}:
                raise ValueError(f"Unsupported timestamp column: {column}")
            assignments.append(f"{column} = ?")
            params.append(value)
        if not assignments:
            return 0
        assignments.append("updated_at = ?")
        params.append(to_iso(utc_now()))
        sql = f"UPDATE pre_analyses SET {', '.join(assignments)} WHERE id = ?"
        params.append(session_id)
        if patient_id is not None:
            sql += " AND patient_id = ?"
            params.append(patient_id)
        with self._db.connection() as conn:
            return conn.execute(sql, tuple(params)).rowcount

    def upsert_profile(self, *, patient_id: str, profile: dict[str, Any]) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO patient_profiles (
                  id, patient_id, date_of_birth, gender, blood_group, allergies_json, medical_history,
                  created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(patient_id) DO UPDATE SET
                  date_of_birth = excluded.date_of_birth,
                  gender = excluded.gender,
                  blood_group = excluded.blood_group,
                  allergies_json = excluded.allergies_json,
                  medical_history = excluded.medical_history,
                  updated_at = excluded.updated_at
                """,
                (
                    f"profile_{patient_id}",
                    patient_id,
                    profile.get("date_of_birth"),
                    profile.get("gender"),
                    profile.get("blood_group"),
                    _json_dumps(_clean_list(profile.get("allergies"))),
                    profile.get("medical_history"),
                    now,
                    now,
                ),
            )
        stored = self.get_profile(patient_id)
        if stored is None:
            raise StoreScopeError("Patient profile could not be read back.", operation="profile_upsert")
        return stored

    def get_profile(self, patient_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT patient_id, date_of_birth, gender, blood_group, allergies_json, medical_history, updated_at
                FROM patient_profiles
                WHERE patient_id = ?
                """,
                (patient_id,),
            ).fetchone()
        if not row:
            return None
        data = dict(row)
        data["allergies"] = json.loads(data.pop("allergies_json") or "[]")
        return data

    def add_timeline_event(
        self,
        *,
        patient_id: str,
        event_type: str,
        event_title: str,
        event_description: str | None,
        status: str | None = None,
        related_pre_analysis_id: str | None = None,
        related_ai_report_id: str | None = None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        event = {
            "id": uuid.uuid4().hex,
            "patient_id": patient_id,
            "event_type": event_type,
            "event_title": event_title,
            "event_description": event_description,
            "status": status,
            "related_pre_analysis_id": related_pre_analysis_id,
            "related_ai_report_id": related_ai_report_id,
            "event_date": now,
            "created_at": now,
        }
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO timeline_events (
                  id, patient_id, event_type, event_title, event_description, status,
                  related_pre_analysis_id, related_ai_report_id, event_date, created_at
                )
                VALUES (:id, :patient_id, :event_type, :event_title, :event_description, :status,
                        :related_pre_analysis_id, :related_ai_report_id, :event_date, :created_at)
                """,
                event,
            )
        return event

    def timeline_for_patient(self, patient_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            return [
                dict(row)
                for row in conn.execute(
                    """
                    SELECT * FROM timeline_events
                    WHERE patient_id = ?
                    ORDER BY event_date DESC
                    LIMIT ?
                    """,
                    (patient_id, max(1, limit)),
                ).fetchall()
            ]
