from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from .database import SQLiteTriageDB
from .isolation_guard import IsolationGuard, IsolationViolation, ReportConflictError, StoreScopeError
from .time_utils import to_iso, utc_now

REPORT_COLUMNS = (
    "overall_severity",
    "overall_confidence",
    "summary",
    "primary_diagnosis",
    "primary_diagnosis_confidence",
    "recommendation_action",
    "recommendation_text",
    "explainability_json",
)


def _report_from_row(row: Any) -> dict[str, Any]:
    data = dict(row)
    raw = data.pop("explainability_json", None)
    data["explainability_data"] = json.loads(raw) if raw else {}
    return data


def _hypothesis_from_row(row: Any) -> dict[str, Any]:
    data = dict(row)
    data["keywords"] = json.loads(data.pop("keywords_json") or "[]")
    data["is_primary"] = bool(data["is_primary"])
    data["is_excluded"] = bool(data["is_excluded"])
    return data


class ReportStore:
    """One report per pre-analysis, plus its ranked hypotheses.

    Writes return affected row counts so callers can tell an update that was
    filtered out by the owner check from one that succeeded.
    """

    def __init__(self, db: SQLiteTriageDB, guard: IsolationGuard) -> None:
        self._db = db
        self._guard = guard

    def find_by_session(self, session_id: str) -> dict[str, Any] | None:
        session_id = self._guard.ensure_session_scope(session_id, operation="report_find")
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM ai_reports WHERE pre_analysis_id = ?", (session_id,)).fetchone()
        if not row:
            return None
        if row["pre_analysis_id"] != session_id:
            self._guard.report_violation(session_id=session_id, operation="report_find", found=[row["pre_analysis_id"]])
            raise IsolationViolation(
                "Loaded report belongs to another pre-analysis.",
                session_id=session_id,
                operation="report_find",
            )
        return _report_from_row(row)

    def get_report(self, report_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM ai_reports WHERE id = ?", (report_id,)).fetchone()
        return _report_from_row(row) if row else None

    def insert_report(self, *, session_id: str, patient_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        session_id = self._guard.ensure_session_scope(session_id, operation="report_insert")
        report_id = uuid.uuid4().hex
        now = to_iso(utc_now())
        values = {column: fields.get(column) for column in REPORT_COLUMNS}
        try:
            with self._db.connection() as conn:
                conn.execute(
                    f"""
                    INSERT INTO ai_reports (
                      id, pre_analysis_id, patient_id, {', '.join(REPORT_COLUMNS)}, created_at, updated_at
                    )
                    VALUES (?, ?, ?, {', '.join('?' for _ in REPORT_COLUMNS)}, ?, ?)
                    """,
                    (report_id, session_id, patient_id, *values.values(), now, now),
                )
        except sqlite3.IntegrityError as exc:
            if "ai_reports.pre_analysis_id" not in str(exc):
                raise
            raise ReportConflictError(
                "A report already exists for this pre-analysis.",
                session_id=session_id,
                operation="report_insert",
            ) from exc
        created = self.get_report(report_id)
        if created is None:
            raise StoreScopeError(
                "Inserted report could not be read back.",
                session_id=session_id,
                operation="report_insert",
            )
        return created

    def update_report(self, *, report_id: str, patient_id: str, fields: dict[str, Any]) -> int:
        values = {column: fields.get(column) for column in REPORT_COLUMNS}
        assignments = ", ".join(f"{column} = ?" for column in REPORT_COLUMNS)
        with self._db.connection() as conn:
            return conn.execute(
                f"UPDATE ai_reports SET {assignments}, updated_at = ? WHERE id = ? AND patient_id = ?",
                (*values.values(), to_iso(utc_now()), report_id, patient_id),
            ).rowcount

    def delete_report(self, *, report_id: str, patient_id: str) -> int:
        with self._db.connection() as conn:
            return conn.execute(
                "DELETE FROM ai_reports WHERE id = ? AND patient_id = ?",
                (report_id, patient_id),
            ).rowcount

    def delete_hypotheses(self, report_id: str) -> int:
        with self._db.connection() as conn:
            return conn.execute("DELETE FROM diagnostic_hypotheses WHERE ai_report_id = ?", (report_id,)).rowcount

    def insert_hypotheses(self, report_id: str, hypotheses: list[dict[str, Any]]) -> list[dict[str, Any]]:
        now = to_iso(utc_now())
        rows = []
        for rank, item in enumerate(hypotheses, start=1):
            rows.append(
                {
                    "id": uuid.uuid4().hex,
                    "ai_report_id": report_id,
                    "disease_name": item["disease_name"],
                    "confidence": item.get("confidence"),
                    "severity": item.get("severity"),
                    "keywords_json": json.dumps(list(item.get("keywords") or []), ensure_ascii=False),
                    "explanation": item.get("explanation"),
                    "is_primary": 1 if item.get("is_primary") else 0,
                    "is_excluded": 1 if item.get("is_excluded") else 0,
                    "exclusion_reason": item.get("exclusion_reason"),
                    "rank": rank,
                    "created_at": now,
                }
            )
        with self._db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO diagnostic_hypotheses (
                  id, ai_report_id, disease_name, confidence, severity, keywords_json, explanation,
                  is_primary, is_excluded, exclusion_reason, rank, created_at
                )
                VALUES (:id, :ai_report_id, :disease_name, :confidence, :severity, :keywords_json, :explanation,
                        :is_primary, :is_excluded, :exclusion_reason, :rank, :created_at)
                """,
                rows,
            )
        return self.list_hypotheses(report_id)

    def list_hypotheses(self, report_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM diagnostic_hypotheses
                WHERE ai_report_id = ?
                ORDER BY rank ASC
                """,
                (report_id,),
            ).fetchall()
        return [_hypothesis_from_row(row) for row in rows]

    def load_with_hypotheses(self, session_id: str) -> dict[str, Any] | None:
        report = self.find_by_session(session_id)
        if report is None:
            return None
        report["hypotheses"] = self.list_hypotheses(report["id"])
        return report
