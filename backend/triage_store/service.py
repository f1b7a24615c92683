from __future__ import annotations

from typing import Any

from .analysis_store import AnalysisStore
from .conversation_store import ConversationStore
from .database import SQLiteTriageDB
from .isolation_guard import IsolationGuard
from .report_store import ReportStore


class TriageStore:
    def __init__(self, db: SQLiteTriageDB) -> None:
        self.db = db
        self.guard = IsolationGuard()
        self.analyses = AnalysisStore(db, self.guard)
        self.conversation = ConversationStore(db, self.guard)
        self.reports = ReportStore(db, self.guard)

    def patient_overview(self, patient_id: str) -> dict[str, Any]:
        return {
            "profile": self.analyses.get_profile(patient_id),
            "analyses": self.analyses.list_for_patient(patient_id),
            "timeline": self.analyses.timeline_for_patient(patient_id),
        }
