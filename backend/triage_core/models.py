from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

SEVERITIES = ("low", "medium", "high")

CHAT_NOT_STARTED = "not_started"
CHAT_AWAITING_FIRST_QUESTION = "awaiting_first_question"
CHAT_IN_DIALOGUE = "in_dialogue"
CHAT_READY_TO_FINALIZE = "ready_to_finalize"

LOOKUP_FOUND = "found"
LOOKUP_PENDING = "pending"
LOOKUP_FAILED = "failed"
LOOKUP_NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PatientProfile:
    age: int | None = None
    gender: str | None = None
    blood_group: str | None = None
    allergies: tuple[str, ...] = ()
    medical_history: str | None = None


@dataclass(frozen=True)
class ContextChatTurn:
    role: str
    content: str


@dataclass(frozen=True)
class RawMedicalInputs:
    text_input: str | None = None
    voice_transcripts: Any = None
    selected_chips: Any = None
    image_urls: Any = None
    document_urls: Any = None
    document_contents: Any = None
    chat_turns: Any = None
    patient_profile: Any = None


@dataclass(frozen=True)
class UnifiedMedicalContext:
    text_symptoms: str | None
    voice_transcriptions: tuple[str, ...]
    selected_chips: tuple[str, ...]
    image_urls: tuple[str, ...]
    document_urls: tuple[str, ...]
    document_contents: tuple[str, ...]
    chat_history: tuple[ContextChatTurn, ...]
    patient_profile: PatientProfile
    combined_text_block: str


@dataclass(frozen=True)
class ModelCompletion:
    text: str
    finish_reason: str | None = None
    provider: str | None = None
    model: str | None = None


@dataclass
class ReportDraft:
    overall_severity: str
    overall_confidence: float | None
    summary: str
    primary_diagnosis: str | None
    primary_diagnosis_confidence: float | None
    recommendation_action: str | None
    recommendation_text: str | None
    explainability_data: dict[str, Any] = field(default_factory=dict)
    hypotheses: list[dict[str, Any]] = field(default_factory=list)
    emergency_escalated: bool = False

    def report_fields(self) -> dict[str, Any]:
        return {
            "overall_severity": self.overall_severity,
            "overall_confidence": self.overall_confidence,
            "summary": self.summary,
            "primary_diagnosis": self.primary_diagnosis,
            "primary_diagnosis_confidence": self.primary_diagnosis_confidence,
            "recommendation_action": self.recommendation_action,
            "recommendation_text": self.recommendation_text,
            "explainability_json": json.dumps(self.explainability_data, ensure_ascii=False),
        }


@dataclass(frozen=True)
class ReportLookup:
    status: str
    report: dict[str, Any] | None = None
    attempts: int = 0
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.status == LOOKUP_FOUND

    def as_envelope(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "report": self.report,
            "attempts": self.attempts,
            "error": self.error,
        }
