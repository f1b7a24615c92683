from __future__ import annotations

import json
import logging
from typing import Any

from .errors import ModelOutputError
from .models import SEVERITIES, ModelCompletion, ReportDraft
from .safety import EMERGENCY_SENTENCE, detect_red_flags, has_escalation_sentence

logger = logging.getLogger(__name__)


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    text = (raw_text or "").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    for start_idx in [idx for idx, char in enumerate(text) if char == "{"]:
        depth = 0
        for end_idx in range(start_idx, len(text)):
            char = text[end_idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth == 0:
                candidate = text[start_idx : end_idx + 1]
                try:
                    payload = json.loads(candidate)
                    if isinstance(payload, dict):
                        return payload
                except json.JSONDecodeError:
                    break
    return None


def coerce_severity(value: Any, *, field: str = "overall_severity") -> str:
    normalized = str(value or "").strip().lower()
    if normalized in SEVERITIES:
        return normalized
    if normalized == "critical":
        logger.warning("%s 'critical' coerced to 'high'", field)
        return "high"
    logger.warning("%s %r is not recognised, coerced to 'medium'", field, value)
    return "medium"


def _as_number(value: Any) -> float | None:
    # Out-of-range values are kept as the model reported them.
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().rstrip("%"))
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_keywords(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def normalize_hypotheses(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    hypotheses: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = _as_text(item.get("disease_name") or item.get("name"))
        if not name:
            continue
        severity = item.get("severity")
        hypotheses.append(
            {
                "disease_name": name,
                "confidence": _as_number(item.get("confidence")),
                "severity": coerce_severity(severity, field="hypothesis severity") if severity is not None else None,
                "keywords": _as_keywords(item.get("keywords")),
                "explanation": _as_text(item.get("explanation")),
                "is_primary": bool(item.get("is_primary")),
                "is_excluded": bool(item.get("is_excluded")),
                "exclusion_reason": _as_text(item.get("exclusion_reason")),
            }
        )
    if len(hypotheses) > 5:
        logger.warning("model returned %d hypotheses, keeping the first 5", len(hypotheses))
        hypotheses = hypotheses[:5]
    if hypotheses:
        primary_idx = next((idx for idx, item in enumerate(hypotheses) if item["is_primary"]), 0)
        for idx, item in enumerate(hypotheses):
            item["is_primary"] = idx == primary_idx
    return hypotheses


def _explainability(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        parsed = extract_json_object(value)
        if parsed is not None:
            return parsed
        return {"raw": value.strip()}
    return {}


def parse_report_payload(completion: ModelCompletion) -> ReportDraft:
    if completion.finish_reason == "length":
        raise ModelOutputError("Model output was truncated before the report JSON closed.")
    payload = extract_json_object(completion.text)
    if payload is None:
        raise ModelOutputError("Model output did not contain a JSON report object.")

    hypotheses = normalize_hypotheses(payload.get("diagnostic_hypotheses"))
    primary = next((item for item in hypotheses if item["is_primary"]), None)
    primary_diagnosis = _as_text(payload.get("primary_diagnosis")) or (primary["disease_name"] if primary else None)
    primary_confidence = _as_number(payload.get("primary_diagnosis_confidence"))
    if primary_confidence is None and primary is not None:
        primary_confidence = primary["confidence"]

    summary = _as_text(payload.get("summary"))
    if not summary:
        raise ModelOutputError("Model report is missing a summary.")

    return ReportDraft(
        overall_severity=coerce_severity(payload.get("overall_severity")),
        overall_confidence=_as_number(payload.get("overall_confidence")),
        summary=summary,
        primary_diagnosis=primary_diagnosis,
        primary_diagnosis_confidence=primary_confidence,
        recommendation_action=_as_text(payload.get("recommendation_action")),
        recommendation_text=_as_text(payload.get("recommendation_text")),
        explainability_data=_explainability(payload.get("explainability_data")),
        hypotheses=hypotheses,
    )


def enforce_emergency_escalation(draft: ReportDraft, patient_text: str) -> ReportDraft:
    flags = detect_red_flags(patient_text)
    if not flags:
        return draft
    recommendation = draft.recommendation_text or ""
    if has_escalation_sentence(recommendation) or has_escalation_sentence(draft.recommendation_action):
        # The model already escalated; its severity stands.
        return draft
    logger.warning(
        "red flags %s present without escalation, adding it (severity %s -> high)", flags, draft.overall_severity
    )
    draft.recommendation_text = f"{recommendation}\n\n{EMERGENCY_SENTENCE}".strip()
    draft.overall_severity = "high"
    draft.emergency_escalated = True
    return draft
