from __future__ import annotations

import asyncio
import io
import json
from typing import Any

from docx import Document as DocxDocument

from triage_core.models import ModelCompletion
from triage_tools.object_fetch import FetchedObject, ObjectFetchError


class FakeModel:
    """Scripted reasoning model keyed by call purpose.

    Each purpose maps to a list of replies consumed in order; the last one
    repeats. A reply may be a string, a ``ModelCompletion`` or an exception.
    """

    def __init__(self, **scripted: Any) -> None:
        self.scripted = {key: list(value) if isinstance(value, list) else [value] for key, value in scripted.items()}
        self.calls: list[dict[str, Any]] = []
        self.on_call = None

    def provider_candidates(self, purpose: str = "chat") -> list[dict[str, Any]]:
        return [{"provider": "fake", "model": "fake"}]

    async def complete(self, messages: list[dict[str, Any]], **kwargs: Any) -> ModelCompletion:
        purpose = kwargs.get("purpose", "chat")
        self.calls.append({"messages": messages, **kwargs})
        if self.on_call is not None:
            self.on_call(messages, kwargs)
        queue = self.scripted.get(purpose) or self.scripted.get("default") or [""]
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, ModelCompletion):
            return reply
        return ModelCompletion(text=reply, finish_reason="stop", provider="fake", model="fake")

    def calls_for(self, purpose: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call.get("purpose") == purpose]


class FakeFetcher:
    def __init__(self, objects: dict[str, Any] | None = None, delays: dict[str, float] | None = None) -> None:
        self.objects = objects or {}
        self.delays = delays or {}
        self.requested: list[str] = []

    async def download(self, ref: str) -> FetchedObject:
        self.requested.append(ref)
        if ref in self.delays:
            await asyncio.sleep(self.delays[ref])
        value = self.objects.get(ref)
        if value is None:
            raise ObjectFetchError("HTTP 404: not found", ref=ref)
        if isinstance(value, Exception):
            raise value
        content_type = None
        if isinstance(value, tuple):
            value, content_type = value
        return FetchedObject(content=value, content_type=content_type, source="fake", size=len(value))


class FakeExtractor:
    def __init__(self, texts: dict[str, str] | None = None, error: Exception | None = None) -> None:
        self.texts = texts or {}
        self.error = error
        self.calls: list[list[str]] = []

    async def extract_all(self, refs: list[str]) -> list[str]:
        self.calls.append(list(refs))
        if self.error is not None:
            raise self.error
        return [
            f"=== DOCUMENT {idx} ({ref.rsplit('/', 1)[-1]}) ===\n{self.texts.get(ref, '')}\n=================="
            for idx, ref in enumerate(refs, start=1)
        ]


class FakeImages:
    def __init__(self, descriptions: list[str] | None = None, describe_error: Exception | None = None) -> None:
        self.descriptions = descriptions or []
        self.describe_error = describe_error

    async def image_parts(self, refs: list[str]) -> list[dict[str, Any]]:
        return [{"type": "image_url", "image_url": {"url": f"data:image/png;base64,{idx}"}} for idx, _ in enumerate(refs)]

    async def describe_parts(self, parts: list[dict[str, Any]]) -> list[str]:
        if self.describe_error is not None:
            raise self.describe_error
        return list(self.descriptions)


def report_json(
    *,
    severity: str = "medium",
    summary: str = "Toux sèche persistante avec fièvre légère.",
    hypotheses: list[dict[str, Any]] | None = None,
    **overrides: Any,
) -> str:
    payload = {
        "summary": summary,
        "explainability_data": {"text_analysis": ["toux sèche"], "correlation": "CRP modérément élevée"},
        "diagnostic_hypotheses": hypotheses
        if hypotheses is not None
        else [
            {"disease_name": "Bronchite aiguë", "confidence": 62, "severity": "medium", "keywords": ["toux"], "is_primary": True},
            {"disease_name": "Pneumopathie", "confidence": 25, "severity": "high", "keywords": ["fièvre"]},
            {"disease_name": "Rhinopharyngite", "confidence": 13, "severity": "low", "keywords": ["toux"]},
        ],
        "overall_severity": severity,
        "overall_confidence": 70,
        "primary_diagnosis": "Bronchite aiguë",
        "primary_diagnosis_confidence": 62,
        "recommendation_action": "Consultation recommandée dans les 24-48h",
        "recommendation_text": "Un médecin doit confirmer ces hypothèses.",
    }
    payload.update(overrides)
    return json.dumps(payload, ensure_ascii=False)


def make_session(store, patient_id: str = "patient-a", **inputs: Any) -> dict[str, Any]:
    return store.analyses.create(patient_id=patient_id, inputs=inputs)


def run(coro):
    return asyncio.run(coro)


def make_pdf(*page_texts: str) -> bytes:
    """Smallest valid PDF with one Helvetica text line per page."""
    objects: list[bytes] = []
    page_count = len(page_texts)
    kids = " ".join(f"{3 + idx * 2} 0 R" for idx in range(page_count))
    font_obj = 3 + page_count * 2
    objects.append(b"<< /Type /Catalog /Pages 2 0 R >>")
    objects.append(f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode("ascii"))
    for idx, text in enumerate(page_texts):
        content_obj = 4 + idx * 2
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                f"/Contents {content_obj} 0 R /Resources << /Font << /F1 {font_obj} 0 R >> >> >>"
            ).encode("ascii")
        )
        stream = f"BT /F1 18 Tf 72 720 Td ({text}) Tj ET".encode("ascii")
        objects.append(b"<< /Length " + str(len(stream)).encode("ascii") + b" >>\nstream\n" + stream + b"\nendstream")
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(f"{number} 0 obj\n".encode("ascii") + body + b"\nendobj\n")
    xref_at = out.tell()
    out.write(f"xref\n0 {len(objects) + 1}\n".encode("ascii"))
    out.write(b"0000000000 65535 f \n")
    for offset in offsets:
        out.write(f"{offset:010d} 00000 n \n".encode("ascii"))
    out.write(f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode("ascii"))
    return out.getvalue()


def make_docx(*paragraphs: str) -> bytes:
    document = DocxDocument()
    for text in paragraphs:
        document.add_paragraph(text)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()
