from __future__ import annotations

import hashlib
import logging
import os
import re
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from triage_core import (
    ChatReplyFailed,
    InvalidChatMessage,
    InvalidSessionTransition,
    IsolationViolation,
    ModelAuthError,
    ModelError,
    ModelTransientError,
    PrecisionChatOrchestrator,
    ReportGenerationFailed,
    ReportGenerator,
    ReportRetrieval,
    SessionLifecycle,
    SessionNotFound,
    TriageError,
    TriageSettings,
    bootstrap_local_env,
)
from triage_core.models import LOOKUP_FAILED, LOOKUP_FOUND, LOOKUP_PENDING
from triage_core.session_data import SessionLoader
from triage_store import SQLiteTriageDB, StoreScopeError, TriageStore
from triage_tools import DocumentExtractor, ImageDescriber, ObjectFetcher, ReasoningModelClient

bootstrap_local_env()

logger = logging.getLogger("hopevision")


class ProfilePayload(BaseModel):
    date_of_birth: str | None = Field(default=None, validation_alias=AliasChoices("date_of_birth", "dateOfBirth"))
    gender: str | None = None
    blood_group: str | None = Field(default=None, validation_alias=AliasChoices("blood_group", "bloodGroup"))
    allergies: list[str] = Field(default_factory=list)
    medical_history: str | None = Field(
        default=None, validation_alias=AliasChoices("medical_history", "medicalHistory")
    )


class AnalysisInputs(BaseModel):
    text_input: str | None = None
    voice_transcripts: list[str] | str | None = None
    selected_chips: list[str] | None = None
    image_urls: list[str] | None = None
    document_urls: list[str] | None = None
    replace: bool = False


class ChatMessageRequest(BaseModel):
    message: str
    history: list[dict[str, Any]] | None = None


class HopeVisionApp:
    """Process-wide service handles, built once and passed to every component."""

    def __init__(
        self,
        settings: TriageSettings,
        *,
        model: Any | None = None,
        fetcher: Any | None = None,
    ) -> None:
        self.settings = settings
        self.db = SQLiteTriageDB(settings.db_path)
        self.store = TriageStore(self.db)
        self.loader = SessionLoader(self.store)
        self.lifecycle = SessionLifecycle(self.store)
        self.model = model or ReasoningModelClient(settings)
        self.fetcher = fetcher or ObjectFetcher(
            storage_url=settings.storage_url,
            service_key=settings.storage_service_key,
            timeout=settings.download_timeout_seconds,
        )
        self.extractor = DocumentExtractor(
            self.fetcher,
            download_timeout=settings.download_timeout_seconds,
            load_timeout=settings.load_timeout_seconds,
            page_timeout=settings.page_timeout_seconds,
        )
        self.images = ImageDescriber(self.model, self.fetcher)
        self.chat = PrecisionChatOrchestrator(self.store, self.model, self.extractor, self.images)
        self.generator = ReportGenerator(self.store, self.model, self.extractor, self.images, self.lifecycle)
        self.retrieval = ReportRetrieval(self.store, self.generator, settings)


settings = TriageSettings.from_env()
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

container = HopeVisionApp(settings)
app = FastAPI(title="HopeVision Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-patient"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer tokens are opaque here; identity verification happens upstream.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _status_for(exc: TriageError) -> int:
    if isinstance(exc, ChatReplyFailed):
        return _status_for(exc.cause) if isinstance(exc.cause, TriageError) else 502
    if isinstance(exc, SessionNotFound):
        return 404
    if isinstance(exc, (IsolationViolation, InvalidSessionTransition)):
        return 409
    if isinstance(exc, InvalidChatMessage):
        return 400
    if isinstance(exc, ReportGenerationFailed):
        return 422
    if isinstance(exc, ModelAuthError):
        return 503
    if isinstance(exc, ModelTransientError):
        return 504
    if isinstance(exc, ModelError):
        return 502
    return 500


@contextmanager
def _triage_errors() -> Iterator[None]:
    try:
        yield
    except TriageError as exc:
        detail = exc.as_detail()
        if isinstance(exc, IsolationViolation):
            # Never echo anything that could belong to another analysis.
            detail = {"error": "IsolationViolation", "message": "Analysis data could not be verified."}
        raise HTTPException(status_code=_status_for(exc), detail=detail) from exc
    except StoreScopeError as exc:
        raise HTTPException(status_code=404, detail="Analysis not found.") from exc


def _owned_session(session_id: str, user_id: str) -> dict[str, Any]:
    with _triage_errors():
        return container.loader.load_owned(session_id, user_id, operation="http")


@app.get("/health")
def health():
    return {
        "ok": True,
        "providers": [candidate["provider"] for candidate in container.model.provider_candidates()]
        if hasattr(container.model, "provider_candidates")
        else [],
    }


@app.post("/patients/profile")
def upsert_patient_profile(
    payload: ProfilePayload,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return container.store.analyses.upsert_profile(patient_id=user_id, profile=payload.model_dump())


@app.get("/patients/me/overview")
def patient_overview(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return container.store.patient_overview(user_id)


@app.post("/analyses")
def create_analysis(
    payload: AnalysisInputs,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    analysis = container.store.analyses.create(
        patient_id=user_id,
        inputs=payload.model_dump(exclude={"replace"}, exclude_none=True),
    )
    logger.info("pre-analysis %s created", analysis["id"])
    return analysis


@app.patch("/analyses/{analysis_id}/inputs")
def update_analysis_inputs(
    analysis_id: str,
    payload: AnalysisInputs,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    session = _owned_session(analysis_id, user_id)
    if session["status"] == "completed":
        raise HTTPException(status_code=409, detail="Completed analyses can no longer be edited.")
    with _triage_errors():
        return container.store.analyses.update_inputs(
            session_id=analysis_id,
            patient_id=user_id,
            inputs=payload.model_dump(exclude={"replace"}, exclude_unset=True),
            append=not payload.replace,
        )


@app.post("/analyses/{analysis_id}/submit")
def submit_analysis(
    analysis_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    _owned_session(analysis_id, user_id)
    with _triage_errors():
        return container.lifecycle.advance_status(analysis_id, "submitted")


@app.post("/analyses/{analysis_id}/chat/start")
async def start_chat(
    analysis_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    _owned_session(analysis_id, user_id)
    with _triage_errors():
        return await container.chat.start(analysis_id)


@app.post("/analyses/{analysis_id}/chat/messages")
async def send_chat_message(
    analysis_id: str,
    payload: ChatMessageRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    _owned_session(analysis_id, user_id)
    with _triage_errors():
        return await container.chat.reply(analysis_id, payload.message, client_history=payload.history)


@app.get("/analyses/{analysis_id}/chat")
def get_chat(
    analysis_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    _owned_session(analysis_id, user_id)
    with _triage_errors():
        return {
            "state": container.chat.state(analysis_id),
            "turns": container.chat.authoritative_history(analysis_id),
        }


@app.post("/analyses/{analysis_id}/chat/finalize")
async def finalize_chat(
    analysis_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    _owned_session(analysis_id, user_id)
    with _triage_errors():
        finalized = container.chat.finalize(analysis_id)
        report = await container.generator.generate(analysis_id)
    return {"state": finalized["state"], "report": report}


@app.post("/analyses/{analysis_id}/report")
async def generate_report(
    analysis_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    _owned_session(analysis_id, user_id)
    with _triage_errors():
        return await container.generator.generate(analysis_id)


@app.get("/analyses/{analysis_id}/report")
async def get_report(
    analysis_id: str,
    wait: bool = Query(default=True),
    max_retries: int | None = Query(default=None, ge=1, le=30),
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    _owned_session(analysis_id, user_id)
    with _triage_errors():
        if wait:
            lookup = await container.retrieval.get_or_generate(analysis_id, max_retries=max_retries)
        else:
            lookup = container.retrieval.peek(analysis_id)
    status_code = {LOOKUP_FOUND: 200, LOOKUP_PENDING: 202, LOOKUP_FAILED: 422}.get(lookup.status, 404)
    return JSONResponse(status_code=status_code, content=lookup.as_envelope())
