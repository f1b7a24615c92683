from __future__ import annotations

import logging
from typing import Any, Protocol

from triage_store import TriageStore
from triage_store.time_utils import to_iso, utc_now

from .context_builder import build_unified_context
from .errors import ChatReplyFailed, InvalidChatMessage, InvalidSessionTransition, ModelError
from .models import (
    CHAT_AWAITING_FIRST_QUESTION,
    CHAT_IN_DIALOGUE,
    CHAT_NOT_STARTED,
    CHAT_READY_TO_FINALIZE,
    ModelCompletion,
    UnifiedMedicalContext,
)
from .prompts import (
    CHAT_FALLBACK_REPLY,
    OPENING_FALLBACK_REPLY,
    build_dialogue_messages,
    build_opening_messages,
)
from .session_data import SessionLoader, raw_inputs, store_scope

logger = logging.getLogger(__name__)


class CompletionModel(Protocol):
    async def complete(self, messages: list[dict[str, Any]], **kwargs: Any) -> ModelCompletion: ...


class TextExtractor(Protocol):
    async def extract_all(self, refs: list[str]) -> list[str]: ...


class ImageSource(Protocol):
    async def image_parts(self, refs: list[str]) -> list[dict[str, Any]]: ...


class PrecisionChatOrchestrator:
    """Question-asking loop that precedes report generation.

    The store is the only source of chat history. Anything the client sends
    along as history is compared for diagnostics and then dropped.
    """

    def __init__(
        self,
        store: TriageStore,
        model: CompletionModel,
        extractor: TextExtractor,
        images: ImageSource,
    ) -> None:
        self._store = store
        self._loader = SessionLoader(store)
        self._model = model
        self._extractor = extractor
        self._images = images
        self._opening: set[str] = set()

    def state(self, session_id: str) -> str:
        session = self._loader.load(session_id, operation="chat_state")
        if session.get("chat_finalized_at"):
            return CHAT_READY_TO_FINALIZE
        if self._loader.turns(session_id):
            return CHAT_IN_DIALOGUE
        if session_id in self._opening:
            return CHAT_AWAITING_FIRST_QUESTION
        return CHAT_NOT_STARTED

    def authoritative_history(
        self,
        session_id: str,
        client_history: list[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        turns = self._loader.turns(session_id, operation="chat_history")
        if client_history is not None and len(client_history) != len(turns):
            logger.info(
                "client history for pre-analysis %s discarded (%d turns sent, %d stored)",
                session_id,
                len(client_history),
                len(turns),
            )
        return turns

    async def _context(self, session: dict[str, Any], turns: list[dict[str, Any]]) -> UnifiedMedicalContext:
        documents = await self._extractor.extract_all(list(session.get("document_urls") or []))
        profile = self._loader.patient_profile(session)
        return build_unified_context(raw_inputs(session, turns=turns, document_contents=documents, profile=profile))

    def _append(self, session_id: str, sender_type: str, text: str, operation: str) -> dict[str, Any]:
        with store_scope(session_id, operation):
            return self._store.conversation.append(session_id=session_id, sender_type=sender_type, message_text=text)

    async def start(self, session_id: str) -> dict[str, Any]:
        session = self._loader.load(session_id, operation="chat_start")
        turns = self._loader.turns(session_id, operation="chat_start")
        if turns:
            return {"state": self.state(session_id), "turns": turns, "created": False}
        if session.get("chat_finalized_at"):
            raise InvalidSessionTransition(
                "Chat was already finalized.", session_id=session_id, operation="chat_start"
            )

        self._opening.add(session_id)
        try:
            context = await self._context(session, [])
            completion = await self._model.complete(
                build_opening_messages(context),
                purpose="chat",
                max_tokens=500,
                temperature=0.7,
            )
            # A concurrent start may have landed while the model was answering.
            turns = self._loader.turns(session_id, operation="chat_start")
            if turns:
                return {"state": self.state(session_id), "turns": turns, "created": False}
            self._append(session_id, "ai", completion.text.strip() or OPENING_FALLBACK_REPLY, "chat_start")
        finally:
            self._opening.discard(session_id)
        logger.info("opening question stored for pre-analysis %s", session_id)
        return {"state": CHAT_IN_DIALOGUE, "turns": self._loader.turns(session_id), "created": True}

    async def reply(
        self,
        session_id: str,
        text: str,
        *,
        client_history: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        cleaned = (text or "").strip()
        if not cleaned:
            raise InvalidChatMessage("Message is empty.", session_id=session_id, operation="chat_reply")
        session = self._loader.load(session_id, operation="chat_reply")
        if session.get("chat_finalized_at"):
            raise InvalidSessionTransition(
                "Chat was already finalized.", session_id=session_id, operation="chat_reply"
            )

        existing = self._loader.turns(session_id, operation="chat_reply")
        last = existing[-1] if existing else None
        if last and last["sender_type"] == "patient" and last["message_text"] == cleaned:
            # Retry of a message whose answer failed; the turn is already stored.
            patient_turn = last
        else:
            patient_turn = self._append(session_id, "patient", cleaned, "chat_reply")

        history = self.authoritative_history(session_id, client_history)
        try:
            context = await self._context(session, history)
            image_parts = await self._images.image_parts(list(session.get("image_urls") or []))
            completion = await self._model.complete(
                build_dialogue_messages(context, context.chat_history, image_parts),
                purpose="vision" if image_parts else "chat",
                max_tokens=400,
                temperature=0.7,
            )
        except ModelError as exc:
            logger.warning("chat reply failed for pre-analysis %s: %s", session_id, exc)
            raise ChatReplyFailed(
                "The assistant could not answer; the message can be sent again.",
                original_text=cleaned,
                cause=exc,
                session_id=session_id,
                operation="chat_reply",
            ) from exc

        ai_turn = self._append(session_id, "ai", completion.text.strip() or CHAT_FALLBACK_REPLY, "chat_reply")
        return {
            "state": CHAT_IN_DIALOGUE,
            "patient_turn": patient_turn,
            "ai_turn": ai_turn,
            "turns": self._loader.turns(session_id),
        }

    def finalize(self, session_id: str) -> dict[str, Any]:
        session = self._loader.load(session_id, operation="chat_finalize")
        if not session.get("chat_finalized_at"):
            self._store.analyses.update_status(
                session_id=session_id,
                patient_id=session["patient_id"],
                stamps={"chat_finalized_at": to_iso(utc_now())},
            )
            logger.info("precision chat finalized for pre-analysis %s", session_id)
        return {"state": CHAT_READY_TO_FINALIZE, "turns": self._loader.turns(session_id, operation="chat_finalize")}
