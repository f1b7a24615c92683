from __future__ import annotations

import sqlite3
import uuid
from typing import Any

from .database import SQLiteTriageDB
from .isolation_guard import IsolationGuard, IsolationViolation, StoreScopeError
from .time_utils import to_iso, utc_now

SENDER_TYPES = {"ai", "patient"}


class ConversationStore:
    """Append-only precision-chat turns, partitioned strictly by pre-analysis id.

    Reads never fall back to the patient id: a patient owns several analyses and
    their chats must not bleed into each other's prompts.
    """

    def __init__(self, db: SQLiteTriageDB, guard: IsolationGuard) -> None:
        self._db = db
        self._guard = guard

    def append(self, *, session_id: str, sender_type: str, message_text: str) -> dict[str, Any]:
        session_id = self._guard.ensure_session_scope(session_id, operation="chat_append")
        if sender_type not in SENDER_TYPES:
            raise StoreScopeError(f"Invalid sender type: {sender_type}", session_id=session_id, operation="chat_append")
        turn_id = uuid.uuid4().hex
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_precision_messages (id, pre_analysis_id, sender_type, message_text, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (turn_id, session_id, sender_type, message_text, now),
            )
            row = self._select_turn(conn, turn_id)
            if row is None or row["pre_analysis_id"] != session_id:
                found = [row["pre_analysis_id"]] if row else []
                self._guard.report_violation(session_id=session_id, operation="chat_append", found=found)
                raise IsolationViolation(
                    "Saved chat turn does not belong to the requested pre-analysis.",
                    session_id=session_id,
                    operation="chat_append",
                )
        return row

    def load_all(self, session_id: str) -> list[dict[str, Any]]:
        session_id = self._guard.ensure_session_scope(session_id, operation="chat_load")
        with self._db.connection() as conn:
            rows = self._select_turns(conn, session_id)
        foreign = self._guard.foreign_rows(rows, session_id=session_id)
        if foreign:
            self._guard.report_violation(
                session_id=session_id,
                operation="chat_load",
                found=[row.get("pre_analysis_id") for row in foreign],
            )
            return []
        return rows

    def _select_turn(self, conn: sqlite3.Connection, turn_id: str) -> dict[str, Any] | None:
        row = conn.execute(
            """
            SELECT id, pre_analysis_id, sender_type, message_text, created_at
            FROM chat_precision_messages
            WHERE id = ?
            """,
            (turn_id,),
        ).fetchone()
        return dict(row) if row else None

    def _select_turns(self, conn: sqlite3.Connection, session_id: str) -> list[dict[str, Any]]:
        return [
            dict(row)
            for row in conn.execute(
                """
                SELECT id, pre_analysis_id, sender_type, message_text, created_at
                FROM chat_precision_messages
                WHERE pre_analysis_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (session_id,),
            ).fetchall()
        ]
