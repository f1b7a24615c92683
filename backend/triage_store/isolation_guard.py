from __future__ import annotations

import logging
import re
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class StoreScopeError(Exception):
    def __init__(self, message: str, *, session_id: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.operation = operation


class IsolationViolation(StoreScopeError):
    """A read or write crossed a pre-analysis boundary."""


class ReportConflictError(StoreScopeError):
    """The one-report-per-analysis uniqueness constraint rejected an insert."""

    code = "23505"


class IsolationGuard:
    _SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")

    def ensure_session_scope(self, session_id: Any, *, operation: str) -> str:
        if not isinstance(session_id, str) or not self._SESSION_ID_RE.fullmatch(session_id.strip()):
            raise StoreScopeError("Invalid pre-analysis scope.", session_id=None, operation=operation)
        return session_id.strip()

    def ensure_owner(self, requested_patient_id: str, owner_patient_id: str, *, session_id: str, operation: str) -> None:
        if requested_patient_id != owner_patient_id:
            raise StoreScopeError("Cross-patient access is blocked.", session_id=session_id, operation=operation)

    def foreign_rows(
        self,
        rows: Iterable[dict[str, Any]],
        *,
        session_id: str,
        key: str = "pre_analysis_id",
    ) -> list[dict[str, Any]]:
        return [row for row in rows if row.get(key) != session_id]

    def report_violation(self, *, session_id: str, operation: str, found: Iterable[Any]) -> None:
        logger.critical(
            "isolation violation during %s: expected pre_analysis_id=%s, found=%s",
            operation,
            session_id,
            sorted({str(value) for value in found}),
        )
