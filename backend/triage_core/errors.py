from __future__ import annotations


class TriageError(Exception):
    """Base error for the triage pipeline; carries the scope it failed in."""

    def __init__(self, message: str, *, session_id: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.operation = operation

    def as_detail(self) -> dict[str, str | None]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "session_id": self.session_id,
            "operation": self.operation,
        }


class IsolationViolation(TriageError):
    pass


class SessionNotFound(TriageError):
    pass


class InvalidSessionTransition(TriageError):
    pass


class InvalidChatMessage(TriageError):
    pass


class ChatReplyFailed(TriageError):
    """The model could not answer; the patient's text is handed back for retry."""

    def __init__(self, message: str, *, original_text: str, cause: Exception | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.original_text = original_text
        self.cause = cause

    def as_detail(self) -> dict[str, str | None]:
        detail = super().as_detail()
        detail["original_text"] = self.original_text
        detail["cause"] = type(self.cause).__name__ if self.cause is not None else None
        return detail


class ReportGenerationError(TriageError):
    pass


class ReportPersistenceError(ReportGenerationError):
    """An existing report could be neither updated nor replaced."""


class ReportGenerationFailed(TriageError):
    """The analysis is known to have failed generation; do not poll again."""


class ModelError(TriageError):
    retryable = False


class ModelAuthError(ModelError):
    pass


class ModelRequestError(ModelError):
    pass


class ModelTransientError(ModelError):
    retryable = True


class ModelOutputError(ModelError):
    pass
