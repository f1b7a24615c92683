from .context_builder import build_unified_context
from .errors import (
    ChatReplyFailed,
    InvalidChatMessage,
    InvalidSessionTransition,
    IsolationViolation,
    ModelAuthError,
    ModelError,
    ModelOutputError,
    ModelRequestError,
    ModelTransientError,
    ReportGenerationError,
    ReportGenerationFailed,
    ReportPersistenceError,
    SessionNotFound,
    TriageError,
)
from .lifecycle import SessionLifecycle
from .models import RawMedicalInputs, ReportLookup, UnifiedMedicalContext
from .precision_chat import PrecisionChatOrchestrator
from .report_generator import ReportGenerator
from .report_retrieval import ReportRetrieval
from .settings import TriageSettings, bootstrap_local_env

__all__ = [
    "ChatReplyFailed",
    "InvalidChatMessage",
    "InvalidSessionTransition",
    "IsolationViolation",
    "ModelAuthError",
    "ModelError",
    "ModelOutputError",
    "ModelRequestError",
    "ModelTransientError",
    "PrecisionChatOrchestrator",
    "RawMedicalInputs",
    "ReportGenerationError",
    "ReportGenerationFailed",
    "ReportGenerator",
    "ReportLookup",
    "ReportPersistenceError",
    "ReportRetrieval",
    "SessionLifecycle",
    "SessionNotFound",
    "TriageError",
    "TriageSettings",
    "UnifiedMedicalContext",
    "bootstrap_local_env",
    "build_unified_context",
]
