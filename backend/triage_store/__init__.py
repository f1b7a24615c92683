from .database import SQLiteTriageDB
from .isolation_guard import IsolationGuard, IsolationViolation, ReportConflictError, StoreScopeError
from .service import TriageStore

__all__ = [
    "SQLiteTriageDB",
    "TriageStore",
    "IsolationGuard",
    "IsolationViolation",
    "ReportConflictError",
    "StoreScopeError",
]
