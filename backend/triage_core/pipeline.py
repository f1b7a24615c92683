from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepOutcome:
    name: str
    ok: bool
    critical: bool
    error: str | None = None


class StepRunner:
    """Runs named pipeline steps and records how each one ended.

    Critical steps propagate their exception; non-critical ones are logged and
    yield ``None`` so the pipeline keeps going.
    """

    def __init__(self, session_id: str, operation: str) -> None:
        self.session_id = session_id
        self.operation = operation
        self.outcomes: list[StepOutcome] = []

    async def run(self, name: str, func: Callable[[], Any], *, critical: bool = True) -> Any:
        try:
            result = func()
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            self.outcomes.append(StepOutcome(name=name, ok=False, critical=critical, error=str(exc)))
            if critical:
                logger.error("%s step %s failed for pre-analysis %s: %s", self.operation, name, self.session_id, exc)
                raise
            logger.warning("%s step %s skipped for pre-analysis %s: %s", self.operation, name, self.session_id, exc)
            return None
        self.outcomes.append(StepOutcome(name=name, ok=True, critical=critical))
        return result

    def failed_steps(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes if not outcome.ok]

    def summary(self) -> list[dict[str, Any]]:
        return [
            {"step": outcome.name, "ok": outcome.ok, "critical": outcome.critical, "error": outcome.error}
            for outcome in self.outcomes
        ]
