from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPENAI_API_BASE = "https://api.openai.com/v1"
_ANTHROPIC_API_BASE = "https://api.anthropic.com/v1"


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class TriageSettings:
    db_path: str
    openai_api_key: str = ""
    openai_base_url: str = _OPENAI_API_BASE
    anthropic_api_key: str = ""
    anthropic_base_url: str = _ANTHROPIC_API_BASE
    anthropic_version: str = "2023-06-01"
    anthropic_model: str = "claude-3-5-sonnet-latest"
    model_provider: str = "auto"
    chat_model: str = "gpt-4o-mini"
    report_model: str = "gpt-4o"
    vision_model: str = "gpt-4o"
    model_timeout_seconds: float = 60.0
    storage_url: str = ""
    storage_service_key: str = ""
    download_timeout_seconds: float = 20.0
    load_timeout_seconds: float = 20.0
    page_timeout_seconds: float = 10.0
    report_max_retries: int = 10
    report_base_delay_seconds: float = 2.0
    report_max_delay_seconds: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "TriageSettings":
        default_db = Path(__file__).resolve().parents[1] / "data" / "hopevision.db"
        return cls(
            db_path=_env_str("HOPEVISION_DB_PATH", str(default_db)),
            openai_api_key=_env_str("OPENAI_API_KEY"),
            openai_base_url=_env_str("OPENAI_BASE_URL", _OPENAI_API_BASE).rstrip("/"),
            anthropic_api_key=_env_str("ANTHROPIC_API_KEY"),
            anthropic_base_url=_env_str("ANTHROPIC_BASE_URL", _ANTHROPIC_API_BASE).rstrip("/"),
            anthropic_version=_env_str("ANTHROPIC_API_VERSION", "2023-06-01"),
            anthropic_model=_env_str("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest"),
            model_provider=_env_str("HOPEVISION_MODEL_PROVIDER", "auto").lower(),
            chat_model=_env_str("HOPEVISION_CHAT_MODEL", "gpt-4o-mini"),
            report_model=_env_str("HOPEVISION_REPORT_MODEL", "gpt-4o"),
            vision_model=_env_str("HOPEVISION_VISION_MODEL", "gpt-4o"),
            model_timeout_seconds=_env_float("HOPEVISION_MODEL_TIMEOUT_SECONDS", 60.0),
            storage_url=_env_str("HOPEVISION_STORAGE_URL").rstrip("/"),
            storage_service_key=_env_str("HOPEVISION_STORAGE_KEY"),
            download_timeout_seconds=_env_float("HOPEVISION_DOWNLOAD_TIMEOUT_SECONDS", 20.0),
            load_timeout_seconds=_env_float("HOPEVISION_LOAD_TIMEOUT_SECONDS", 20.0),
            page_timeout_seconds=_env_float("HOPEVISION_PAGE_TIMEOUT_SECONDS", 10.0),
            report_max_retries=_env_int("HOPEVISION_REPORT_MAX_RETRIES", 10),
            report_base_delay_seconds=_env_float("HOPEVISION_REPORT_BASE_DELAY_SECONDS", 2.0),
            report_max_delay_seconds=_env_float("HOPEVISION_REPORT_MAX_DELAY_SECONDS", 10.0),
            log_level=_env_str("HOPEVISION_LOG_LEVEL", "INFO").upper(),
        )
