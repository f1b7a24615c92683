from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from triage_core.settings import TriageSettings  # noqa: E402
from triage_store import SQLiteTriageDB, TriageStore  # noqa: E402


@pytest.fixture
def settings(tmp_path) -> TriageSettings:
    return TriageSettings(
        db_path=str(tmp_path / "hopevision-test.sqlite"),
        report_max_retries=3,
        report_base_delay_seconds=2.0,
        report_max_delay_seconds=10.0,
        download_timeout_seconds=0.5,
        load_timeout_seconds=0.5,
        page_timeout_seconds=0.5,
    )


@pytest.fixture
def store(settings) -> TriageStore:
    return TriageStore(SQLiteTriageDB(settings.db_path))


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "hopevision-api.sqlite"
    monkeypatch.setenv("HOPEVISION_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # Keep CI deterministic; no test may reach a real model provider.
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make
