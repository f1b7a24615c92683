from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteTriageDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS patient_profiles (
                  id TEXT PRIMARY KEY,
                  patient_id TEXT UNIQUE NOT NULL,
                  date_of_birth TEXT,
                  gender TEXT,
                  blood_group TEXT,
                  allergies_json TEXT NOT NULL DEFAULT '[]',
                  medical_history TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS pre_analyses (
                  id TEXT PRIMARY KEY,
                  patient_id TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'draft'
                    CHECK (status IN ('draft', 'submitted', 'completed')),
                  text_input TEXT,
                  voice_transcripts_json TEXT NOT NULL DEFAULT '[]',
                  selected_chips_json TEXT NOT NULL DEFAULT '[]',
                  image_urls_json TEXT NOT NULL DEFAULT '[]',
                  document_urls_json TEXT NOT NULL DEFAULT '[]',
                  ai_processing_status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (ai_processing_status IN ('pending', 'processing', 'completed', 'failed')),
                  ai_processing_started_at TEXT,
                  ai_processing_completed_at TEXT,
                  chat_finalized_at TEXT,
                  submitted_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS chat_precision_messages (
                  id TEXT PRIMARY KEY,
                  pre_analysis_id TEXT NOT NULL REFERENCES pre_analyses(id),
                  sender_type TEXT NOT NULL CHECK (sender_type IN ('ai', 'patient')),
                  message_text TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ai_reports (
                  id TEXT PRIMARY KEY,
                  pre_analysis_id TEXT NOT NULL REFERENCES pre_analyses(id),
                  patient_id TEXT NOT NULL,
                  overall_severity TEXT NOT NULL CHECK (overall_severity IN ('low', 'medium', 'high')),
                  overall_confidence REAL,
                  summary TEXT,
                  primary_diagnosis TEXT,
                  primary_diagnosis_confidence REAL,
                  recommendation_action TEXT,
                  recommendation_text TEXT,
                  explainability_json TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  CONSTRAINT ai_reports_pre_analysis_id_key UNIQUE (pre_analysis_id)
                );

                CREATE TABLE IF NOT EXISTS diagnostic_hypotheses (
                  id TEXT PRIMARY KEY,
                  ai_report_id TEXT NOT NULL REFERENCES ai_reports(id) ON DELETE CASCADE,
                  disease_name TEXT NOT NULL,
                  confidence REAL,
                  severity TEXT CHECK (severity IS NULL OR severity IN ('low', 'medium', 'high')),
                  keywords_json TEXT NOT NULL DEFAULT '[]',
                  explanation TEXT,
                  is_primary INTEGER NOT NULL DEFAULT 0,
                  is_excluded INTEGER NOT NULL DEFAULT 0,
                  exclusion_reason TEXT,
                  rank INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS timeline_events (
                  id TEXT PRIMARY KEY,
                  patient_id TEXT NOT NULL,
                  event_type TEXT NOT NULL,
                  event_title TEXT NOT NULL,
                  event_description TEXT,
                  status TEXT,
                  related_pre_analysis_id TEXT,
                  related_ai_report_id TEXT,
                  event_date TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_pre_analyses_patient
                  ON pre_analyses(patient_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_chat_messages_analysis_created
                  ON chat_precision_messages(pre_analysis_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_hypotheses_report
                  ON diagnostic_hypotheses(ai_report_id, rank);
                CREATE INDEX IF NOT EXISTS idx_timeline_patient_date
                  ON timeline_events(patient_id, event_date DESC);
                """
            )
