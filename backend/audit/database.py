from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteAuditDB:
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
                CREATE TABLE IF NOT EXISTS command_audit (
                  id TEXT PRIMARY KEY,
                  consultation_id TEXT NOT NULL,
                  physician_id TEXT NOT NULL,
                  request_id TEXT NOT NULL,
                  command TEXT NOT NULL,
                  payload_hash TEXT NOT NULL,
                  status TEXT NOT NULL,
                  lifecycle_json TEXT NOT NULL,
                  prescription_status_before TEXT,
                  prescription_status_after TEXT,
                  attempts INTEGER NOT NULL DEFAULT 0,
                  override_reason TEXT,
                  error_code TEXT,
                  error_message TEXT,
                  started_at TEXT NOT NULL,
                  finished_at TEXT,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_command_audit_consultation_started
                  ON command_audit(consultation_id, started_at);
                """
            )
