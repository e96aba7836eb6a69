from __future__ import annotations

import hashlib
import json
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from .database import SQLiteAuditDB
from .time_utils import to_iso, utc_now

_CREDENTIAL_KEYS = {"password", "mfaCode", "mfa_code"}


def canonical_payload_hash(payload: dict[str, Any]) -> str:
    """Hash a command body with credentials stripped, so secrets never reach disk."""
    cleaned = {key: value for key, value in payload.items() if key not in _CREDENTIAL_KEYS}
    encoded = json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


@dataclass
class AuditEntry:
    entry_id: str
    status: str
    lifecycle: list[str]


class AuditError(Exception):
    pass


class CommandAuditLog:
    _TRANSITIONS = {
        "planned": {"executing", "blocked", "failed"},
        "executing": {"succeeded", "failed"},
        "succeeded": set(),
        "failed": set(),
        "blocked": set(),
    }
    _FINISHED = {"succeeded", "failed", "blocked"}

    def __init__(self, db: SQLiteAuditDB) -> None:
        self._db = db

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._db.connection() as conn:
                yield conn
        except sqlite3.Error as exc:
            raise AuditError(f"Audit store unavailable: {exc}") from exc

    def start(
        self,
        *,
        consultation_id: str,
        physician_id: str,
        request_id: str,
        command: str,
        payload: dict[str, Any],
        prescription_status: str | None,
        override_reason: str | None = None,
    ) -> AuditEntry:
        now = to_iso(utc_now())
        entry_id = uuid.uuid4().hex
        lifecycle = ["planned"]
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO command_audit (
                  id, consultation_id, physician_id, request_id, command, payload_hash,
                  status, lifecycle_json, prescription_status_before, prescription_status_after,
                  attempts, override_reason, error_code, error_message,
                  started_at, finished_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 0, ?, NULL, NULL, ?, NULL, ?)
                """,
                (
                    entry_id,
                    consultation_id,
                    physician_id,
                    request_id,
                    command,
                    canonical_payload_hash(payload),
                    "planned",
                    json.dumps(lifecycle),
                    prescription_status,
                    override_reason,
                    now,
                    now,
                ),
            )
        return AuditEntry(entry_id=entry_id, status="planned", lifecycle=lifecycle)

    def transition(
        self,
        *,
        entry_id: str,
        next_state: str,
        attempts: int | None = None,
        prescription_status: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> list[str]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT status, lifecycle_json FROM command_audit WHERE id = ?",
                (entry_id,),
            ).fetchone()
            if not row:
                raise AuditError(f"Audit entry not found: {entry_id}")
            current = row["status"]
            lifecycle = json.loads(row["lifecycle_json"])
            if next_state not in self._TRANSITIONS.get(current, set()):
                raise AuditError(f"Invalid transition: {current} -> {next_state}")

            lifecycle.append(next_state)
            now = to_iso(utc_now())
            finished_at = now if next_state in self._FINISHED else None
            conn.execute(
                """
                UPDATE command_audit
                SET status = ?,
                    lifecycle_json = ?,
                    attempts = COALESCE(?, attempts),
                    prescription_status_after = COALESCE(?, prescription_status_after),
                    error_code = COALESCE(?, error_code),
                    error_message = COALESCE(?, error_message),
                    finished_at = COALESCE(?, finished_at),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    next_state,
                    json.dumps(lifecycle),
                    attempts,
                    prescription_status,
                    error_code,
                    error_message,
                    finished_at,
                    now,
                    entry_id,
                ),
            )
            return lifecycle

    def list_for_consultation(self, consultation_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, command, physician_id, status, lifecycle_json, attempts,
                       prescription_status_before, prescription_status_after,
                       override_reason, error_code, error_message, started_at, finished_at
                FROM command_audit
                WHERE consultation_id = ?
                ORDER BY rowid DESC
                LIMIT ?
                """,
                (consultation_id, max(1, limit)),
            ).fetchall()
        entries: list[dict[str, Any]] = []
        for row in rows:
            entry = dict(row)
            entry["lifecycle"] = json.loads(entry.pop("lifecycle_json"))
            entries.append(entry)
        return entries
