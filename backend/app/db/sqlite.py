from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import JobRecord, JobState


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_ACTIVE = (JobState.PENDING.value, JobState.RUNNING.value)
_TERMINAL = (JobState.COMPLETED.value, JobState.FAILED.value, JobState.CANCELLED.value)


class SQLiteJobStore:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                  job_id TEXT PRIMARY KEY,
                  kind TEXT NOT NULL,
                  state TEXT NOT NULL,
                  connection_ref TEXT NOT NULL,
                  params_json TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  file_path TEXT,
                  file_format TEXT,
                  file_size INTEGER,
                  output_path TEXT,
                  command TEXT,
                  error TEXT,
                  started_at TEXT,
                  ended_at TEXT
                )
                """
            )
            conn.commit()

    def create_job(
        self,
        job_id: str,
        *,
        kind: str,
        connection_ref: str,
        params: Dict[str, Any],
        command: Optional[str] = None,
        file_path: Optional[str] = None,
        file_format: Optional[str] = None,
        file_size: Optional[int] = None,
        output_path: Optional[str] = None,
    ) -> JobRecord:
        now = _now_iso()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO jobs(job_id, kind, state, connection_ref, params_json, created_at, updated_at,
                                 file_path, file_format, file_size, output_path, command)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    kind,
                    JobState.PENDING.value,
                    connection_ref,
                    json.dumps(params, ensure_ascii=False),
                    now,
                    now,
                    file_path,
                    file_format,
                    file_size,
                    output_path,
                    command,
                ),
            )
            conn.commit()
        return self.get_job(job_id)

    def mark_running(self, job_id: str, started_at: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE jobs SET state = ?, started_at = ?, updated_at = ? WHERE job_id = ? AND state = ?",
                (JobState.RUNNING.value, started_at, _now_iso(), job_id, JobState.PENDING.value),
            )
            conn.commit()
            return cur.rowcount == 1

    def finalize_job(self, job_id: str, state: JobState, *, ended_at: str, error: Optional[str] = None) -> bool:
        """Commit a terminal state. Only the first call for a job succeeds."""
        if not state.is_terminal:
            raise ValueError(f"Not a terminal state: {state.value}")
        with self._conn() as conn:
            cur = conn.execute(
                f"UPDATE jobs SET state = ?, error = ?, ended_at = ?, updated_at = ? "
                f"WHERE job_id = ? AND state IN ({', '.join('?' for _ in _ACTIVE)})",
                (state.value, error, ended_at, _now_iso(), job_id, *_ACTIVE),
            )
            conn.commit()
            return cur.rowcount == 1

    def get_job(self, job_id: str) -> JobRecord:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
            if row is None:
                raise KeyError(f"Job not found: {job_id}")
            return JobRecord(**dict(row))  # type: ignore[arg-type]

    def list_jobs(self, limit: int = 50) -> List[JobRecord]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (int(limit),)).fetchall()
            return [JobRecord(**dict(r)) for r in rows]  # type: ignore[arg-type]

    def list_ended_before(self, cutoff_iso: str) -> List[JobRecord]:
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE state IN ({', '.join('?' for _ in _TERMINAL)}) "
                "AND ended_at IS NOT NULL AND ended_at < ?",
                (*_TERMINAL, cutoff_iso),
            ).fetchall()
            return [JobRecord(**dict(r)) for r in rows]  # type: ignore[arg-type]

    def interrupt_unfinished(self, reason: str) -> List[str]:
        """Fail jobs left Pending/Running by a previous process."""
        now = _now_iso()
        placeholders = ", ".join("?" for _ in _ACTIVE)
        with self._conn() as conn:
            rows = conn.execute(f"SELECT job_id FROM jobs WHERE state IN ({placeholders})", _ACTIVE).fetchall()
            conn.execute(
                f"UPDATE jobs SET state = ?, error = ?, ended_at = ?, updated_at = ? WHERE state IN ({placeholders})",
                (JobState.FAILED.value, reason, now, now, *_ACTIVE),
            )
            conn.commit()
            return [str(r["job_id"]) for r in rows]

    def delete_job(self, job_id: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            conn.commit()
