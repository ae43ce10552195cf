from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import TERMINAL_STATUSES, JobRecord, JobStatus
from .utils import iso_after, new_id, truncate_text, utc_now, utc_now_iso

MAX_DIAGNOSTICS_CHARS = 16_000

PAUSED_KEY = "paused"
MAX_CONCURRENT_KEY = "max_concurrent"


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        job_id=row["job_id"],
        target_url=row["target_url"],
        company_label=row["company_label"],
        external_lead_id=row["external_lead_id"],
        payload=json.loads(row["payload_json"]),
        status=JobStatus(row["status"]),
        created_at=row["created_at"],
        claimed_at=row["claimed_at"],
        claim_token=row["claim_token"],
        lease_expires_at=row["lease_expires_at"],
        completed_at=row["completed_at"],
        failed_at=row["failed_at"],
        last_error=row["last_error"],
        final_url=row["final_url"],
        retry_count=int(row["retry_count"]),
        diagnostics=row["diagnostics"],
    )


class Store:
    """SQLite-backed job queue.

    One connection per instance, shared between threads behind a re-entrant
    lock. Claims run inside ``BEGIN IMMEDIATE`` so that several processes
    pointed at the same file never hand out the same job twice.
    """

    def __init__(self, db_path: Path, timeout: float = 10.0) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    target_url TEXT NOT NULL,
                    company_label TEXT NOT NULL DEFAULT '',
                    external_lead_id TEXT NOT NULL DEFAULT '',
                    payload_json TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    claimed_at TEXT,
                    claim_token TEXT,
                    lease_expires_at TEXT,
                    completed_at TEXT,
                    failed_at TEXT,
                    last_error TEXT,
                    final_url TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    diagnostics TEXT
                );

                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_status_created_at
                    ON jobs(status, created_at);
                CREATE INDEX IF NOT EXISTS idx_job_events_job_timestamp
                    ON job_events(job_id, timestamp);
                """
            )
            self.conn.commit()

    def add_event(self, job_id: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO job_events(job_id, event_type, timestamp, details_json)
                VALUES (?, ?, ?, ?)
                """,
                (
                    job_id,
                    event_type,
                    utc_now_iso(),
                    json.dumps(details or {}, sort_keys=True, ensure_ascii=False, default=str),
                ),
            )
            self.conn.commit()

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT event_type, timestamp, details_json FROM job_events WHERE job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        return [
            {
                "event_type": row["event_type"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def insert_job(
        self,
        target_url: str,
        company_label: str = "",
        external_lead_id: str = "",
        payload: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> JobRecord:
        job_id = new_id()
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO jobs(
                    job_id, target_url, company_label, external_lead_id, payload_json,
                    status, created_at, retry_count
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    target_url,
                    company_label,
                    external_lead_id,
                    json.dumps(payload or {}, ensure_ascii=False),
                    JobStatus.PENDING.value,
                    utc_now_iso(),
                    retry_count,
                ),
            )
            self.conn.commit()
            job = self.get_job(job_id)
        if job is None:
            raise RuntimeError(f"job {job_id} vanished right after insert")
        return job

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def list_jobs(self) -> list[JobRecord]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM jobs ORDER BY created_at, rowid").fetchall()
        return [_row_to_job(row) for row in rows]

    def list_jobs_by_status(self, status: JobStatus) -> list[JobRecord]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at, rowid",
                (status.value,),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def count_by_status(self, status: JobStatus) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS count FROM jobs WHERE status = ?",
                (status.value,),
            ).fetchone()
        return int(row["count"])

    def claim_oldest_pending(
        self,
        lease_seconds: float | None = None,
        now: datetime | None = None,
    ) -> JobRecord | None:
        moment = now or utc_now()
        claimed_at = moment.isoformat(timespec="microseconds")
        lease_expires_at = iso_after(lease_seconds, moment) if lease_seconds else None
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                row = self.conn.execute(
                    "SELECT job_id FROM jobs WHERE status = ? ORDER BY created_at, rowid LIMIT 1",
                    (JobStatus.PENDING.value,),
                ).fetchone()
                if row is None:
                    self.conn.commit()
                    return None
                job_id = row["job_id"]
                self.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        claimed_at = ?,
                        claim_token = ?,
                        lease_expires_at = ?
                    WHERE job_id = ? AND status = ?
                    """,
                    (
                        JobStatus.PROCESSING.value,
                        claimed_at,
                        new_id(),
                        lease_expires_at,
                        job_id,
                        JobStatus.PENDING.value,
                    ),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            return self.get_job(job_id)

    def renew_lease(self, job_id: str, claim_token: str | None, lease_seconds: float) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                """
                UPDATE jobs SET lease_expires_at = ?
                WHERE job_id = ? AND status = ? AND claim_token IS ?
                """,
                (iso_after(lease_seconds), job_id, JobStatus.PROCESSING.value, claim_token),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def reclaim_expired_leases(self, now: datetime | None = None) -> list[str]:
        """Return ``processing`` jobs whose lease ran out to ``pending``."""
        cutoff = (now or utc_now()).isoformat(timespec="microseconds")
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                rows = self.conn.execute(
                    """
                    SELECT job_id, claimed_at FROM jobs
                    WHERE status = ? AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?
                    """,
                    (JobStatus.PROCESSING.value, cutoff),
                ).fetchall()
                for row in rows:
                    self.conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, claimed_at = NULL, claim_token = NULL, lease_expires_at = NULL
                        WHERE job_id = ?
                        """,
                        (JobStatus.PENDING.value, row["job_id"]),
                    )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            reclaimed = [row["job_id"] for row in rows]
            for row in rows:
                self.add_event(row["job_id"], "lease_expired", {"claimed_at": row["claimed_at"]})
        return reclaimed

    def update_job(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        completed_at: str | None = None,
        failed_at: str | None = None,
        last_error: str | None = None,
        final_url: str | None = None,
        diagnostics: str | None = None,
        claim_token: str | None = None,
    ) -> bool:
        updates: list[str] = []
        values: list[object] = []
        if status is not None:
            updates.append("status = ?")
            values.append(status.value)
            if status == JobStatus.FAILED:
                updates.append("retry_count = retry_count + 1")
            if status in TERMINAL_STATUSES:
                updates.append("lease_expires_at = NULL")
        if completed_at is not None:
            updates.append("completed_at = ?")
            values.append(completed_at)
        if failed_at is not None:
            updates.append("failed_at = ?")
            values.append(failed_at)
        if last_error is not None:
            updates.append("last_error = ?")
            values.append(last_error)
        if final_url is not None:
            updates.append("final_url = ?")
            values.append(final_url)
        if diagnostics is not None:
            updates.append("diagnostics = ?")
            values.append(truncate_text(diagnostics, MAX_DIAGNOSTICS_CHARS))
        if not updates:
            return False

        conditions = ["job_id = ?"]
        values.append(job_id)
        if status in TERMINAL_STATUSES:
            # Terminal states are written once, and only over a live claim.
            conditions.append("status = ?")
            values.append(JobStatus.PROCESSING.value)
        if claim_token is not None:
            conditions.append("claim_token = ?")
            values.append(claim_token)
        query = f"UPDATE jobs SET {', '.join(updates)} WHERE {' AND '.join(conditions)}"
        with self._lock:
            cursor = self.conn.execute(query, values)
            self.conn.commit()
        return cursor.rowcount > 0

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            self.conn.commit()

    def clear_all(self) -> int:
        with self._lock:
            cursor = self.conn.execute("DELETE FROM jobs")
            self.conn.commit()
        return cursor.rowcount

    def clear_by_status(self, status: JobStatus) -> int:
        with self._lock:
            cursor = self.conn.execute("DELETE FROM jobs WHERE status = ?", (status.value,))
            self.conn.commit()
        return cursor.rowcount

    def summary_counts(self) -> dict[str, int]:
        with self._lock:
            rows = self.conn.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status").fetchall()
        output = {status.value: 0 for status in JobStatus}
        for row in rows:
            output[str(row["status"])] = int(row["count"])
        output["total"] = sum(output[status.value] for status in JobStatus)
        return output

    def _get_setting(self, key: str) -> str | None:
        with self._lock:
            row = self.conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return None if row is None else str(row["value"])

    def _set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO settings(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            self.conn.commit()

    def is_paused(self) -> bool:
        return self._get_setting(PAUSED_KEY) == "true"

    def set_paused(self, paused: bool) -> None:
        self._set_setting(PAUSED_KEY, "true" if paused else "false")

    def get_max_concurrent(self, default: int) -> int:
        value = self._get_setting(MAX_CONCURRENT_KEY)
        return default if value is None else int(value)

    def set_max_concurrent(self, value: int) -> None:
        self._set_setting(MAX_CONCURRENT_KEY, str(value))
