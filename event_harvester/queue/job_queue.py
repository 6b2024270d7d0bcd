"""Durable priority job queue stored in SQLite."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional

import structlog

from ..errors import BrokerUnavailable
from ..infra.broker import BrokerConnection
from ..records import JobStatus, utcnow
from .jobs import Job, JobPayload, Priority, decode_payload, encode_payload

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    priority INTEGER NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    run_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    progress INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, priority DESC, run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_finished ON jobs(status, finished_at);
"""


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class JobQueue:
    """Queue operations over the ``jobs`` table.

    Jobs are claimed highest priority first, then in enqueue order, and only
    once their ``run_at`` has passed. ``attempts`` counts claims; a deferral
    hands the attempt back.
    """

    def __init__(
        self,
        broker: BrokerConnection,
        default_attempts: int = 3,
        backoff_base: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.broker = broker
        self.default_attempts = default_attempts
        self.backoff_base = backoff_base
        self._clock = clock
        self.logger = logger or structlog.get_logger("event_harvester.queue")
        self.broker.ensure_schema(_SCHEMA)

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------
    def enqueue(
        self,
        payload: JobPayload,
        priority: int = Priority.NORMAL,
        delay_seconds: float = 0.0,
        max_attempts: int | None = None,
    ) -> Job:
        now = self._clock()
        job = Job(
            id=uuid.uuid4().hex,
            payload=payload,
            priority=int(priority),
            max_attempts=max_attempts or self.default_attempts,
            run_at=now + timedelta(seconds=max(0.0, delay_seconds)),
            created_at=now,
        )
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs(id, kind, payload, priority, status, attempts, max_attempts,
                                 run_at, created_at, progress)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, 0)
                """,
                (
                    job.id,
                    job.kind,
                    json.dumps(encode_payload(payload)),
                    job.priority,
                    JobStatus.QUEUED.value,
                    job.max_attempts,
                    _ts(job.run_at),
                    _ts(job.created_at),
                ),
            )
        self.logger.info("job_enqueued", job=job.id, kind=job.kind, priority=job.priority, delay=delay_seconds)
        return job

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------
    def claim_next(self) -> Optional[Job]:
        now = _ts(self._clock())
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT id FROM jobs
                WHERE status = ? AND run_at <= ?
                ORDER BY priority DESC, rowid ASC
                LIMIT 1
                """,
                (JobStatus.QUEUED.value, now),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE jobs SET status = ?, attempts = attempts + 1, started_at = ?,
                                finished_at = NULL, progress = 0
                WHERE id = ?
                """,
                (JobStatus.ACTIVE.value, now, row["id"]),
            )
            return self._load(conn, row["id"])

    def complete(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE jobs SET status = ?, finished_at = ?, progress = 100, result = ?, error = NULL
                WHERE id = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    _ts(self._clock()),
                    json.dumps(result) if result is not None else None,
                    job_id,
                ),
            )
        self.logger.info("job_completed", job=job_id)

    def fail(self, job_id: str, error: str, retryable: bool = True) -> Optional[Job]:
        """Requeue with exponential backoff while attempts remain, else park as failed."""

        now = self._clock()
        with self._transaction() as conn:
            job = self._load(conn, job_id)
            if job is None:
                return None
            if retryable and job.attempts < job.max_attempts:
                delay = self.backoff_delay(job.attempts)
                conn.execute(
                    "UPDATE jobs SET status = ?, run_at = ?, error = ?, started_at = NULL WHERE id = ?",
                    (JobStatus.QUEUED.value, _ts(now + timedelta(seconds=delay)), error, job_id),
                )
                self.logger.warning(
                    "job_retry_scheduled", job=job_id, attempt=job.attempts, retry_in=delay, error=error
                )
            else:
                conn.execute(
                    "UPDATE jobs SET status = ?, finished_at = ?, error = ? WHERE id = ?",
                    (JobStatus.FAILED.value, _ts(now), error, job_id),
                )
                self.logger.error("job_failed", job=job_id, attempts=job.attempts, error=error)
            return self._load(conn, job_id)

    def defer(self, job_id: str, delay_seconds: float, reason: str) -> None:
        """Requeue after ``delay_seconds`` without consuming an attempt."""

        run_at = self._clock() + timedelta(seconds=max(0.0, delay_seconds))
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE jobs SET status = ?, run_at = ?, error = ?, started_at = NULL,
                                attempts = MAX(attempts - 1, 0)
                WHERE id = ?
                """,
                (JobStatus.QUEUED.value, _ts(run_at), reason, job_id),
            )
        self.logger.info("job_deferred", job=job_id, retry_in=delay_seconds, reason=reason)

    def update_progress(self, job_id: str, progress: int) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE jobs SET progress = ? WHERE id = ?", (int(progress), job_id))

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base * (2 ** max(0, attempt - 1))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def get(self, job_id: str) -> Optional[Job]:
        with self._reading() as conn:
            return self._load(conn, job_id)

    def list_jobs(
        self, status: JobStatus | str | None = None, limit: int = 50, offset: int = 0
    ) -> list[Job]:
        params: list[Any] = []
        where = ""
        if status is not None:
            where = "WHERE status = ?"
            params.append(JobStatus(status).value)
        params.extend([limit, offset])
        with self._reading() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def finished_since(self, since: datetime) -> list[Job]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE finished_at IS NOT NULL AND finished_at >= ? ORDER BY finished_at",
                (_ts(since),),
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def stats(self) -> dict[str, int]:
        now = _ts(self._clock())
        with self._reading() as conn:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(status = 'queued' AND run_at <= ?), 0) AS waiting,
                    COALESCE(SUM(status = 'queued' AND run_at > ?), 0) AS delayed,
                    COALESCE(SUM(status = 'active'), 0) AS active,
                    COALESCE(SUM(status = 'completed'), 0) AS completed,
                    COALESCE(SUM(status = 'failed'), 0) AS failed,
                    COUNT(*) AS total
                FROM jobs
                """,
                (now, now),
            ).fetchone()
        return {key: row[key] for key in ("waiting", "delayed", "active", "completed", "failed", "total")}

    def pending_count(self) -> int:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM jobs WHERE status IN (?, ?)",
                (JobStatus.QUEUED.value, JobStatus.ACTIVE.value),
            ).fetchone()
        return row["n"]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def clean(self, grace_seconds: float, status: JobStatus | str = JobStatus.COMPLETED) -> int:
        state = JobStatus(status)
        if state not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError("Only completed or failed jobs can be cleaned")
        cutoff = self._clock() - timedelta(seconds=grace_seconds)
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE status = ? AND finished_at < ?",
                (state.value, _ts(cutoff)),
            )
            removed = cursor.rowcount
        self.logger.info("jobs_cleaned", status=state.value, removed=removed)
        return removed

    def retry_failed(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs SET status = ?, attempts = 0, run_at = ?, finished_at = NULL
                WHERE status = ?
                """,
                (JobStatus.QUEUED.value, _ts(self._clock()), JobStatus.FAILED.value),
            )
            count = cursor.rowcount
        self.logger.info("failed_jobs_requeued", count=count)
        return count

    def remove(self, job_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    def recover_stalled(self) -> int:
        """Return jobs left active by a crashed process to the queue."""

        now = self._clock()
        with self._transaction() as conn:
            requeued = conn.execute(
                """
                UPDATE jobs SET status = ?, run_at = ?, started_at = NULL
                WHERE status = ? AND attempts < max_attempts
                """,
                (JobStatus.QUEUED.value, _ts(now), JobStatus.ACTIVE.value),
            ).rowcount
            parked = conn.execute(
                """
                UPDATE jobs SET status = ?, finished_at = ?, error = COALESCE(error, 'stalled')
                WHERE status = ?
                """,
                (JobStatus.FAILED.value, _ts(now), JobStatus.ACTIVE.value),
            ).rowcount
        if requeued or parked:
            self.logger.warning("stalled_jobs_recovered", requeued=requeued, failed=parked)
        return requeued

    # ------------------------------------------------------------------
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with self.broker.transaction() as conn:
                yield conn
        except sqlite3.OperationalError as exc:
            raise BrokerUnavailable(f"Queue database error: {exc}") from exc

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        try:
            with self.broker.reading() as conn:
                yield conn
        except sqlite3.OperationalError as exc:
            raise BrokerUnavailable(f"Queue database error: {exc}") from exc

    def _load(self, conn: sqlite3.Connection, job_id: str) -> Optional[Job]:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._from_row(row) if row else None

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            payload=decode_payload(json.loads(row["payload"])),
            priority=row["priority"],
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            run_at=_parse_ts(row["run_at"]),
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            finished_at=_parse_ts(row["finished_at"]),
            progress=row["progress"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
        )


__all__ = ["JobQueue"]
