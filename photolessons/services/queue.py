"""Persistent job queue and its state machine."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from photolessons.db import get_connection, init_db, retry_when_locked, transaction
from photolessons.errors import InvalidTransition
from photolessons.models import (
    COMPLETED,
    FAILED,
    JOB_TYPES,
    PENDING,
    PROCESSING,
    Job,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = frozenset(
    {
        (PENDING, PROCESSING),
        (PROCESSING, COMPLETED),
        (PROCESSING, FAILED),
        (PROCESSING, PENDING),
    }
)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QueueStore:
    """SQLite-backed queue of pipeline jobs.

    All timestamps are assigned here, never by callers. Within one store
    they never go backwards, even if the wall clock does.
    """

    def __init__(self, db_path: Path, clock: Clock = utc_now) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        self._last_stamp: datetime | None = None
        self._stamp_lock = threading.Lock()
        init_db(self.db_path)

    def current_time(self) -> datetime:
        """Read the store clock without issuing a write timestamp."""

        return self._clock()

    def _stamp(self) -> str:
        with self._stamp_lock:
            now = self._clock()
            if self._last_stamp is not None and now <= self._last_stamp:
                now = self._last_stamp + timedelta(microseconds=1)
            self._last_stamp = now
            return now.isoformat(timespec="microseconds")

    def _connect(self):
        return get_connection(self.db_path)

    def enqueue(
        self,
        job_type: str,
        source_ref: str,
        category: str,
        filename: str,
        *,
        name_no_ext: str | None = None,
        asset_id: int | None = None,
        reprocess: bool = False,
    ) -> Job:
        """Insert a pending job and return it."""

        if job_type not in JOB_TYPES:
            raise ValueError(f"Unknown job type: {job_type}")
        stem = name_no_ext if name_no_ext is not None else Path(filename).stem

        def _insert() -> int:
            conn = self._connect()
            try:
                with transaction(conn):
                    cursor = conn.execute(
                        """
                        INSERT INTO jobs
                            (job_type, source_ref, category, filename, name_no_ext,
                             asset_id, status, attempts, reprocess, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                        """,
                        (
                            job_type,
                            source_ref,
                            category,
                            filename,
                            stem,
                            asset_id,
                            1 if reprocess else 0,
                            self._stamp(),
                        ),
                    )
                return int(cursor.lastrowid)
            finally:
                conn.close()

        job_id = retry_when_locked(_insert)
        logger.info(
            "Job enqueued",
            extra={
                "event": "job_enqueued",
                "context": {
                    "job_id": job_id,
                    "job_type": job_type,
                    "filename": filename,
                    "category": category,
                    "reprocess": reprocess,
                },
            },
        )
        return self._require(job_id)

    def get(self, job_id: int) -> Job | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return Job.from_row(row) if row else None
        finally:
            conn.close()

    def _require(self, job_id: int) -> Job:
        job = self.get(job_id)
        if job is None:
            raise KeyError(f"Job not found: {job_id}")
        return job

    def list_jobs(self, status: str | None = None, limit: int = 200) -> list[Job]:
        conn = self._connect()
        try:
            if status:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE status = ? ORDER BY created_at, id LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs ORDER BY created_at, id LIMIT ?", (limit,)
                ).fetchall()
            return [Job.from_row(row) for row in rows]
        finally:
            conn.close()

    def counts(self) -> dict[str, int]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM jobs GROUP BY status"
            ).fetchall()
        finally:
            conn.close()
        totals = {PENDING: 0, PROCESSING: 0, COMPLETED: 0, FAILED: 0}
        totals.update({row["status"]: row["total"] for row in rows})
        return totals

    def current_processing(self) -> Job | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM jobs WHERE status = 'processing' LIMIT 1"
            ).fetchone()
            return Job.from_row(row) if row else None
        finally:
            conn.close()

    def find_active(self, job_type: str, filename: str, category: str) -> Job | None:
        """Return a pending or processing job for the same file, if any."""

        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT * FROM jobs
                WHERE job_type = ? AND filename = ? AND category = ?
                  AND status IN ('pending', 'processing')
                ORDER BY created_at, id LIMIT 1
                """,
                (job_type, filename, category),
            ).fetchone()
            return Job.from_row(row) if row else None
        finally:
            conn.close()

    def claim_next(self) -> Job | None:
        """Atomically move the oldest pending job to processing.

        Returns None when another job is already processing or nothing is
        pending.
        """

        def _claim() -> int | None:
            conn = self._connect()
            try:
                with transaction(conn):
                    busy = conn.execute(
                        "SELECT 1 FROM jobs WHERE status = 'processing' LIMIT 1"
                    ).fetchone()
                    if busy:
                        return None
                    row = conn.execute(
                        """
                        SELECT id FROM jobs WHERE status = 'pending'
                        ORDER BY created_at, id LIMIT 1
                        """
                    ).fetchone()
                    if not row:
                        return None
                    conn.execute(
                        """
                        UPDATE jobs SET status = 'processing', started_at = ?
                        WHERE id = ? AND status = 'pending'
                        """,
                        (self._stamp(), row["id"]),
                    )
                    return int(row["id"])
            finally:
                conn.close()

        job_id = retry_when_locked(_claim)
        if job_id is None:
            return None
        job = self._require(job_id)
        logger.info(
            "Job claimed",
            extra={
                "event": "job_claimed",
                "context": {
                    "job_id": job.id,
                    "job_type": job.job_type,
                    "filename": job.filename,
                    "attempts": job.attempts,
                },
            },
        )
        return job

    def _transition(self, job_id: int, target: str, **fields: object) -> Job:
        def _update() -> None:
            conn = self._connect()
            try:
                with transaction(conn):
                    row = conn.execute(
                        "SELECT status FROM jobs WHERE id = ?", (job_id,)
                    ).fetchone()
                    if not row:
                        raise KeyError(f"Job not found: {job_id}")
                    current = row["status"]
                    if (current, target) not in ALLOWED_TRANSITIONS:
                        raise InvalidTransition(
                            f"Job {job_id} cannot move from {current} to {target}"
                        )
                    assignments = ["status = ?"]
                    values: list[object] = [target]
                    for column, value in fields.items():
                        assignments.append(f"{column} = ?")
                        values.append(value)
                    values.extend([job_id, current])
                    conn.execute(
                        f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                        values,
                    )
            finally:
                conn.close()

        retry_when_locked(_update)
        return self._require(job_id)

    def complete(self, job_id: int, result: dict | None = None) -> Job:
        return self._transition(
            job_id,
            COMPLETED,
            completed_at=self._stamp(),
            result_json=json.dumps(result or {}),
        )

    def requeue(self, job_id: int, error: str = "") -> Job:
        """Send a processing job back to pending, spending one attempt."""

        job = self._require(job_id)
        return self._transition(
            job_id,
            PENDING,
            attempts=job.attempts + 1,
            started_at=None,
            last_error=error,
        )

    def fail(self, job_id: int, error: str, attempts: int | None = None) -> Job:
        """Mark a processing job terminally failed."""

        job = self._require(job_id)
        return self._transition(
            job_id,
            FAILED,
            attempts=job.attempts if attempts is None else attempts,
            completed_at=self._stamp(),
            last_error=error,
        )

    def prune_completed(self, older_than: timedelta) -> int:
        """Delete completed jobs whose grace period has elapsed."""

        cutoff = (self._clock() - older_than).isoformat(timespec="microseconds")

        def _delete() -> int:
            conn = self._connect()
            try:
                with transaction(conn):
                    cursor = conn.execute(
                        "DELETE FROM jobs WHERE status = 'completed' AND completed_at < ?",
                        (cutoff,),
                    )
                return cursor.rowcount
            finally:
                conn.close()

        removed = retry_when_locked(_delete)
        if removed:
            logger.info(
                "Pruned completed jobs",
                extra={"event": "jobs_pruned", "context": {"count": removed}},
            )
        return removed

    def clear_completed(self) -> int:
        """Delete every completed job regardless of age."""

        def _delete() -> int:
            conn = self._connect()
            try:
                with transaction(conn):
                    cursor = conn.execute("DELETE FROM jobs WHERE status = 'completed'")
                return cursor.rowcount
            finally:
                conn.close()

        return retry_when_locked(_delete)
