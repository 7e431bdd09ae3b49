"""Lightweight data structures for photolessons."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime


PRIMARY_JOB = "primary-generation"
FOLLOWUP_JOB = "followup-generation"
JOB_TYPES = (PRIMARY_JOB, FOLLOWUP_JOB)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})


@dataclass(frozen=True)
class GradeLevel:
    """A grade band that gets its own generated content and PDF."""

    key: str
    name: str
    ngss_grade: str
    standards_key: str


GRADE_LEVELS: tuple[GradeLevel, ...] = (
    GradeLevel("kindergarten", "Kindergarten", "K", "kindergarten"),
    GradeLevel("first-grade", "First Grade", "1", "grade1"),
    GradeLevel("second-grade", "Second Grade", "2", "grade2"),
    GradeLevel("third-grade", "Third Grade", "3", "grade3"),
    GradeLevel("fourth-grade", "Fourth Grade", "4", "grade4"),
    GradeLevel("fifth-grade", "Fifth Grade", "5", "grade5"),
)


@dataclass
class Job:
    """A queue record tracked through the job state machine."""

    id: int
    job_type: str
    source_ref: str
    category: str
    filename: str
    name_no_ext: str
    asset_id: int | None
    status: str
    attempts: int
    reprocess: bool
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    last_error: str
    result_json: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            id=row["id"],
            job_type=row["job_type"],
            source_ref=row["source_ref"],
            category=row["category"],
            filename=row["filename"],
            name_no_ext=row["name_no_ext"],
            asset_id=row["asset_id"],
            status=row["status"],
            attempts=row["attempts"],
            reprocess=bool(row["reprocess"]),
            created_at=_parse_timestamp(row["created_at"]),
            started_at=_parse_timestamp(row["started_at"]),
            completed_at=_parse_timestamp(row["completed_at"]),
            last_error=row["last_error"] or "",
            result_json=row["result_json"] or "",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.job_type,
            "sourceRef": self.source_ref,
            "category": self.category,
            "filename": self.filename,
            "assetId": self.asset_id,
            "status": self.status,
            "attempts": self.attempts,
            "reprocess": self.reprocess,
            "createdAt": _format_timestamp(self.created_at),
            "startedAt": _format_timestamp(self.started_at),
            "completedAt": _format_timestamp(self.completed_at),
            "lastError": self.last_error,
        }


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
