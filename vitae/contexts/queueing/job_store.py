"""
Job storage with atomic admission and claim semantics.

Every method that changes state is a single atomic operation, so the queue
never needs its own lock:
- InMemoryJobStore holds one re-entrant lock per store
- SQLiteJobStore runs mutations in BEGIN IMMEDIATE transactions, which makes
  claim_next safe across processes sharing the same database file

FIFO order is the admission sequence, a monotonic counter assigned by add().
claim_next refuses to claim while any job is processing (single global worker).
"""

import copy
import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from vitae.utils.timestamp import from_iso, now, to_iso


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


@dataclass
class Job:
    """
    One extraction request.

    position and estimated_wait_minutes are not stored; the queue fills them
    in from the live queue whenever a job is read.
    """

    id: str
    owner_id: str
    input_ref: str
    status: JobStatus
    sequence: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[dict] = None
    error_message: Optional[str] = None
    position: int = 0
    estimated_wait_minutes: int = 0

    @property
    def processing_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "input_ref": self.input_ref,
            "status": self.status.value,
            "position": self.position,
            "estimated_wait_minutes": self.estimated_wait_minutes,
            "result": copy.deepcopy(self.result),
            "error_message": self.error_message,
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "processing_seconds": self.processing_seconds,
        }


class JobStore(ABC):
    """
    Base class for job stores.

    Args:
        clock: Callable returning the current aware datetime (injectable for tests)
    """

    def __init__(self, clock: Callable[[], datetime] = now):
        self.clock = clock

    @abstractmethod
    def add(self, owner_id: str, input_ref: str) -> Job:
        """Create a queued job with the next admission sequence."""
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    def queue_position(self, job_id: str) -> int:
        """1-based rank among queued jobs by sequence, or 0 if the job is not queued."""
        pass

    @abstractmethod
    def count(self, status: JobStatus) -> int:
        pass

    @abstractmethod
    def cancel_queued(self, job_id: str, owner_id: str) -> bool:
        """Cancel the owner's job if it is still queued. Returns whether it was cancelled."""
        pass

    @abstractmethod
    def claim_next(self) -> Optional[Job]:
        """
        Atomically move the oldest queued job to processing.

        Returns None when the queue is empty or a job is already processing.
        """
        pass

    @abstractmethod
    def complete(self, job_id: str, result: dict) -> bool:
        """processing -> completed with result. Returns False if the job was not processing."""
        pass

    @abstractmethod
    def fail(self, job_id: str, error_message: str) -> bool:
        """processing -> failed with error_message. Returns False if the job was not processing."""
        pass

    @abstractmethod
    def list_jobs(self, owner_id: str, limit: int = 10) -> List[Job]:
        """Owner's jobs, newest first."""
        pass

    @abstractmethod
    def jobs_since(self, since: datetime) -> List[Job]:
        """All jobs created at or after since."""
        pass

    @abstractmethod
    def requeue_stale(self, started_before: datetime) -> List[str]:
        """Move processing jobs started before the cutoff back to queued. Returns their ids."""
        pass

    @abstractmethod
    def delete_finished(self, finished_before: datetime) -> int:
        """Delete terminal jobs completed before the cutoff. Returns the number removed."""
        pass


class InMemoryJobStore(JobStore):
    """Job store backed by a lock-guarded dict. Reads return copies."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._jobs: Dict[str, Job] = {}
        self._next_sequence = 1
        self._lock = threading.RLock()

    def add(self, owner_id: str, input_ref: str) -> Job:
        with self._lock:
            job = Job(
                id=uuid.uuid4().hex,
                owner_id=owner_id,
                input_ref=input_ref,
                status=JobStatus.QUEUED,
                sequence=self._next_sequence,
                created_at=self.clock(),
            )
            self._next_sequence += 1
            self._jobs[job.id] = job
            return copy.deepcopy(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def _queued(self) -> List[Job]:
        return sorted(
            (job for job in self._jobs.values() if job.status is JobStatus.QUEUED),
            key=lambda job: job.sequence,
        )

    def queue_position(self, job_id: str) -> int:
        with self._lock:
            for index, job in enumerate(self._queued(), start=1):
                if job.id == job_id:
                    return index
            return 0

    def count(self, status: JobStatus) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status == status)

    def cancel_queued(self, job_id: str, owner_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.owner_id != owner_id or job.status is not JobStatus.QUEUED:
                return False
            job.status = JobStatus.CANCELLED
            job.completed_at = self.clock()
            return True

    def claim_next(self) -> Optional[Job]:
        with self._lock:
            if any(job.status is JobStatus.PROCESSING for job in self._jobs.values()):
                return None
            queued = self._queued()
            if not queued:
                return None
            job = queued[0]
            job.status = JobStatus.PROCESSING
            job.started_at = self.clock()
            return copy.deepcopy(job)

    def _finish(self, job_id: str, status: JobStatus, result=None, error_message=None) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PROCESSING:
                return False
            job.status = status
            job.result = copy.deepcopy(result)
            job.error_message = error_message
            job.completed_at = self.clock()
            return True

    def complete(self, job_id: str, result: dict) -> bool:
        return self._finish(job_id, JobStatus.COMPLETED, result=result)

    def fail(self, job_id: str, error_message: str) -> bool:
        return self._finish(job_id, JobStatus.FAILED, error_message=error_message)

    def list_jobs(self, owner_id: str, limit: int = 10) -> List[Job]:
        with self._lock:
            owned = [job for job in self._jobs.values() if job.owner_id == owner_id]
            owned.sort(key=lambda job: job.sequence, reverse=True)
            return copy.deepcopy(owned[:limit])

    def jobs_since(self, since: datetime) -> List[Job]:
        with self._lock:
            return copy.deepcopy([job for job in self._jobs.values() if job.created_at >= since])

    def requeue_stale(self, started_before: datetime) -> List[str]:
        with self._lock:
            requeued = []
            for job in self._jobs.values():
                if job.status is JobStatus.PROCESSING and job.started_at < started_before:
                    job.status = JobStatus.QUEUED
                    job.started_at = None
                    requeued.append(job.id)
            return requeued

    def delete_finished(self, finished_before: datetime) -> int:
        with self._lock:
            finished = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in TERMINAL_STATUSES and job.completed_at and job.completed_at < finished_before
            ]
            for job_id in finished:
                del self._jobs[job_id]
            return len(finished)


class SQLiteJobStore(JobStore):
    """
    Job store persisted in SQLite, safe to share between processes.

    The admission sequence is the table's INTEGER PRIMARY KEY AUTOINCREMENT,
    so it never repeats even after deletions. Timestamps are stored as UTC ISO
    8601 strings, which sort chronologically.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS extraction_jobs (
            sequence INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            owner_id TEXT NOT NULL,
            input_ref TEXT NOT NULL,
            status TEXT NOT NULL,
            result TEXT,
            error_message TEXT,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_jobs_status ON extraction_jobs(status, sequence);
        CREATE INDEX IF NOT EXISTS idx_jobs_owner ON extraction_jobs(owner_id);
    """

    def __init__(self, db_path: Path, **kwargs):
        super().__init__(**kwargs)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._transaction() as conn:
            for statement in self.SCHEMA.split(";"):
                if statement.strip():
                    conn.execute(statement)

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE write transaction: commit on success, rollback on error."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            owner_id=row["owner_id"],
            input_ref=row["input_ref"],
            status=JobStatus(row["status"]),
            sequence=row["sequence"],
            created_at=from_iso(row["created_at"]),
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
            result=json.loads(row["result"]) if row["result"] else None,
            error_message=row["error_message"],
        )

    def add(self, owner_id: str, input_ref: str) -> Job:
        job_id = uuid.uuid4().hex
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO extraction_jobs (id, owner_id, input_ref, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (job_id, owner_id, input_ref, JobStatus.QUEUED.value, to_iso(self.clock())),
            )
            row = conn.execute("SELECT * FROM extraction_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row)

    def get(self, job_id: str) -> Optional[Job]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM extraction_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def queue_position(self, job_id: str) -> int:
        with self._reader() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM extraction_jobs
                WHERE status = ?
                  AND sequence <= (SELECT sequence FROM extraction_jobs WHERE id = ? AND status = ?)
                """,
                (JobStatus.QUEUED.value, job_id, JobStatus.QUEUED.value),
            ).fetchone()
        return row[0]

    def count(self, status: JobStatus) -> int:
        with self._reader() as conn:
            (total,) = conn.execute(
                "SELECT COUNT(*) FROM extraction_jobs WHERE status = ?", (JobStatus(status).value,)
            ).fetchone()
        return total

    def cancel_queued(self, job_id: str, owner_id: str) -> bool:
        with self._transaction() as conn:
            changed = conn.execute(
                "UPDATE extraction_jobs SET status = ?, completed_at = ? WHERE id = ? AND owner_id = ? AND status = ?",
                (JobStatus.CANCELLED.value, to_iso(self.clock()), job_id, owner_id, JobStatus.QUEUED.value),
            ).rowcount
        return changed == 1

    def claim_next(self) -> Optional[Job]:
        with self._transaction() as conn:
            busy = conn.execute(
                "SELECT 1 FROM extraction_jobs WHERE status = ? LIMIT 1", (JobStatus.PROCESSING.value,)
            ).fetchone()
            if busy:
                return None

            row = conn.execute(
                "SELECT id FROM extraction_jobs WHERE status = ? ORDER BY sequence LIMIT 1",
                (JobStatus.QUEUED.value,),
            ).fetchone()
            if row is None:
                return None

            conn.execute(
                "UPDATE extraction_jobs SET status = ?, started_at = ? WHERE id = ?",
                (JobStatus.PROCESSING.value, to_iso(self.clock()), row["id"]),
            )
            claimed = conn.execute("SELECT * FROM extraction_jobs WHERE id = ?", (row["id"],)).fetchone()
        return self._row_to_job(claimed)

    def _finish(self, job_id: str, status: JobStatus, result=None, error_message=None) -> bool:
        with self._transaction() as conn:
            changed = conn.execute(
                "UPDATE extraction_jobs SET status = ?, result = ?, error_message = ?, completed_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    status.value,
                    json.dumps(result) if result is not None else None,
                    error_message,
                    to_iso(self.clock()),
                    job_id,
                    JobStatus.PROCESSING.value,
                ),
            ).rowcount
        return changed == 1

    def complete(self, job_id: str, result: dict) -> bool:
        return self._finish(job_id, JobStatus.COMPLETED, result=result)

    def fail(self, job_id: str, error_message: str) -> bool:
        return self._finish(job_id, JobStatus.FAILED, error_message=error_message)

    def list_jobs(self, owner_id: str, limit: int = 10) -> List[Job]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM extraction_jobs WHERE owner_id = ? ORDER BY sequence DESC LIMIT ?",
                (owner_id, limit),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def jobs_since(self, since: datetime) -> List[Job]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM extraction_jobs WHERE created_at >= ? ORDER BY sequence", (to_iso(since),)
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def requeue_stale(self, started_before: datetime) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM extraction_jobs WHERE status = ? AND started_at < ?",
                (JobStatus.PROCESSING.value, to_iso(started_before)),
            ).fetchall()
            job_ids = [row["id"] for row in rows]
            for job_id in job_ids:
                conn.execute(
                    "UPDATE extraction_jobs SET status = ?, started_at = NULL WHERE id = ?",
                    (JobStatus.QUEUED.value, job_id),
                )
        return job_ids

    def delete_finished(self, finished_before: datetime) -> int:
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        with self._transaction() as conn:
            removed = conn.execute(
                f"DELETE FROM extraction_jobs WHERE status IN ({placeholders}) AND completed_at < ?",
                (*[status.value for status in TERMINAL_STATUSES], to_iso(finished_before)),
            ).rowcount
        return removed
