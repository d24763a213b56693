"""
Admission-controlled extraction queue with a single global worker.

Callers enqueue jobs and get a queue position and wait estimate back. One
worker (a daemon thread per process, or run_until_empty() from the CLI) claims
jobs in FIFO order and drives each one to a terminal state. The job store's
atomic claim_next guarantees at most one job is processing at any time, even
with several worker processes on the same SQLite file.

Position and wait are recomputed on every read:
    position = 1-based rank among queued jobs
    estimated_wait_minutes = (position + 1 if a job is processing else position) * minutes_per_job

Usage:
    queue = ExtractionQueue(job_store, pipeline, text_provider)
    receipt = queue.enqueue("user-42", input_ref)
    queue.start()
    ...
    job = queue.get_status(receipt.job_id, owner_id="user-42")
"""

import threading
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import List, Optional

from omegaconf import DictConfig

from vitae.contexts.extraction.exceptions import MissingIdentityError, SessionNotFoundError
from vitae.contexts.extraction.pipeline import ExtractionPipeline
from vitae.contexts.queueing.exceptions import InputNotFoundError, JobNotFoundError
from vitae.contexts.queueing.job_store import Job, JobStatus, JobStore
from vitae.contexts.queueing.logger import (
    _log_debug,
    _log_exception,
    _log_info,
    _log_success,
    _log_warning,
)
from vitae.contexts.queueing.sources import TextProvider
from vitae.utils.config import get_section
from vitae.utils.event_logging import log_job_event, log_status_change
from vitae.utils.exceptions import (
    AuthError,
    GenerationTimeoutError,
    ParseError,
    QuotaExceededError,
    UnknownGenerationError,
)

# Caller-safe failure messages, checked in order; internal details are only logged
FAILURE_MESSAGES = [
    (MissingIdentityError, "Missing identity information: no name could be found in the document."),
    ((AuthError, QuotaExceededError), "Service usage limit reached. Please try again tomorrow."),
    (GenerationTimeoutError, "Processing timed out. The document may be too complex or the service is busy."),
    (UnknownGenerationError, "The AI service is temporarily unavailable. Please try again later."),
    (ParseError, "The AI service returned an unreadable response. Please try again."),
    (SessionNotFoundError, "The processing session expired. Please resubmit the document."),
    (InputNotFoundError, "The uploaded document could not be found. Please upload it again."),
]
GENERIC_FAILURE_MESSAGE = "Processing failed. Please try again later."

EVENT_SOURCE = "queue"


def user_safe_message(error: Exception) -> str:
    """Map an exception to a short message that is safe to show the submitter."""
    for error_types, message in FAILURE_MESSAGES:
        if isinstance(error, error_types):
            return message
    return GENERIC_FAILURE_MESSAGE


@dataclass
class EnqueueReceipt:
    job_id: str
    position: int
    estimated_wait_minutes: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class QueueStats:
    """
    Queue snapshot. Averages cover jobs created within the stats window (24h by default).

    Attributes:
        queue_length: Jobs currently queued
        processing: 1 while the worker holds a job, else 0
        average_wait_minutes: Mean time from admission to start of processing
        average_processing_seconds: Mean processing time of finished jobs
    """

    queue_length: int
    processing: int
    average_wait_minutes: float
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    average_processing_seconds: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class ExtractionQueue:
    """
    Admission controller and worker for extraction jobs.

    Args:
        job_store: Atomic job storage
        pipeline: Extraction pipeline run for each claimed job (None for admission-only use)
        text_provider: Reads a job's raw text by input reference
        config: Loaded configuration (default: load_config())
    """

    def __init__(
        self,
        job_store: JobStore,
        pipeline: ExtractionPipeline,
        text_provider: TextProvider,
        config: DictConfig = None,
    ):
        self.job_store = job_store
        self.pipeline = pipeline
        self.text_provider = text_provider

        queue_config = get_section(config, "queue")
        self.minutes_per_job = int(queue_config.minutes_per_job)
        self.poll_interval = float(queue_config.poll_interval_seconds)
        self.stale_after_minutes = float(queue_config.stale_after_minutes)
        self.retention_hours = float(queue_config.retention_hours)
        self.stats_window_hours = float(queue_config.stats_window_hours)
        self.maintenance_interval = float(queue_config.maintenance_interval_minutes) * 60

        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

    # --- admission ---

    def estimate_wait_minutes(self, position: int, processing: bool) -> int:
        return (position + (1 if processing else 0)) * self.minutes_per_job

    def enqueue(self, owner_id: str, input_ref: str) -> EnqueueReceipt:
        """
        Admit a job. Always accepted (no queue-length cap).

        Raises:
            ValueError: If owner_id or input_ref is empty
        """
        if not owner_id:
            raise ValueError("owner_id is required")
        if not input_ref:
            raise ValueError("input_ref is required")

        job = self.job_store.add(owner_id, input_ref)
        position = self.job_store.queue_position(job.id)
        processing = self.job_store.count(JobStatus.PROCESSING) > 0
        receipt = EnqueueReceipt(
            job_id=job.id,
            position=position,
            estimated_wait_minutes=self.estimate_wait_minutes(position, processing),
        )

        _log_info(f"Job {job.id} queued for {owner_id} at position {position} (~{receipt.estimated_wait_minutes} min)")
        log_job_event("enqueued", job.id, EVENT_SOURCE, owner_id=owner_id, position=position)
        return receipt

    def cancel(self, job_id: str, owner_id: str) -> bool:
        """
        Cancel the caller's job if it is still queued.

        Returns:
            True if cancelled; False if the job is already processing or finished

        Raises:
            JobNotFoundError: Unknown job or job owned by someone else
        """
        job = self.job_store.get(job_id)
        if job is None or job.owner_id != owner_id:
            raise JobNotFoundError(job_id)

        cancelled = self.job_store.cancel_queued(job_id, owner_id)
        if cancelled:
            _log_info(f"Job {job_id} cancelled by owner")
            log_status_change(job_id, JobStatus.QUEUED.value, JobStatus.CANCELLED.value, EVENT_SOURCE)
            self._release_input(job)
        else:
            _log_debug(f"Job {job_id} not cancellable (status: {job.status.value})")
        return cancelled

    def get_status(self, job_id: str, owner_id: Optional[str] = None) -> Job:
        """
        Read a job with live position and wait estimate.

        Args:
            job_id: Job identifier
            owner_id: When given, the job must belong to this owner

        Raises:
            JobNotFoundError: Unknown job, or owner_id does not match
        """
        job = self.job_store.get(job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise JobNotFoundError(job_id)
        return self._with_live_position(job)

    def list_jobs(self, owner_id: str, limit: int = 10) -> List[Job]:
        """Owner's most recent jobs (newest first) with live positions."""
        return [self._with_live_position(job) for job in self.job_store.list_jobs(owner_id, limit=limit)]

    def _with_live_position(self, job: Job) -> Job:
        if job.status is JobStatus.QUEUED:
            job.position = self.job_store.queue_position(job.id)
            processing = self.job_store.count(JobStatus.PROCESSING) > 0
            job.estimated_wait_minutes = self.estimate_wait_minutes(job.position, processing)
        else:
            job.position = 0
            job.estimated_wait_minutes = 0
        return job

    def get_stats(self) -> QueueStats:
        """Current queue length and processing flag plus averages over the stats window."""
        since = self.job_store.clock() - timedelta(hours=self.stats_window_hours)
        recent = self.job_store.jobs_since(since)

        waits = [
            (job.started_at - job.created_at).total_seconds() / 60 for job in recent if job.started_at is not None
        ]
        durations = [
            job.processing_seconds
            for job in recent
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED) and job.processing_seconds is not None
        ]

        return QueueStats(
            queue_length=self.job_store.count(JobStatus.QUEUED),
            processing=min(1, self.job_store.count(JobStatus.PROCESSING)),
            average_wait_minutes=round(sum(waits) / len(waits), 2) if waits else 0.0,
            completed=sum(1 for job in recent if job.status is JobStatus.COMPLETED),
            failed=sum(1 for job in recent if job.status is JobStatus.FAILED),
            cancelled=sum(1 for job in recent if job.status is JobStatus.CANCELLED),
            average_processing_seconds=round(sum(durations) / len(durations), 2) if durations else 0.0,
        )

    # --- worker ---

    def process_next(self) -> bool:
        """
        Claim and process one job.

        Every claimed job ends completed or failed; pipeline exceptions are
        logged with their traceback and turned into a caller-safe message.

        Returns:
            True if a job was processed, False if nothing could be claimed
        """
        job = self.job_store.claim_next()
        if job is None:
            return False

        _log_info(f"Processing job {job.id} for {job.owner_id}")
        log_status_change(job.id, JobStatus.QUEUED.value, JobStatus.PROCESSING.value, EVENT_SOURCE)
        start_time = time.perf_counter()

        try:
            raw_text = self.text_provider.get_text(job.input_ref)
            result = self.pipeline.run(job.owner_id, raw_text)
        except Exception as e:
            elapsed = time.perf_counter() - start_time
            _log_exception(f"Job {job.id} failed after {elapsed:.2f}s: {type(e).__name__}: {e}")
            message = user_safe_message(e)
            if not self.job_store.fail(job.id, message):
                _log_warning(f"Job {job.id} was no longer processing when marking it failed")
            log_status_change(
                job.id,
                JobStatus.PROCESSING.value,
                JobStatus.FAILED.value,
                EVENT_SOURCE,
                error_type=type(e).__name__,
                processing_seconds=round(elapsed, 2),
            )
            self._release_input(job)
            return True

        elapsed = time.perf_counter() - start_time
        if not self.job_store.complete(job.id, result):
            _log_warning(f"Job {job.id} was no longer processing when marking it completed")
        _log_success(f"Job {job.id} completed in {elapsed:.2f}s")
        log_status_change(
            job.id,
            JobStatus.PROCESSING.value,
            JobStatus.COMPLETED.value,
            EVENT_SOURCE,
            processing_seconds=round(elapsed, 2),
        )
        self._release_input(job)
        return True

    def run_until_empty(self, max_jobs: Optional[int] = None) -> int:
        """Process jobs synchronously until none can be claimed. Returns the number processed."""
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if not self.process_next():
                break
            processed += 1
        return processed

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        """Start the background worker thread (no-op if already running)."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._worker_loop, name="vitae-worker", daemon=True)
        self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the worker to stop after its current job and wait for it."""
        self._stop_event.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def _worker_loop(self) -> None:
        _log_info(f"Worker started (poll interval {self.poll_interval:.1f}s)")
        next_maintenance = time.monotonic()
        while not self._stop_event.is_set():
            try:
                if time.monotonic() >= next_maintenance:
                    self.run_maintenance()
                    next_maintenance = time.monotonic() + self.maintenance_interval
                processed = self.process_next()
            except Exception as e:
                # Store failures must not kill the worker; the next poll retries
                _log_exception(f"Worker iteration failed: {type(e).__name__}: {e}")
                processed = False
            if not processed:
                self._stop_event.wait(self.poll_interval)
        _log_info("Worker stopped")

    # --- operator recovery ---

    def requeue_stale(self, older_than_minutes: Optional[float] = None) -> List[str]:
        """
        Put jobs stuck in processing (e.g. worker died mid-job) back in the queue.

        Args:
            older_than_minutes: Processing age cutoff (default: queue.stale_after_minutes)

        Returns:
            Ids of requeued jobs
        """
        minutes = self.stale_after_minutes if older_than_minutes is None else older_than_minutes
        cutoff = self.job_store.clock() - timedelta(minutes=minutes)
        job_ids = self.job_store.requeue_stale(cutoff)
        for job_id in job_ids:
            _log_warning(f"Requeued stale job {job_id}")
            log_status_change(job_id, JobStatus.PROCESSING.value, JobStatus.QUEUED.value, EVENT_SOURCE, reason="stale")
        return job_ids

    def cleanup_finished(self, older_than_hours: Optional[float] = None) -> int:
        """Delete completed/failed/cancelled jobs older than the retention window."""
        hours = self.retention_hours if older_than_hours is None else older_than_hours
        cutoff = self.job_store.clock() - timedelta(hours=hours)
        removed = self.job_store.delete_finished(cutoff)
        if removed:
            _log_info(f"Removed {removed} finished job(s) older than {hours:g}h")
        else:
            _log_debug("No finished jobs to remove")
        return removed

    def run_maintenance(self) -> dict:
        """
        Retention sweep run periodically by the worker thread.

        Deletes finished jobs past queue.retention_hours and expired sessions
        of the pipeline's session store.

        Returns:
            Counts removed: {"jobs": n, "sessions": m}
        """
        removed = {"jobs": self.cleanup_finished(), "sessions": 0}
        session_store = getattr(self.pipeline, "session_store", None)
        if session_store is not None:
            removed["sessions"] = session_store.cleanup_expired()
        return removed

    def _release_input(self, job: Job) -> None:
        """Drop a finished job's raw text from the text provider."""
        try:
            if self.text_provider.discard(job.input_ref):
                _log_debug(f"Released input {job.input_ref} of job {job.id}")
        except (OSError, ValueError) as e:
            _log_warning(f"Could not release input {job.input_ref} of job {job.id}: {e}")
