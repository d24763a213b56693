"""
Job event logging utilities for VITAE (Tier 2 logging).

Appends job lifecycle events to a JSON Lines file (one JSON object per line)
for cross-process auditing. Disabled until an events file is configured, either
with configure_event_log() or through logging.events_file / VITAE_EVENTS_FILE
(service.build_service does this).

For detailed within-context logging (Tier 1), use vitae.utils.logger instead.

Usage:
    from vitae.utils.event_logging import configure_event_log, log_status_change

    configure_event_log("outs/logs/vitae_events.log")

    log_status_change(
        job_id="3f2a...",
        old_status="queued",
        new_status="processing",
        source="worker",
    )
"""

import json
import threading
from pathlib import Path
from typing import Optional

from vitae.utils.timestamp import now_exact

_events_file: Optional[Path] = None
_write_lock = threading.Lock()


def configure_event_log(events_file: Optional[Path]) -> None:
    """Set (or with None, disable) the JSON Lines events file."""
    global _events_file
    _events_file = Path(events_file) if events_file else None


def get_event_log_path() -> Optional[Path]:
    """Currently configured events file, or None when event logging is disabled."""
    return _events_file


def log_job_event(event_type: str, job_id: str, source: str, **extra_fields) -> None:
    """
    Log an event to the job event log (no-op when not configured).

    Args:
        event_type: Type of event (e.g., "enqueued", "status_change", "step_completed")
        job_id: Job identifier
        source: Event source (e.g., "queue", "worker", "cli")
        **extra_fields: Additional event-specific fields (must be JSON-serializable)

    Example:
        log_job_event(
            event_type="enqueued",
            job_id=job.id,
            source="queue",
            owner_id="user-42",
            position=3,
        )
    """
    if _events_file is None:
        return

    event = {
        "timestamp": now_exact(),
        "event_type": event_type,
        "job_id": job_id,
        "source": source,
        **extra_fields,
    }

    with _write_lock:
        _events_file.parent.mkdir(parents=True, exist_ok=True)
        with open(_events_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, default=str) + "\n")


def log_status_change(job_id: str, old_status: str, new_status: str, source: str, **extra_fields) -> None:
    """
    Log a job status change event.

    Pure logging function - does NOT update the job store.
    Called by the queue after the store transition succeeds.
    """
    log_job_event(
        event_type="status_change",
        job_id=job_id,
        old_status=old_status,
        new_status=new_status,
        source=source,
        **extra_fields,
    )


def get_recent_events(n: int = 10, job_id: Optional[str] = None, event_type: Optional[str] = None) -> list[dict]:
    """
    Get the last n events from the event log, optionally filtered.

    Args:
        n: Number of recent events to return (default: 10)
        job_id: Filter to only events for this job (optional)
        event_type: Filter to only events of this type (optional)

    Returns:
        List of event dicts (most recent last)
    """
    if _events_file is None or not _events_file.exists():
        return []

    events = []
    with open(_events_file, "r", encoding="utf-8") as f:
        for line in f:
            try:
                events.append(json.loads(line.strip()))
            except json.JSONDecodeError:
                # Skip malformed lines
                continue

    if job_id:
        events = [e for e in events if e.get("job_id") == job_id]

    if event_type:
        events = [e for e in events if e.get("event_type") == event_type]

    return events[-n:] if len(events) > n else events
