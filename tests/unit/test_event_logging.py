"""Unit tests for the JSON Lines job event log."""

import json

import pytest

from vitae.utils.event_logging import (
    configure_event_log,
    get_event_log_path,
    get_recent_events,
    log_job_event,
    log_status_change,
)


@pytest.mark.unit
def test_disabled_by_default(tmp_path):
    """Test that logging is a no-op until an events file is configured."""
    assert get_event_log_path() is None
    log_job_event("enqueued", "job-1", "queue")
    assert get_recent_events() == []


@pytest.mark.unit
def test_events_appended_as_json_lines(tmp_path):
    events_file = tmp_path / "logs" / "events.log"
    configure_event_log(events_file)

    log_job_event("enqueued", "job-1", "queue", owner_id="user-1", position=1)
    log_status_change("job-1", "queued", "processing", "queue")

    lines = events_file.read_text().splitlines()
    assert len(lines) == 2

    first = json.loads(lines[0])
    assert first["event_type"] == "enqueued"
    assert first["job_id"] == "job-1"
    assert first["position"] == 1
    assert "timestamp" in first

    second = json.loads(lines[1])
    assert second["event_type"] == "status_change"
    assert second["old_status"] == "queued"
    assert second["new_status"] == "processing"


@pytest.mark.unit
def test_get_recent_events_filters(tmp_path):
    configure_event_log(tmp_path / "events.log")
    for i in range(5):
        log_job_event("enqueued", f"job-{i}", "queue")
    log_status_change("job-3", "queued", "cancelled", "queue")

    assert [e["job_id"] for e in get_recent_events(n=2)] == ["job-4", "job-3"]
    assert [e["event_type"] for e in get_recent_events(job_id="job-3")] == ["enqueued", "status_change"]
    assert len(get_recent_events(n=10, event_type="enqueued")) == 5


@pytest.mark.unit
def test_malformed_lines_skipped(tmp_path):
    events_file = tmp_path / "events.log"
    events_file.write_text('not json\n{"event_type": "enqueued", "job_id": "job-1"}\n')
    configure_event_log(events_file)

    assert get_recent_events() == [{"event_type": "enqueued", "job_id": "job-1"}]
