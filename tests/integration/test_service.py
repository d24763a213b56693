"""Integration tests for the service facade and its wiring."""

import pytest

from conftest import RESUME_TEXT, FakeProvider, step_replies
from vitae.contexts.extraction.session_store import InMemorySessionStore, SQLiteSessionStore
from vitae.contexts.queueing.job_store import InMemoryJobStore, JobStatus, SQLiteJobStore
from vitae.contexts.queueing.sources import DirectoryTextProvider, InMemoryTextProvider
from vitae.service import build_service, build_stores
from vitae.utils.config import load_config
from vitae.utils.event_logging import get_event_log_path
from vitae.utils.exceptions import ConfigurationError


def sqlite_config(tmp_path, *extra):
    return load_config(
        overrides=[
            "storage.backend=sqlite",
            f"storage.db_path={tmp_path / 'vitae.db'}",
            "llm.base_delay_seconds=0",
            *extra,
        ]
    )


@pytest.mark.integration
def test_memory_backend_round_trip(config):
    """Test submit, process and read back with in-memory storage."""
    service = build_service(config, provider=FakeProvider(by_step=step_replies()))

    receipt = service.enqueue_extraction_job("user-1", RESUME_TEXT)
    assert receipt.position == 1
    assert receipt.estimated_wait_minutes == 2

    service.queue.run_until_empty()

    job = service.get_job_status(receipt.job_id, owner_id="user-1")
    assert job.status is JobStatus.COMPLETED
    assert job.result["personal_info"]["email"] == "ada@example.com"
    assert service.text_provider._texts == {}

    assert service.queue.cleanup_finished(older_than_hours=-1) == 1
    assert service.queue.job_store.get(receipt.job_id) is None


@pytest.mark.integration
@pytest.mark.parametrize("raw_text", ["", "   "])
def test_empty_text_rejected(config, raw_text):
    service = build_service(config, provider=FakeProvider())
    with pytest.raises(ValueError):
        service.enqueue_extraction_job("user-1", raw_text)
    assert service.get_queue_stats().queue_length == 0


@pytest.mark.integration
def test_cancel_and_stats(config):
    service = build_service(config, provider=FakeProvider())
    first = service.enqueue_extraction_job("user-1", RESUME_TEXT)
    second = service.enqueue_extraction_job("user-1", RESUME_TEXT)

    assert service.cancel_job(first.job_id, "user-1") is True
    assert service.get_job_status(second.job_id).position == 1

    stats = service.get_queue_stats()
    assert stats.queue_length == 1
    assert stats.cancelled == 1


@pytest.mark.integration
def test_enqueue_upload_uses_existing_reference(config):
    service = build_service(config, provider=FakeProvider(by_step=step_replies()))
    input_ref = service.text_provider.put(RESUME_TEXT, input_ref="upload-42")

    receipt = service.enqueue_upload("user-1", input_ref)
    service.queue.run_until_empty()

    assert service.get_job_status(receipt.job_id).status is JobStatus.COMPLETED


@pytest.mark.integration
def test_sqlite_backend_shared_between_services(tmp_path):
    """Test that a second service on the same database (another process) sees the job."""
    config = sqlite_config(tmp_path)
    api = build_service(config, provider=FakeProvider())
    worker = build_service(config, provider=FakeProvider(by_step=step_replies()))

    receipt = api.enqueue_extraction_job("user-1", RESUME_TEXT)
    assert (tmp_path / "uploads" / f"{api.queue.job_store.get(receipt.job_id).input_ref}.txt").exists()

    assert worker.queue.run_until_empty() == 1

    job = api.get_job_status(receipt.job_id, owner_id="user-1")
    assert job.status is JobStatus.COMPLETED
    assert job.result["personal_info"]["name"] == "Ada Lovelace"
    assert list((tmp_path / "uploads").glob("*.txt")) == []


@pytest.mark.integration
def test_worker_thread_lifecycle(config):
    service = build_service(config, provider=FakeProvider(by_step=step_replies()))
    service.start()
    try:
        assert service.queue.is_running
    finally:
        service.stop(timeout=5)
    assert not service.queue.is_running


@pytest.mark.integration
def test_events_file_from_config(tmp_path):
    events_file = tmp_path / "events.log"
    config = load_config(overrides=[f"logging.events_file={events_file}"])

    build_service(config, provider=FakeProvider())
    assert get_event_log_path() == events_file


class TestBuildStores:
    """Test storage backend selection."""

    @pytest.mark.integration
    def test_memory(self, config):
        job_store, session_store, text_provider = build_stores(config)

        assert isinstance(job_store, InMemoryJobStore)
        assert isinstance(session_store, InMemorySessionStore)
        assert isinstance(text_provider, InMemoryTextProvider)
        assert session_store.preview_chars == 500

    @pytest.mark.integration
    def test_sqlite(self, tmp_path):
        job_store, session_store, text_provider = build_stores(sqlite_config(tmp_path, "session.ttl_minutes=30"))

        assert isinstance(job_store, SQLiteJobStore)
        assert isinstance(session_store, SQLiteSessionStore)
        assert isinstance(text_provider, DirectoryTextProvider)
        assert text_provider.root == tmp_path / "uploads"
        assert session_store.ttl.total_seconds() == 30 * 60

    @pytest.mark.integration
    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            build_stores(load_config(overrides=["storage.backend=redis"]))


class TestDirectoryTextProvider:
    """Test the file-backed text provider used by the sqlite backend."""

    @pytest.mark.integration
    def test_put_get_discard(self, tmp_path):
        provider = DirectoryTextProvider(tmp_path)
        input_ref = provider.put("Zoë Müller\nEngineer")

        assert provider.get_text(input_ref) == "Zoë Müller\nEngineer"
        assert provider.discard(input_ref) is True
        assert provider.discard(input_ref) is False

    @pytest.mark.integration
    @pytest.mark.parametrize("input_ref", ["../escape", ".hidden", "a/b", ""])
    def test_unsafe_references_rejected(self, tmp_path, input_ref):
        with pytest.raises(ValueError):
            DirectoryTextProvider(tmp_path).get_text(input_ref)
