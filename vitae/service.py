"""
Service facade: the operations the surrounding application calls.

build_service() wires configuration -> LLM provider -> stores -> pipeline ->
queue, choosing in-memory or SQLite storage from storage.backend.

Usage:
    from vitae.service import build_service

    service = build_service()
    service.start()
    receipt = service.enqueue_extraction_job("user-42", resume_text)
    job = service.get_job_status(receipt.job_id, owner_id="user-42")
"""

from datetime import timedelta
from pathlib import Path
from typing import Optional

from omegaconf import DictConfig

from vitae.contexts.extraction.pipeline import ExtractionPipeline
from vitae.contexts.extraction.session_store import InMemorySessionStore, SessionStore, SQLiteSessionStore
from vitae.contexts.queueing.job_store import InMemoryJobStore, Job, JobStore, SQLiteJobStore
from vitae.contexts.queueing.queue import EnqueueReceipt, ExtractionQueue, QueueStats
from vitae.contexts.queueing.sources import DirectoryTextProvider, InMemoryTextProvider, TextProvider
from vitae.utils.config import load_config
from vitae.utils.event_logging import configure_event_log
from vitae.utils.exceptions import ConfigurationError
from vitae.utils.llm import LLMProvider, get_provider

STORAGE_BACKENDS = ("memory", "sqlite")


class ExtractionService:
    """
    External interface of the extraction core.

    Args:
        queue: Wired extraction queue
        text_provider: Where submitted raw text is stored until the worker reads it
    """

    def __init__(self, queue: ExtractionQueue, text_provider: TextProvider):
        self.queue = queue
        self.text_provider = text_provider

    def enqueue_extraction_job(self, owner_id: str, raw_text: str) -> EnqueueReceipt:
        """
        Store raw text and admit an extraction job for it.

        Raises:
            ValueError: If raw_text is empty
        """
        if not raw_text or not raw_text.strip():
            raise ValueError("raw_text must not be empty")
        input_ref = self.text_provider.put(raw_text)
        return self.queue.enqueue(owner_id, input_ref)

    def enqueue_upload(self, owner_id: str, input_ref: str) -> EnqueueReceipt:
        """Admit a job for text the ingestion side already stored under input_ref."""
        return self.queue.enqueue(owner_id, input_ref)

    def get_job_status(self, job_id: str, owner_id: Optional[str] = None) -> Job:
        return self.queue.get_status(job_id, owner_id=owner_id)

    def cancel_job(self, job_id: str, owner_id: str) -> bool:
        return self.queue.cancel(job_id, owner_id)

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_stats()

    def start(self) -> None:
        """Start the background worker."""
        self.queue.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.queue.stop(timeout)


def build_stores(config: DictConfig) -> tuple[JobStore, SessionStore, TextProvider]:
    """
    Create job store, session store and text provider for storage.backend.

    sqlite keeps jobs and sessions in storage.db_path and uploaded text in an
    "uploads" directory next to it, so several processes can share them.

    Raises:
        ConfigurationError: Unknown storage backend
    """
    backend = config.storage.backend
    session_options = {
        "ttl": timedelta(minutes=float(config.session.ttl_minutes)),
        "preview_chars": int(config.session.preview_chars),
    }

    if backend == "memory":
        return InMemoryJobStore(), InMemorySessionStore(**session_options), InMemoryTextProvider()
    if backend == "sqlite":
        db_path = Path(config.storage.db_path)
        return (
            SQLiteJobStore(db_path),
            SQLiteSessionStore(db_path, **session_options),
            DirectoryTextProvider(db_path.parent / "uploads"),
        )
    raise ConfigurationError(f"Unknown storage backend: {backend}. Use one of: {', '.join(STORAGE_BACKENDS)}")


def build_service(config: DictConfig = None, provider: LLMProvider = None) -> ExtractionService:
    """
    Wire an ExtractionService from configuration.

    Args:
        config: Loaded configuration (default: load_config())
        provider: LLM provider to use instead of get_provider(config=config)

    Raises:
        ConfigurationError: Misconfigured provider or storage backend
    """
    config = config if config is not None else load_config()

    if config.logging.events_file:
        configure_event_log(Path(config.logging.events_file))

    provider = provider or get_provider(config=config)
    job_store, session_store, text_provider = build_stores(config)
    pipeline = ExtractionPipeline(provider, session_store, config=config)
    queue = ExtractionQueue(job_store, pipeline, text_provider, config=config)
    return ExtractionService(queue, text_provider)
