"""
Queueing context logger.

Provides logging interface for queueing context with automatic [queue] prefix.
All queueing modules should import from this module, not from utils.logger directly.
"""

from pathlib import Path

from loguru import logger

from vitae.utils.logger import setup_logger as _setup_logger

CONTEXT_PREFIX = "[queue]"


def setup_queue_logger(log_dir: Path | None = None, provider_name: str = None, storage: str = None) -> Path | None:
    """
    Setup logger for the queue worker.

    Args:
        log_dir: Directory for this worker session (None: console only)
        provider_name: LLM provider name recorded in the provenance header
        storage: Storage backend description recorded in the provenance header

    Returns:
        Path to log file, or None when log_dir is None
    """
    extra = {}
    if provider_name:
        extra["LLM provider"] = provider_name
    if storage:
        extra["Storage"] = storage
    return _setup_logger(context_name="queue", log_dir=log_dir, extra_provenance=extra or None)


# Wrapper functions with automatic [queue] prefix


def _log_info(message: str) -> None:
    """Log info message with [queue] prefix."""
    logger.info(f"{CONTEXT_PREFIX} {message}")


def _log_success(message: str) -> None:
    """Log success message with [queue] prefix."""
    logger.success(f"{CONTEXT_PREFIX} {message}")


def _log_error(message: str) -> None:
    """Log error message with [queue] prefix."""
    logger.error(f"{CONTEXT_PREFIX} {message}")


def _log_exception(message: str) -> None:
    """Log error message with [queue] prefix and the active traceback."""
    logger.opt(exception=True).error(f"{CONTEXT_PREFIX} {message}")


def _log_warning(message: str) -> None:
    """Log warning message with [queue] prefix."""
    logger.warning(f"{CONTEXT_PREFIX} {message}")


def _log_debug(message: str) -> None:
    """Log debug message with [queue] prefix."""
    logger.debug(f"{CONTEXT_PREFIX} {message}")
