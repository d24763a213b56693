"""
Extraction context logger.

Provides logging interface for extraction context with automatic [extract] prefix.
All extraction modules should import from this module, not from utils.logger directly.
"""

from pathlib import Path

from loguru import logger

from vitae.utils.logger import setup_logger as _setup_logger

CONTEXT_PREFIX = "[extract]"


def setup_extraction_logger(log_dir: Path | None = None, provider_name: str = None) -> Path | None:
    """
    Setup logger for extraction context.

    Args:
        log_dir: Directory for this extraction session (None: console only)
        provider_name: LLM provider name recorded in the provenance header

    Returns:
        Path to log file, or None when log_dir is None
    """
    extra = {"LLM provider": provider_name} if provider_name else None
    return _setup_logger(context_name="extract", log_dir=log_dir, extra_provenance=extra)


# Wrapper functions with automatic [extract] prefix


def _log_info(message: str) -> None:
    """Log info message with [extract] prefix."""
    logger.info(f"{CONTEXT_PREFIX} {message}")


def _log_success(message: str) -> None:
    """Log success message with [extract] prefix."""
    logger.success(f"{CONTEXT_PREFIX} {message}")


def _log_error(message: str) -> None:
    """Log error message with [extract] prefix."""
    logger.error(f"{CONTEXT_PREFIX} {message}")


def _log_warning(message: str) -> None:
    """Log warning message with [extract] prefix."""
    logger.warning(f"{CONTEXT_PREFIX} {message}")


def _log_debug(message: str) -> None:
    """Log debug message with [extract] prefix."""
    logger.debug(f"{CONTEXT_PREFIX} {message}")


# High-level extraction logging helpers


def log_step_result(step_name: str, confidence: float, elapsed_time: float, fallback: bool = False) -> None:
    """Log completion of one pipeline step."""
    if fallback:
        _log_warning(f"{step_name}: substituted empty result ({elapsed_time:.2f}s)")
    else:
        _log_success(f"{step_name}: confidence {confidence:.2f} ({elapsed_time:.2f}s)")


def log_pipeline_result(session_id: str, final_result: dict, elapsed_time: float) -> None:
    """Log the assembled profile summary."""
    info = final_result.get("processing_info", {})
    _log_success(
        f"Session {session_id} done in {elapsed_time:.2f}s "
        f"(profession: {info.get('profession')}, level: {info.get('experience_level')})"
    )
    _log_debug(
        f"  {len(final_result.get('experience', []))} experience, "
        f"{len(final_result.get('skills', []))} skills, "
        f"{len(final_result.get('projects', []))} projects"
    )
