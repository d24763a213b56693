"""
Shared utilities for VITAE.

Common functionality used across contexts:
- Text-generation client and provider factory
- Response repair and JSON parsing
- Configuration loading
- Logging and job event logging
"""

from vitae.utils.timestamp import now, now_exact, today

__all__ = ["now", "now_exact", "today"]
