"""Exceptions for the text-generation client and response parser."""

from typing import Optional


class ConfigurationError(ValueError):
    """
    Raised when a backend is misconfigured (missing credential, invalid URL).

    Fatal at client construction and never retried.

    Attributes:
        provider: Provider name the configuration was validated for
        missing: Names of missing settings or environment variables
    """

    def __init__(self, message: str, provider: Optional[str] = None, missing: Optional[list] = None):
        self.message = message
        self.provider = provider
        self.missing = list(missing or [])

        parts = [message]
        if self.missing:
            parts.append(f"Missing: {', '.join(self.missing)}")

        super().__init__("\n".join(parts))


class GenerationError(Exception):
    """
    Base class for per-call text-generation failures.

    Attributes:
        kind: Short error kind identifier (e.g., "timeout")
        retryable: Whether retrying the same call can succeed
        provider: Name of the provider that failed (e.g., "openai/gpt-4o-mini")
        description: Human-readable operation description
    """

    kind = "unknown"
    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None, description: Optional[str] = None):
        self.message = message
        self.provider = provider
        self.description = description

        prefix = f"{description} failed" if description else "Generation failed"
        if provider:
            prefix += f" with {provider}"
        super().__init__(f"{prefix}: {message}")


class AuthError(GenerationError):
    """Backend rejected the credentials."""

    kind = "auth"
    retryable = False


class QuotaExceededError(GenerationError):
    """Backend usage limit or rate limit reached."""

    kind = "quota"
    retryable = False


class GenerationTimeoutError(GenerationError):
    """Backend did not answer within the per-call timeout."""

    kind = "timeout"
    retryable = True


class UnknownGenerationError(GenerationError):
    """Any other backend failure (connection refused, 5xx, empty reply, ...)."""

    kind = "unknown"
    retryable = True


class ParseError(ValueError):
    """
    Raised when a backend reply cannot be repaired into a JSON object.

    Attributes:
        defect: Description of what made the reply unparseable
        offset: Character offset of the defect, when determinable
        snippet: Text surrounding the offset (for diagnostics, never user-facing)
    """

    def __init__(self, defect: str, offset: Optional[int] = None, text: Optional[str] = None):
        self.defect = defect
        self.offset = offset
        self.snippet = None

        parts = [f"Unparseable response: {defect}"]
        if offset is not None:
            parts.append(f"at offset {offset}")
            if text is not None:
                start = max(0, offset - 40)
                self.snippet = text[start : offset + 40]

        super().__init__(" ".join(parts))
