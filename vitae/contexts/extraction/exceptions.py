"""Custom exceptions for the extraction context."""

from typing import Optional


class SessionNotFoundError(KeyError):
    """
    Raised when a session id is unknown (or no longer accessible).

    Attributes:
        session_id: The session identifier that was requested
    """

    def __init__(self, session_id: str, message: Optional[str] = None):
        self.session_id = session_id
        self.message = message or f"Session not found: {session_id}"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class SessionExpiredError(SessionNotFoundError):
    """Raised when a session's TTL has elapsed. Treated as not found."""

    def __init__(self, session_id: str, expires_at: Optional[str] = None):
        self.expires_at = expires_at
        message = f"Session expired: {session_id}"
        if expires_at:
            message += f" (expired at {expires_at})"
        super().__init__(session_id, message)


class ExtractionError(Exception):
    """
    Raised when a pipeline step cannot produce a usable result.

    Attributes:
        step: Pipeline step name (e.g., "basic_info")
        message: Error description
    """

    def __init__(self, message: str, step: Optional[str] = None):
        self.message = message
        self.step = step
        prefix = f"[{step}] " if step else ""
        super().__init__(f"{prefix}{message}")


class MissingIdentityError(ExtractionError):
    """Raised when the basic-info step could not extract the candidate's name."""

    def __init__(self, message: str = "Missing identity information: no name could be extracted"):
        super().__init__(message, step="basic_info")
