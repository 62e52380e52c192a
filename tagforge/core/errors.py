"""
Exception hierarchy for the model lifecycle engine.

Every error carries a message naming the entity involved and the reason, so
callers can surface it directly to the user.
"""

from typing import Optional


class TagForgeError(Exception):
    """Base exception for all TagForge errors."""
    pass


class NotFoundError(TagForgeError, FileNotFoundError):
    """Raised when a named entity is absent (model, label file, runtime executable)."""
    pass


class InvalidStateError(TagForgeError):
    """Raised when an entity exists but cannot be used (empty labels, zero outputs, unusable model)."""
    pass


class ExternalProcessError(TagForgeError):
    """Raised when an external process exits with a non-zero status."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class NetworkError(TagForgeError):
    """Raised on HTTP failures, non-2xx responses and malformed JSON bodies."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class ValidationError(TagForgeError):
    """Raised when converted or downloaded artifacts fail their checks."""
    pass


class OperationCancelled(TagForgeError):
    """Raised when a long-running operation observes its stop event."""
    pass
