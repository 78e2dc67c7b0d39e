"""
Defines custom exceptions used throughout the application.

Every error surfaced to callers derives from `PinefetchError`, so the front end
can catch one type and still report specific failures.
"""

from typing import Optional


class PinefetchError(Exception):
    """Base exception for all application-specific errors."""
    pass

class InvalidRequest(PinefetchError):
    """Raised when a request is rejected before any state is created."""
    pass

class NotFound(PinefetchError):
    """Raised when a job id is unknown or the job can no longer be cancelled."""
    pass

class SpawnError(PinefetchError):
    """Raised when an external executable cannot be located or started."""
    pass

class ProcessError(PinefetchError):
    """Raised when an external process exits with a non-zero code."""
    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code

class ExecutableNotFound(PinefetchError):
    """Raised when the downloader executable cannot be resolved."""
    pass

class VersionParseError(PinefetchError):
    """Raised when the downloader's reported version cannot be understood."""
    pass

class MetadataError(PinefetchError):
    """Custom exception for media-info extraction failures."""
    pass

class IllegalTransition(PinefetchError):
    """Raised when a job state change is not allowed by the state machine."""
    pass
