"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
"""
from typing import Optional


class URLExtractionError(Exception):
    """Custom exception for errors during URL information extraction."""
    pass

class DuplicateJobError(Exception):
    """Raised when an equivalent job is already queued or finished."""

    def __init__(self, message: str, existing_output_path: Optional[str] = None):
        super().__init__(message)
        self.existing_output_path = existing_output_path

class JobNotFoundError(KeyError):
    """Raised when a job id is not present in the queue."""
    pass

class DependencyError(Exception):
    """Raised when yt-dlp or FFmpeg cannot be made runnable."""
    pass

class FinalizeError(Exception):
    """Raised when a finished download cannot be moved into place."""
    pass

class InstanceLockedError(Exception):
    """Raised when another mediaqueue process is already using the state files."""

    def __init__(self, lock_path: str):
        super().__init__(f"Another mediaqueue process is already using the queue (lock: {lock_path}).")
        self.lock_path = lock_path
