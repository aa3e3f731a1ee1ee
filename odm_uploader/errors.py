"""Error taxonomy for upload, polling and commit operations."""
from typing import Any, Optional


class UploaderError(Exception):
    """Base class for every error raised by odm_uploader."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(UploaderError):
    """Bad or missing local input (no folder, empty project name...)."""


class NotFoundError(UploaderError):
    """A required local or remote resource does not exist."""


class NoImagesFoundError(NotFoundError):
    """Folder holds no eligible images."""

    def __init__(self, message: str = "No JPG images found in folder", details: Any = None):
        super().__init__(message, details)


class NoTasksFoundError(NotFoundError):
    """Project has no tasks on the processing node."""


class TransportError(UploaderError):
    """Connection refused, DNS failure or timeout talking to the backend."""


class RemoteAPIError(UploaderError):
    """Backend answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str, details: Any = None):
        super().__init__(message, details)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_transient(self) -> bool:
        return self.status_code >= 500 or self.status_code in (408, 429)


class RemoteProtocolError(UploaderError):
    """Backend response does not match the expected schema."""


class RemoteTaskError(UploaderError):
    """Remote task reported FAILED, CANCELED or an error flag."""

    def __init__(self, message: str, status: Optional[int] = None, details: Any = None):
        super().__init__(message, details)
        self.status = status


class TaskNotReadyError(UploaderError):
    """Remote task exists but has not completed yet."""


class PollTimeoutError(UploaderError):
    """Poll budget exhausted before the task reached a terminal status.

    Not a failure: the outcome is unknown and must be checked on the
    processing node directly.
    """


class OperationCancelledError(UploaderError):
    """A cancellation token fired at a suspension point."""

    def __init__(self, message: str = "Operation cancelled", details: Any = None):
        super().__init__(message, details)


def extract_error_message(body: Any, fallback: str) -> str:
    """Pull a human readable message out of an opaque remote error body."""
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(body, str) and body.strip():
        return body.strip()[:500]
    return fallback
