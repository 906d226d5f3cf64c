"""
Error types raised by previewctl.
"""

from typing import List, Optional


class PreviewError(Exception):
    """Base class for all previewctl errors."""


class InputError(PreviewError, ValueError):
    """Malformed user input (resource reference, age, timeout). Never retried."""


class ApiError(PreviewError):
    """A cluster API call failed with an HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class ResourceNotFoundError(ApiError):
    """The requested resource does not exist (HTTP 404)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class AccessDeniedError(ApiError):
    """The current credentials lack a required capability (HTTP 403)."""

    def __init__(self, message: str, capability: str):
        super().__init__(message, status_code=403)
        self.capability = capability


class WatchDisconnected(PreviewError):
    """The watch transport dropped. Recovered by the watcher's retry policy."""


class ReadinessTimeoutError(PreviewError, TimeoutError):
    """Resources did not become ready before the deadline.

    ``pending`` holds a fresh snapshot of the resources that were still not
    ready when the deadline passed (empty for single-resource waits).
    """

    def __init__(self, message: str, pending: Optional[List] = None):
        super().__init__(message)
        self.pending = pending or []


class GitHubError(PreviewError):
    """A GitHub API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
