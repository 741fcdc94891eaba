"""Error taxonomy for undock.

Every error carries a stable ``code`` for structured handling. The category
classes below map to the stages of a run; lower layers raise them with a
more specific code (``http_error``, ``path_traversal``, ...).
"""

from __future__ import annotations

# Category codes
CONFIGURATION_ERROR = "configuration_error"
SOURCE_ERROR = "source_error"
FETCH_ERROR = "fetch_error"
MANIFEST_ERROR = "manifest_error"
EXTRACT_ERROR = "extract_error"
CANCELLED = "cancelled"


class UndockError(Exception):
    """Base error for all undock operations."""

    default_code = "undock_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        """Initialize UndockError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ConfigurationError(UndockError):
    """Raised for an invalid platform or an unresolvable cache directory."""

    default_code = CONFIGURATION_ERROR


class SourceError(UndockError):
    """Raised when a source locator cannot be parsed."""

    default_code = SOURCE_ERROR


class FetchError(UndockError):
    """Raised when a digest lookup or an image copy fails."""

    default_code = FETCH_ERROR


class ManifestError(UndockError):
    """Raised for a malformed manifest/index or a missing referenced blob."""

    default_code = MANIFEST_ERROR


class ExtractError(UndockError):
    """Raised when a layer blob cannot be written to the destination."""

    default_code = EXTRACT_ERROR


class OperationCancelledError(UndockError):
    """Raised when the shared cancellation scope has been cancelled."""

    default_code = CANCELLED


__all__ = [
    "CANCELLED",
    "CONFIGURATION_ERROR",
    "EXTRACT_ERROR",
    "FETCH_ERROR",
    "MANIFEST_ERROR",
    "SOURCE_ERROR",
    "ConfigurationError",
    "ExtractError",
    "FetchError",
    "ManifestError",
    "OperationCancelledError",
    "SourceError",
    "UndockError",
]
