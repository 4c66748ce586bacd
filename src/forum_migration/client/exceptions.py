"""Custom exceptions for Forum Bridge.

This module defines exception classes for the error conditions that can
occur while reading the source forum, talking to the target API, and
keeping migration state.

Row-level errors (mapping failures, rejected creates) are recorded and the
import continues. Everything else aborts the run.
"""


class ForumMigrationError(Exception):
    """Base exception for all forum migration tool errors."""

    pass


class APIError(ForumMigrationError):
    """Base class for target API errors."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
        """
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with status code and response."""
        msg = self.message
        if self.status_code:
            msg = f"[{self.status_code}] {msg}"
        if self.response:
            msg = f"{msg}: {self.response}"
        return msg


class AuthenticationError(APIError):
    """Raised when authentication fails (401 Unauthorized)."""

    pass


class AuthorizationError(APIError):
    """Raised when authorization fails (403 Forbidden)."""

    pass


class NotFoundError(APIError):
    """Raised when a resource is not found (404 Not Found)."""

    pass


class ConflictError(APIError):
    """Raised when a resource conflict occurs (409 Conflict)."""

    pass


class ValidationFailedError(APIError):
    """Raised when the target rejects a payload (422 Unprocessable Entity)."""

    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (429 Too Many Requests)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        retry_after: int | None = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
            retry_after: Seconds to wait before retrying (from Retry-After header)
        """
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    pass


class TargetContractError(APIError):
    """Raised when a successful response lacks data every create must return."""

    pass


class ServiceUnavailableError(ServerError):
    """A 503 carrying Retry-After: the target refused the request without handling it."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class NetworkError(ForumMigrationError):
    """Raised when network-related errors occur (timeouts, connection failures)."""

    pass


class ConnectionFailedError(NetworkError):
    """Raised when no connection to the target could be opened, so nothing was sent."""

    pass


class ConfigurationError(ForumMigrationError):
    """Raised when configuration is invalid or missing."""

    pass


class StateError(ForumMigrationError):
    """Raised when the state database cannot be read or written."""

    pass


class SourceError(ForumMigrationError):
    """Raised when the source database cannot be queried."""

    pass


class MigrationError(ForumMigrationError):
    """Raised when migration operations fail."""

    pass


class MappingError(MigrationError):
    """Raised when a source row cannot be translated into a create request."""

    pass


class SkipRecord(MigrationError):
    """Raised by a mapper to drop a row on purpose (not counted as an error)."""

    pass


class DuplicateMappingError(MigrationError):
    """Raised when an external id is already mapped to a different internal id."""

    def __init__(self, namespace: str, external_id: str, existing_id: int, new_id: int):
        self.namespace = namespace
        self.external_id = external_id
        self.existing_id = existing_id
        self.new_id = new_id
        super().__init__(
            f"{namespace} {external_id!r} is already mapped to {existing_id}, "
            f"refusing to remap it to {new_id}"
        )


class HierarchyError(MigrationError):
    """Raised for a category path whose parent path could not be created."""

    pass


class ErrorThresholdExceeded(MigrationError):
    """Raised when row-level errors exceed the configured maximum."""

    pass


# Target failures that mean the collaborator itself is unusable. The batch
# importer lets these abort the run instead of recording them per row.
FATAL_TARGET_ERRORS = (
    NetworkError,
    ServerError,
    RateLimitError,
    AuthenticationError,
    AuthorizationError,
    TargetContractError,
)
