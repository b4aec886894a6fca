"""
Error taxonomy for the migration engine.

Every failure the pipeline can produce derives from MigrationError so
callers can isolate one item's failure without catching unrelated bugs.
Whether an error is retried is decided by its type, not by inspecting
messages:

- ConfigurationError, AuthorizationError, ProtocolError: never retried
- PartUploadError, TransientSourceFetchError: retried within a fixed budget
- OperationCancelledError: never retried, but cleanup still runs
"""

from typing import Optional


class MigrationError(Exception):
    """Base class for all migration engine errors."""
    pass


class ConfigurationError(MigrationError):
    """Raised when credentials or endpoint settings are missing."""
    pass


class AuthorizationError(MigrationError):
    """Raised when the caller lacks operator privilege."""
    pass


class ProtocolError(MigrationError):
    """
    Raised when the object store answers with a non-2xx status or a
    response body we cannot parse.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PartUploadError(MigrationError):
    """Raised when a single part (or simple PUT) transfer fails."""

    def __init__(self, message: str, part_number: Optional[int] = None) -> None:
        super().__init__(message)
        self.part_number = part_number


class OperationCancelledError(MigrationError):
    """Raised when the shared cancellation token fires."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


class SourceFetchError(MigrationError):
    """Raised when the legacy asset cannot be downloaded."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientSourceFetchError(SourceFetchError):
    """A source fetch failure worth retrying (5xx or transport error)."""
    pass


class InvalidTransitionError(MigrationError):
    """Raised when a migration record is moved to a state it cannot reach."""
    pass
