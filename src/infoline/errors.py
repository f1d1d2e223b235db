"""Error taxonomy for the data-access layer.

Every failure that reaches a caller is one of the :class:`DataAccessError`
subclasses below. Raw transport exceptions are classified with
:func:`classify_error` and wrapped with :func:`as_data_access_error`, so
the UI layer always has a readable ``user_message`` to show.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from infoline.types import QueuedOperation


class ErrorKind(str, Enum):
    NETWORK = "network"
    SERVER = "server"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    NO_CACHED_DATA = "no_cached_data"
    QUEUE_EXHAUSTED = "queue_exhausted"
    STORAGE = "storage"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.NETWORK, ErrorKind.SERVER)


class DataAccessError(Exception):
    """Base class for all errors raised by the data-access layer."""

    kind = ErrorKind.UNKNOWN
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None, *, status: int | None = None):
        super().__init__(message or self.default_message)
        self.status = status

    @property
    def message(self) -> str:
        return str(self)

    @property
    def user_message(self) -> str:
        """Human-readable text for the UI, never a raw transport string."""
        return self.default_message

    @property
    def classification(self) -> ErrorKind:
        return self.kind

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class NetworkError(DataAccessError):
    kind = ErrorKind.NETWORK
    default_message = "Network connection problem. Please check your connection."


class ServerError(DataAccessError):
    kind = ErrorKind.SERVER
    default_message = "The server is temporarily unavailable. Please try again."


class AuthorizationError(DataAccessError):
    kind = ErrorKind.AUTHORIZATION
    default_message = "Your session is not valid. Please sign in again."


class ValidationError(DataAccessError):
    kind = ErrorKind.VALIDATION
    default_message = "The submitted data is not valid."

    @property
    def user_message(self) -> str:
        # Validation messages come from the platform and name the bad field.
        return str(self)


class NoCachedData(DataAccessError):
    kind = ErrorKind.NO_CACHED_DATA
    default_message = "No offline data is available for this view."


class QueueExhausted(DataAccessError):
    kind = ErrorKind.QUEUE_EXHAUSTED
    default_message = "A pending change could not be saved and was discarded."

    def __init__(
        self,
        operation: QueuedOperation,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            f"Queued operation {operation.id} ({operation.kind}) failed after "
            f"{operation.attempt_count} attempts"
        )
        self.operation = operation
        self.cause = cause


class StorageError(DataAccessError):
    kind = ErrorKind.STORAGE
    default_message = "Local storage is not available."


class StorageQuotaExceeded(StorageError):
    default_message = "Local storage is full."


class ConfigurationError(ValueError):
    """Invalid settings or duration values."""


_FATAL_STATUSES = {400, 404, 409, 422}
_AUTH_STATUSES = {401, 403}
_TRANSIENT_STATUSES = {408, 425, 429}


def kind_for_status(status: int) -> ErrorKind:
    if status in _AUTH_STATUSES:
        return ErrorKind.AUTHORIZATION
    if status in _TRANSIENT_STATUSES or 500 <= status < 600:
        return ErrorKind.SERVER
    if status in _FATAL_STATUSES or 400 <= status < 500:
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception to its :class:`ErrorKind`."""
    if isinstance(exc, DataAccessError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        return kind_for_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.NETWORK
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.NETWORK
    if isinstance(exc, OSError):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


_ERROR_TYPES: dict[ErrorKind, type[DataAccessError]] = {
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.SERVER: ServerError,
    ErrorKind.AUTHORIZATION: AuthorizationError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.NO_CACHED_DATA: NoCachedData,
    ErrorKind.STORAGE: StorageError,
}


def as_data_access_error(exc: BaseException) -> DataAccessError:
    """Wrap a raw exception in the typed error matching its classification.

    Already-typed errors are returned unchanged. The original exception is
    kept as ``__cause__``.
    """
    if isinstance(exc, DataAccessError):
        return exc
    kind = classify_error(exc)
    error_type = _ERROR_TYPES.get(kind, DataAccessError)
    status = None
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    error = error_type(str(exc) or None, status=status)
    error.__cause__ = exc
    return error


def error_context(
    operation: str, attempt: int, exc: BaseException
) -> dict[str, Any]:
    """Structured fields attached to every logged failure."""
    return {
        "operation": operation,
        "attempt": attempt,
        "classification": classify_error(exc).value,
        "error": str(exc) or type(exc).__name__,
    }
