"""Errors and failure classification for ingestion."""

from enum import Enum

from taxaharvest.fetch.errors import (
    ApiError,
    PermanentApiError,
    RetryableApiError,
    TransportError,
)


class FailureClass(str, Enum):
    """Failure categories used in outcomes, the ledger, and summaries.

    - TRANSPORT: No response after every attempt
    - RETRYABLE_HTTP: Retryable status persisted through every attempt
    - PERMANENT_HTTP: Non-retryable status
    - DECODE: Response received but failed validation
    """

    TRANSPORT = "transport"
    RETRYABLE_HTTP = "retryable_http"
    PERMANENT_HTTP = "permanent_http"
    DECODE = "decode"


class DecodeError(Exception):
    """Raised when a provider response fails validation.

    Permanent for the entity it concerns; never aborts a batch.
    """

    def __init__(self, external_id: str, message: str) -> None:
        """Initialize the decode error.

        Args:
            external_id: Entity whose response was rejected.
            message: Validation failure description.
        """
        self.external_id = external_id
        self.message = message
        super().__init__(f"Cannot decode response for '{external_id}': {message}")


class CursorPersistenceError(Exception):
    """Raised when a fetched page cannot be committed with its cursor.

    Fatal to the stream: the cursor stays at the last committed position.
    """

    def __init__(self, cursor_key: str, cursor_value: int, cause: Exception) -> None:
        """Initialize the persistence error.

        Args:
            cursor_key: Name of the enumeration stream.
            cursor_value: Position that failed to persist.
            cause: Underlying store error.
        """
        self.cursor_key = cursor_key
        self.cursor_value = cursor_value
        super().__init__(
            f"Failed to persist cursor '{cursor_key}' at {cursor_value}: {cause}"
        )


def classify_api_error(error: ApiError) -> FailureClass:
    """Map a client error to its failure class.

    Args:
        error: Error raised by the retry client.

    Returns:
        The failure class.
    """
    if isinstance(error, TransportError):
        return FailureClass.TRANSPORT
    if isinstance(error, RetryableApiError):
        return FailureClass.RETRYABLE_HTTP
    if isinstance(error, PermanentApiError):
        return FailureClass.PERMANENT_HTTP
    if error.status is None:
        return FailureClass.TRANSPORT
    return FailureClass.PERMANENT_HTTP
