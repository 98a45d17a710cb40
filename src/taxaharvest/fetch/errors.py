"""Typed errors raised by the retry client.

`ApiError` and its subclasses describe a logical request that could not be
completed. `IngestionCancelled` sits outside that tree: cancellation is
never an API failure and must never be recorded as one.
"""


class ApiError(Exception):
    """A logical request failed after the client's retry policy ran out.

    Attributes:
        url: Request URL.
        status: HTTP status of the last attempt, or None on transport failure.
        body: Response body (truncated) or transport error text.
        attempts: Number of attempts made.
    """

    def __init__(
        self,
        url: str,
        status: int | None,
        body: str | None,
        attempts: int,
    ) -> None:
        """Initialize the error.

        Args:
            url: Request URL.
            status: HTTP status code, if a response was received.
            body: Response body or error text.
            attempts: Number of attempts made.
        """
        self.url = url
        self.status = status
        self.body = body
        self.attempts = attempts
        status_text = status if status is not None else "no response"
        message = (
            f"Request to {url} failed after {attempts} attempt(s) "
            f"(status: {status_text})"
        )
        if body:
            message = f"{message}: {body}"
        super().__init__(message)


class TransportError(ApiError):
    """Network-level failure (connect, read, timeout) on every attempt."""

    def __init__(
        self,
        url: str,
        message: str,
        attempts: int,
        timed_out: bool = False,
    ) -> None:
        """Initialize the error.

        Args:
            url: Request URL.
            message: Text of the last transport exception.
            attempts: Number of attempts made.
            timed_out: Whether the last attempt failed by timing out.
        """
        self.timed_out = timed_out
        super().__init__(url, status=None, body=message, attempts=attempts)


class RetryableApiError(ApiError):
    """Retryable HTTP status (429, 408, 5xx) persisted through every attempt."""


class PermanentApiError(ApiError):
    """Non-retryable HTTP status; surfaced after a single attempt."""


class IngestionCancelled(Exception):  # noqa: N818
    """Raised when a run-level cancellation signal interrupts work."""

    def __init__(self, message: str = "Ingestion cancelled") -> None:
        """Initialize the cancellation signal.

        Args:
            message: Human-readable description.
        """
        super().__init__(message)
