"""Data models for the HTTP fetch layer."""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from taxaharvest.fetch.constants import (
    HTTP_STATUS_OK_MAX,
    HTTP_STATUS_OK_MIN,
    MAX_ATTEMPTS,
    RETRYABLE_STATUS_CODES,
)


class ApiRequest(BaseModel):
    """One logical request against a provider endpoint.

    The client may issue it several times; all attempts share this
    description and are reported under `target` in import provenance.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: Literal["GET", "POST"] = "GET"
    url: Annotated[str, Field(min_length=1, description="Absolute request URL")]
    params: dict[str, str] = Field(
        default_factory=dict, description="Query-string parameters"
    )
    form: dict[str, str] | None = Field(
        default=None, description="Form body for POST requests"
    )
    headers: dict[str, str] = Field(
        default_factory=dict, description="Request-specific headers"
    )

    @property
    def target(self) -> str:
        """Human-readable request target for provenance records."""
        if not self.params:
            return self.url
        query = "&".join(f"{key}={value}" for key, value in self.params.items())
        return f"{self.url}?{query}"


class ApiResponse(BaseModel):
    """Successful (2xx) response to a logical request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: Annotated[str, Field(min_length=1, description="Final response URL")]
    status_code: int = Field(ge=HTTP_STATUS_OK_MIN, lt=HTTP_STATUS_OK_MAX)
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = Field(default=b"", description="Raw response body")
    attempts: Annotated[int, Field(ge=1)] = 1
    duration_ms: Annotated[float, Field(ge=0.0)] = 0.0

    @property
    def text(self) -> str:
        """Body decoded as UTF-8."""
        return self.body.decode("utf-8", errors="replace")

    @property
    def body_size(self) -> int:
        """Size of the response body in bytes."""
        return len(self.body)


class RetryPolicy(BaseModel):
    """Backoff configuration for one provider client.

    Delay starts at `initial_delay_seconds` and doubles after every retry
    that was not directed by a Retry-After header, never exceeding
    `max_delay_seconds`.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: Annotated[int, Field(ge=1, le=10)] = MAX_ATTEMPTS
    initial_delay_seconds: Annotated[float, Field(ge=0.0, le=300.0)] = 2.0
    max_delay_seconds: Annotated[float, Field(ge=0.0, le=900.0)] = 60.0

    def is_retryable_status(self, status_code: int) -> bool:
        """Check whether an HTTP status warrants another attempt.

        Args:
            status_code: HTTP status code.

        Returns:
            True for 429, 408, 500, 502, 503 and 504.
        """
        return status_code in RETRYABLE_STATUS_CODES

    def has_attempts_left(self, attempt: int) -> bool:
        """Check whether another attempt may follow.

        Args:
            attempt: The attempt just made (1-indexed).

        Returns:
            True if the ceiling has not been reached.
        """
        return attempt < self.max_attempts

    def next_delay(self, current_delay: float) -> float:
        """Double a delay, bounded by the maximum.

        Args:
            current_delay: Delay used for the previous retry, in seconds.

        Returns:
            Delay for the next retry, in seconds.
        """
        return min(current_delay * 2, self.max_delay_seconds)
