"""Rate-limited HTTP client with bounded concurrency and retries."""

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx
import structlog

from taxaharvest.fetch.cancellation import CancellationToken
from taxaharvest.fetch.constants import (
    HTTP_STATUS_OK_MAX,
    HTTP_STATUS_OK_MIN,
    MAX_ERROR_BODY_CHARS,
    MAX_RETRY_AFTER_SECONDS,
    SEMAPHORE_POLL_SECONDS,
)
from taxaharvest.fetch.errors import (
    ApiError,
    IngestionCancelled,
    PermanentApiError,
    RetryableApiError,
    TransportError,
)
from taxaharvest.fetch.metrics import FetchMetrics
from taxaharvest.fetch.models import ApiRequest, ApiResponse, RetryPolicy
from taxaharvest.fetch.redact import (
    redact_headers,
    redact_params,
    redact_url_credentials,
)


logger = structlog.get_logger()

Sleeper = Callable[[float], None]
Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RetryClient:
    """HTTP client shared by all requests to one provider endpoint family.

    Provides:
    - A counting semaphore limiting in-flight logical requests; the slot is
      held across every retry of that request
    - Exponential backoff on transport errors and retryable statuses
    - Retry-After compliance (delta seconds or HTTP date)
    - Minimum spacing between request starts
    - Cooperative cancellation of every wait
    - Header redaction for logging and metrics collection

    The client never touches persisted state; callers receive either an
    `ApiResponse` or a typed `ApiError`.
    """

    def __init__(  # noqa: PLR0913
        self,
        name: str,
        policy: RetryPolicy,
        timeout_seconds: float,
        max_concurrency: int = 1,
        min_interval_seconds: float = 0.0,
        default_headers: dict[str, str] | None = None,
        cancel: CancellationToken | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Sleeper | None = None,
        clock: Clock | None = None,
        run_id: str | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            name: Client name for logging (e.g. "wikidata.api").
            policy: Retry policy.
            timeout_seconds: Per-attempt timeout.
            max_concurrency: Maximum in-flight logical requests.
            min_interval_seconds: Minimum spacing between request starts.
            default_headers: Headers sent with every request.
            cancel: Run-level cancellation token.
            transport: Optional httpx transport (tests inject MockTransport).
            sleep: Optional sleep function replacing cancellable waits.
            clock: Optional UTC clock used for Retry-After dates.
            run_id: Run identifier for logging.
        """
        self._name = name
        self._policy = policy
        self._timeout = timeout_seconds
        self._max_concurrency = max(1, max_concurrency)
        self._min_interval = max(0.0, min_interval_seconds)
        self._cancel = cancel or CancellationToken()
        self._sleep = sleep
        self._clock = clock or _utc_now
        self._slots = threading.BoundedSemaphore(self._max_concurrency)
        self._pace_lock = threading.Lock()
        self._next_allowed = 0.0
        self._metrics = FetchMetrics.get_instance()
        self._client = httpx.Client(
            timeout=timeout_seconds,
            follow_redirects=True,
            headers=default_headers or {},
            transport=transport,
        )
        self._log = logger.bind(component="fetch", client=name, run_id=run_id)

    @property
    def name(self) -> str:
        """Get the client name."""
        return self._name

    @property
    def max_concurrency(self) -> int:
        """Get the maximum number of in-flight logical requests."""
        return self._max_concurrency

    @property
    def cancel_token(self) -> CancellationToken:
        """Get the cancellation token observed by this client."""
        return self._cancel

    def close(self) -> None:
        """Close the underlying connection pool."""
        self._client.close()

    def __enter__(self) -> "RetryClient":
        """Context manager entry."""
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Context manager exit."""
        self.close()

    def send(self, request: ApiRequest) -> ApiResponse:
        """Execute one logical request.

        Args:
            request: Request description.

        Returns:
            The 2xx response.

        Raises:
            PermanentApiError: Non-retryable status on any attempt.
            RetryableApiError: Retryable status on the final attempt.
            TransportError: Network failure on the final attempt.
            IngestionCancelled: Cancellation during a wait.
        """
        log = self._log.bind(
            method=request.method,
            url=redact_url_credentials(request.url),
            params=redact_params(request.params),
        )
        start_ns = time.perf_counter_ns()

        self._acquire_slot()
        try:
            response = self._execute_with_retry(request, log)
        except IngestionCancelled:
            self._metrics.record_cancelled()
            log.info("request_cancelled")
            raise
        except ApiError as e:
            self._metrics.record_failure(type(e).__name__)
            log.warning(
                "request_failed",
                error_type=type(e).__name__,
                status_code=e.status,
                attempts=e.attempts,
            )
            raise
        finally:
            self._slots.release()
            duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
            self._metrics.record_duration(duration_ms)

        log.info(
            "request_complete",
            status_code=response.status_code,
            bytes=response.body_size,
            attempts=response.attempts,
            duration_ms=round(response.duration_ms, 2),
        )
        return response

    def _acquire_slot(self) -> None:
        """Wait for a concurrency slot, observing cancellation."""
        self._cancel.raise_if_cancelled()
        while not self._slots.acquire(timeout=SEMAPHORE_POLL_SECONDS):
            self._cancel.raise_if_cancelled()

    def _execute_with_retry(
        self,
        request: ApiRequest,
        log: structlog.stdlib.BoundLogger,
    ) -> ApiResponse:
        """Run the attempt loop for a request holding a slot.

        Args:
            request: Request description.
            log: Bound logger.

        Returns:
            The 2xx response.
        """
        policy = self._policy
        delay = min(policy.initial_delay_seconds, policy.max_delay_seconds)
        attempt = 0
        start_ns = time.perf_counter_ns()

        while True:
            attempt += 1
            self._cancel.raise_if_cancelled()
            self._pace()

            log.debug(
                "request_attempt",
                attempt=attempt,
                headers=redact_headers(request.headers),
            )

            try:
                response = self._client.request(
                    request.method,
                    request.url,
                    params=request.params or None,
                    data=request.form,
                    headers=request.headers or None,
                )
            except httpx.TransportError as e:
                self._metrics.record_transport_error()
                timed_out = isinstance(e, httpx.TimeoutException)
                message = str(e) or type(e).__name__
                if not policy.has_attempts_left(attempt):
                    raise TransportError(
                        request.url, message, attempt, timed_out=timed_out
                    ) from e

                log.warning(
                    "request_transport_error",
                    attempt=attempt,
                    error=message,
                    timed_out=timed_out,
                    delay_seconds=delay,
                )
                self._metrics.record_retry()
                self._wait(delay)
                delay = policy.next_delay(delay)
                continue

            status = response.status_code
            self._metrics.record_response(status, len(response.content))

            if HTTP_STATUS_OK_MIN <= status < HTTP_STATUS_OK_MAX:
                return ApiResponse(
                    url=str(response.url),
                    status_code=status,
                    headers=dict(response.headers),
                    body=response.content,
                    attempts=attempt,
                    duration_ms=(time.perf_counter_ns() - start_ns) / 1_000_000,
                )

            body = response.text[:MAX_ERROR_BODY_CHARS]
            if not policy.is_retryable_status(status):
                raise PermanentApiError(request.url, status, body, attempt)

            if not policy.has_attempts_left(attempt):
                raise RetryableApiError(request.url, status, body, attempt)

            retry_after = self._parse_retry_after(response.headers.get("retry-after"))
            self._metrics.record_retry()
            if retry_after is not None:
                log.info(
                    "request_retry",
                    attempt=attempt,
                    status_code=status,
                    retry_after_seconds=round(retry_after, 3),
                )
                self._wait(retry_after)
            else:
                log.info(
                    "request_retry",
                    attempt=attempt,
                    status_code=status,
                    delay_seconds=delay,
                )
                self._wait(delay)
                delay = policy.next_delay(delay)

    def _pace(self) -> None:
        """Space request starts by the configured minimum interval.

        Each caller reserves the next start slot under the lock, then waits
        outside it, so concurrent workers queue in arrival order.
        """
        if self._min_interval <= 0:
            return

        with self._pace_lock:
            now = time.monotonic()
            wait_seconds = self._next_allowed - now
            self._next_allowed = max(now, self._next_allowed) + self._min_interval

        if wait_seconds > 0:
            self._wait(wait_seconds)

    def _wait(self, seconds: float) -> None:
        """Wait, aborting promptly on cancellation.

        Args:
            seconds: Time to wait.
        """
        if self._sleep is None:
            self._cancel.wait(seconds)
            return

        self._cancel.raise_if_cancelled()
        self._sleep(seconds)
        self._cancel.raise_if_cancelled()

    def _parse_retry_after(self, value: str | None) -> float | None:
        """Parse Retry-After header value.

        Args:
            value: Header value (delta seconds or HTTP date).

        Returns:
            Seconds to wait, or None if absent or not parseable.
        """
        if not value:
            return None

        value = value.strip()

        # Try parsing as delta seconds
        try:
            seconds = float(value)
        except ValueError:
            seconds = None

        if seconds is None:
            # Try parsing as HTTP date
            try:
                when = parsedate_to_datetime(value)
            except (ValueError, TypeError):
                return None
            if when.tzinfo is None:
                when = when.replace(tzinfo=UTC)
            seconds = (when - self._clock()).total_seconds()

        return min(max(0.0, seconds), float(MAX_RETRY_AFTER_SECONDS))
