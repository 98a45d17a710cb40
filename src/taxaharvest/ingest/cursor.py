"""Resumable cursor enumeration with adaptive batch sizing."""

import re
import sqlite3
import uuid
from typing import Protocol

import structlog

from taxaharvest.fetch.cancellation import CancellationToken
from taxaharvest.fetch.constants import TIMEOUT_STATUS_CODES
from taxaharvest.fetch.errors import (
    ApiError,
    IngestionCancelled,
    RetryableApiError,
    TransportError,
)
from taxaharvest.ingest.errors import CursorPersistenceError
from taxaharvest.ingest.models import (
    MIN_BATCH_SIZE,
    BatchTuning,
    CursorRunResult,
    SeedPage,
)
from taxaharvest.ingest.state_machine import StreamState, StreamStateMachine
from taxaharvest.store.errors import StateStoreError
from taxaharvest.store.store import CacheStore


logger = structlog.get_logger()

_RESUME_PATTERN = re.compile(r"^[Qq]?(\d+)$")


class PageFetcher(Protocol):
    """Source of ordered pages for one enumeration stream."""

    @property
    def cursor_key(self) -> str:
        """Name under which the stream's cursor is persisted."""
        ...

    def fetch_page(self, after: int, size: int) -> SeedPage:
        """Fetch up to `size` records with sort keys greater than `after`.

        Args:
            after: Exclusive lower bound on sort keys.
            size: Maximum number of records.

        Returns:
            The page, ordered by sort key.
        """
        ...


def is_timeout_failure(error: ApiError) -> bool:
    """Check whether a page error should shrink the batch.

    Args:
        error: Error raised by the retry client.

    Returns:
        True for timed-out transports and 408/504 responses.
    """
    if isinstance(error, TransportError):
        return error.timed_out
    if isinstance(error, RetryableApiError):
        return error.status in TIMEOUT_STATUS_CODES
    return False


def parse_resume_from(value: str | int) -> int:
    """Parse an explicit resume position.

    Args:
        value: Numeric position, or an entity id such as "Q123".

    Returns:
        The numeric position.

    Raises:
        ValueError: If the value is not a position.
    """
    if isinstance(value, int):
        if value < 0:
            msg = f"Resume position must not be negative: {value}"
            raise ValueError(msg)
        return value
    match = _RESUME_PATTERN.match(value.strip())
    if match is None:
        msg = f"Cannot resume from '{value}'"
        raise ValueError(msg)
    return int(match.group(1))


class AdaptiveBatchSizer:
    """Shrinks page size on timeouts and ramps it back after successes."""

    def __init__(self, tuning: BatchTuning) -> None:
        """Initialize at the configured page size.

        Args:
            tuning: Batch tuning parameters.
        """
        self._tuning = tuning
        self._size = tuning.batch_size

    @property
    def size(self) -> int:
        """Current page size."""
        return self._size

    def shrink(self) -> int:
        """Halve the page size, never below the floor."""
        self._size = max(MIN_BATCH_SIZE, self._size // 2)
        return self._size

    def grow(self) -> int:
        """Ramp the page size up, never above the configured size."""
        self._size = min(
            self._tuning.batch_size, self._size + self._tuning.ramp_increment
        )
        return self._size


class CursorController:
    """Walks an ordered enumeration, persisting candidates page by page.

    The cursor only moves when a page and its position are committed in
    one store transaction, so an interrupted run resumes exactly after the
    last durable page.
    """

    def __init__(
        self,
        store: CacheStore,
        fetcher: PageFetcher,
        tuning: BatchTuning,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            store: Store holding candidates and the cursor.
            fetcher: Page source for the stream.
            tuning: Batch sizing parameters.
            cancel: Run-level cancellation token.
            run_id: Run identifier for logging.
        """
        self._store = store
        self._fetcher = fetcher
        self._tuning = tuning
        self._cancel = cancel or CancellationToken()
        self._run_id = run_id or str(uuid.uuid4())
        self._log = logger.bind(
            component="cursor",
            run_id=self._run_id,
            stream=fetcher.cursor_key,
        )

    @property
    def cursor_key(self) -> str:
        """Name of the persisted cursor."""
        return self._fetcher.cursor_key

    def start_position(
        self, resume_from: str | int | None = None, reset: bool = False
    ) -> int:
        """Resolve where the stream starts.

        Args:
            resume_from: Explicit position, highest precedence.
            reset: Start from zero, ignoring the persisted cursor.

        Returns:
            Exclusive lower bound for the first page.

        Raises:
            CursorCorruptError: If the persisted cursor is not an integer.
        """
        if resume_from is not None:
            return parse_resume_from(resume_from)
        if reset:
            return 0
        stored = self._store.get_cursor(self.cursor_key)
        return stored if stored is not None else 0

    def run(  # noqa: PLR0915
        self,
        limit: int | None = None,
        resume_from: str | int | None = None,
        reset: bool = False,
    ) -> CursorRunResult:
        """Enumerate pages until exhausted, limited, or failed.

        Args:
            limit: Maximum number of records to fetch.
            resume_from: Explicit start position ("Q123" or "123").
            reset: Start from zero.

        Returns:
            Counts and the final cursor position.

        Raises:
            IngestionCancelled: If cancelled before a fetch.
            ApiError: If a page fails for a non-timeout reason, or timeouts
                persist beyond the retry budget.
            CursorPersistenceError: If a page cannot be committed.
        """
        start = self.start_position(resume_from, reset)
        machine = StreamStateMachine(self.cursor_key, self._run_id)
        sizer = AdaptiveBatchSizer(self._tuning)
        cursor = start
        remaining = limit
        batches = fetched = new = updated = touched = 0
        consecutive_timeouts = 0

        self._log.info(
            "cursor_run_started",
            start=start,
            limit=limit,
            batch_size=sizer.size,
        )

        if remaining is not None and remaining <= 0:
            machine.transition(StreamState.EXHAUSTED)

        while not machine.is_terminal:
            self._cancel.raise_if_cancelled()

            requested = sizer.size if remaining is None else min(sizer.size, remaining)
            machine.transition(StreamState.FETCHING)

            try:
                page = self._fetcher.fetch_page(cursor, requested)
            except IngestionCancelled:
                self._log.info("cursor_run_cancelled", cursor=cursor)
                raise
            except ApiError as e:
                if (
                    is_timeout_failure(e)
                    and consecutive_timeouts < self._tuning.max_timeout_retries
                ):
                    consecutive_timeouts += 1
                    machine.transition(StreamState.IDLE)
                    self._log.warning(
                        "batch_timeout",
                        cursor=cursor,
                        requested=requested,
                        next_batch_size=sizer.shrink(),
                        consecutive_timeouts=consecutive_timeouts,
                        cool_down_seconds=self._tuning.cool_down_seconds,
                    )
                    self._cancel.wait(self._tuning.cool_down_seconds)
                    continue
                machine.transition(StreamState.FAILED)
                self._log.error(
                    "cursor_run_failed",
                    cursor=cursor,
                    error_type=type(e).__name__,
                    status_code=e.status,
                    consecutive_timeouts=consecutive_timeouts,
                )
                raise
            except Exception:
                machine.transition(StreamState.FAILED)
                self._log.exception("cursor_run_failed", cursor=cursor)
                raise

            consecutive_timeouts = 0

            last = page.last_sort_key
            if last is None:
                machine.transition(StreamState.EXHAUSTED)
                break

            machine.transition(StreamState.COMMITTING)

            try:
                result = self._store.commit_candidate_batch(
                    self.cursor_key, page.records, last
                )
            except (StateStoreError, sqlite3.Error) as e:
                machine.transition(StreamState.FAILED)
                self._log.error(
                    "cursor_commit_failed",
                    cursor=cursor,
                    attempted_cursor=last,
                    error=str(e),
                )
                raise CursorPersistenceError(self.cursor_key, last, e) from e

            cursor = last
            batches += 1
            fetched += len(page.records)
            new += result.new
            updated += result.updated
            touched += result.touched
            if remaining is not None:
                remaining -= len(page.records)

            self._log.info(
                "batch_committed",
                cursor=cursor,
                rows=len(page.records),
                requested=requested,
                new=result.new,
                updated=result.updated,
            )

            if len(page.records) < requested or (
                remaining is not None and remaining <= 0
            ):
                machine.transition(StreamState.EXHAUSTED)
            else:
                machine.transition(StreamState.IDLE)
                sizer.grow()

        self._log.info(
            "cursor_run_complete",
            start=start,
            cursor=cursor,
            batches=batches,
            fetched=fetched,
            state=machine.state.value,
        )

        return CursorRunResult(
            start=start,
            cursor=cursor,
            batches=batches,
            fetched=fetched,
            new=new,
            updated=updated,
            touched=touched,
            state=machine.state,
        )
