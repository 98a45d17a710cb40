"""Per-entity failure ledger with not-before scheduling."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from taxaharvest.store.errors import StateStoreError
from taxaharvest.store.models import FailureRecord
from taxaharvest.store.store import CacheStore, format_timestamp, parse_timestamp


logger = structlog.get_logger()

DEFAULT_RETRY_DELAY = timedelta(minutes=5)
MAX_RETRY_DELAY = timedelta(days=1)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class FailureLedger:
    """Tracks entities whose last fetch failed, keyed by endpoint.

    A record is created or bumped on every failure and deleted on the next
    success. Records become eligible for retry once their not-before time
    passes; the ledger never gives up on an entity. The default wait doubles
    with each consecutive failure up to a cap.
    """

    def __init__(
        self,
        store: CacheStore,
        endpoint: str,
        default_retry_delay: timedelta = DEFAULT_RETRY_DELAY,
        max_retry_delay: timedelta = MAX_RETRY_DELAY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the ledger.

        Args:
            store: Connected writer store sharing the ledger table.
            endpoint: Endpoint key (e.g. "wikidata.entity").
            default_retry_delay: Wait after a first failure when none is given.
            max_retry_delay: Upper bound for the doubled wait.
            clock: Optional UTC clock.
        """
        self._store = store
        self._endpoint = endpoint
        self._default_delay = default_retry_delay
        self._max_delay = max(max_retry_delay, default_retry_delay)
        self._clock = clock or _utc_now
        self._log = logger.bind(
            component="ledger", endpoint=endpoint, run_id=store.run_id
        )

    @property
    def endpoint(self) -> str:
        """Get the endpoint key."""
        return self._endpoint

    def backoff_delay(self, attempt: int) -> timedelta:
        """Wait before retrying after the given consecutive failure.

        Args:
            attempt: 1-based count of consecutive failures.

        Returns:
            The default delay doubled per earlier failure, capped.
        """
        if self._default_delay <= timedelta(0):
            return timedelta(0)
        # Cap the exponent so huge attempt counts cannot overflow timedelta
        doublings = min(max(attempt - 1, 0), 32)
        return min(self._default_delay * (2**doublings), self._max_delay)

    def record_failure(
        self,
        external_id: str,
        error: str,
        status: int | None = None,
        retry_delay: timedelta | None = None,
    ) -> FailureRecord:
        """Record a failed fetch.

        Args:
            external_id: Entity that failed.
            error: Error text.
            status: HTTP status, if a response was received.
            retry_delay: Time before the entity is eligible again; defaults
                to the backoff for the entity's attempt count.

        Returns:
            The updated failure record.
        """
        attempted_at = self._clock()

        with self._store.transaction("record_failure") as ctx:
            conn = self._store.connection()
            if retry_delay is None:
                row = conn.execute(
                    """
                    SELECT attempt_count FROM failed_requests
                    WHERE endpoint = ? AND external_id = ?
                    """,
                    (self._endpoint, external_id),
                ).fetchone()
                attempt = row["attempt_count"] + 1 if row else 1
                retry_delay = self.backoff_delay(attempt)
            next_attempt = attempted_at + max(retry_delay, timedelta(0))
            conn.execute(
                """
                INSERT INTO failed_requests (
                    endpoint, external_id, attempt_count, last_error,
                    last_status, last_attempt_at, next_attempt_after
                ) VALUES (?, ?, 1, ?, ?, ?, ?)
                ON CONFLICT(endpoint, external_id) DO UPDATE SET
                    attempt_count = failed_requests.attempt_count + 1,
                    last_error = excluded.last_error,
                    last_status = excluded.last_status,
                    last_attempt_at = excluded.last_attempt_at,
                    next_attempt_after = excluded.next_attempt_after
                """,
                (
                    self._endpoint,
                    external_id,
                    error,
                    status,
                    format_timestamp(attempted_at),
                    format_timestamp(next_attempt),
                ),
            )
            ctx.add_affected_rows(1)

        record = self.get(external_id)
        if record is None:
            msg = f"Failure record for {external_id} vanished"
            raise StateStoreError(msg)
        self._store.metrics.record_ledger(recorded=True)

        self._log.info(
            "failure_recorded",
            external_id=external_id,
            attempt_count=record.attempt_count,
            status_code=status,
            next_attempt_after=record.next_attempt_after,
        )
        return record

    def clear_failure(self, external_id: str) -> bool:
        """Remove the failure record after a success.

        Args:
            external_id: Entity that succeeded.

        Returns:
            True if a record was removed.
        """
        with self._store.transaction("clear_failure") as ctx:
            cursor = self._store.connection().execute(
                "DELETE FROM failed_requests WHERE endpoint = ? AND external_id = ?",
                (self._endpoint, external_id),
            )
            ctx.add_affected_rows(cursor.rowcount)
            cleared = cursor.rowcount > 0

        if cleared:
            self._store.metrics.record_ledger(recorded=False)
            self._log.debug("failure_cleared", external_id=external_id)
        return cleared

    def list_eligible(
        self,
        as_of: datetime | None = None,
        limit: int | None = None,
    ) -> list[str]:
        """List entities whose retry time has passed.

        Args:
            as_of: Reference time (defaults to now).
            limit: Maximum number of ids.

        Returns:
            Ids ordered by oldest attempt first.
        """
        reference = format_timestamp(as_of or self._clock())
        with self._store.reading() as conn:
            rows = conn.execute(
                """
                SELECT external_id FROM failed_requests
                WHERE endpoint = ?
                  AND (next_attempt_after IS NULL OR next_attempt_after <= ?)
                ORDER BY last_attempt_at, external_id
                LIMIT ?
                """,
                (self._endpoint, reference, limit if limit is not None else -1),
            ).fetchall()
        return [row["external_id"] for row in rows]

    def list_waiting(self, as_of: datetime | None = None) -> set[str]:
        """List entities still inside their retry delay.

        Args:
            as_of: Reference time (defaults to now).

        Returns:
            Ids whose next attempt lies after `as_of`.
        """
        reference = format_timestamp(as_of or self._clock())
        with self._store.reading() as conn:
            rows = conn.execute(
                """
                SELECT external_id FROM failed_requests
                WHERE endpoint = ? AND next_attempt_after > ?
                """,
                (self._endpoint, reference),
            ).fetchall()
        return {row["external_id"] for row in rows}

    def get(self, external_id: str) -> FailureRecord | None:
        """Get the failure record for an entity.

        Args:
            external_id: Entity id.

        Returns:
            The record, or None if the entity has no outstanding failure.
        """
        with self._store.reading() as conn:
            row = conn.execute(
                """
                SELECT * FROM failed_requests
                WHERE endpoint = ? AND external_id = ?
                """,
                (self._endpoint, external_id),
            ).fetchone()
        if row is None:
            return None

        last_attempt = parse_timestamp(row["last_attempt_at"])
        if last_attempt is None:
            msg = f"Failure record for {external_id} has no attempt time"
            raise StateStoreError(msg)
        return FailureRecord(
            endpoint=row["endpoint"],
            external_id=row["external_id"],
            attempt_count=row["attempt_count"],
            last_error=row["last_error"],
            last_status=row["last_status"],
            last_attempt_at=last_attempt,
            next_attempt_after=parse_timestamp(row["next_attempt_after"]),
        )

    def count(self) -> int:
        """Count outstanding failure records for this endpoint."""
        with self._store.reading() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM failed_requests WHERE endpoint = ?",
                (self._endpoint,),
            ).fetchone()
        return int(row[0])
