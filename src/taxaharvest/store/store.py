"""SQLite content cache store implementation."""

import json
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Generator, Iterable, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from taxaharvest.store.errors import (
    CursorCorruptError,
    ImportRunNotFoundError,
    ImportRunStateError,
    ReadOnlyStoreError,
    StoreConnectionError,
)
from taxaharvest.store.hash import compute_content_hash
from taxaharvest.store.metrics import MetricsRecorder, StoreMetrics, TransactionContext
from taxaharvest.store.migrations import CURRENT_VERSION, MigrationManager
from taxaharvest.store.models import (
    CachedEntity,
    CacheStats,
    CandidateRecord,
    CandidateUpsertResult,
    EntityEventType,
    ImportRun,
    ImportRunStatus,
    ImportRunSummary,
    LookupRow,
    NameVariant,
    RedirectEdge,
    UpsertResult,
)


logger = structlog.get_logger()

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Format a timestamp for storage.

    Fixed microsecond precision in UTC keeps lexical order equal to time
    order, which the staleness and ledger queries rely on.

    Args:
        value: Timezone-aware timestamp.

    Returns:
        ISO-8601 string.
    """
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp.

    Args:
        value: ISO-8601 string or None.

    Returns:
        Timezone-aware datetime, or None.
    """
    if value is None:
        return None
    return datetime.fromisoformat(value)


class CacheStore:
    """SQLite store for one provider's fetched entities and provenance.

    Provides transactional APIs for import runs, cached entities, lookup and
    name rows, redirect chains, candidates, and named cursors. Uses WAL mode
    so read-only reporting handles never block the writer.

    A single writer connection is shared by the batch workers of one run;
    a re-entrant lock serializes access to it.
    """

    def __init__(
        self,
        db_path: Path | str,
        read_only: bool = False,
        run_id: str | None = None,
        clock: Clock | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        """Initialize the cache store.

        Args:
            db_path: Path to SQLite database file.
            read_only: Open a query-only handle that never migrates or writes.
            run_id: Optional run ID for logging context.
            clock: Optional UTC clock (tests inject a fixed time).
            metrics: Optional metrics recorder (defaults to the singleton).
        """
        self._db_path = Path(db_path)
        self._read_only = read_only
        self._run_id = run_id or str(uuid.uuid4())
        self._clock = clock or _utc_now
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._metrics: MetricsRecorder = metrics or StoreMetrics.get_instance()
        self._log = logger.bind(
            component="store",
            run_id=self._run_id,
            db_path=str(self._db_path),
            read_only=read_only,
        )

    @property
    def db_path(self) -> Path:
        """Get the database path."""
        return self._db_path

    @property
    def run_id(self) -> str:
        """Get the current run ID."""
        return self._run_id

    @property
    def read_only(self) -> bool:
        """Check whether this handle rejects writes."""
        return self._read_only

    @property
    def metrics(self) -> MetricsRecorder:
        """Recorder receiving this store's events."""
        return self._metrics

    @property
    def is_connected(self) -> bool:
        """Check if connected to database."""
        return self._conn is not None

    def now(self) -> datetime:
        """Current time according to the store clock."""
        return self._clock()

    def connect(self) -> None:
        """Open connection to database and apply migrations.

        Writer handles create the database file and parent directories if
        they don't exist. Read-only handles require an existing database.

        Raises:
            StoreConnectionError: If the database cannot be opened.
        """
        if self._conn is not None:
            return

        self._log.info("connecting_to_database")

        try:
            if self._read_only:
                self._conn = self._open_read_only()
                return
            self._conn = self._open_writer()
        except sqlite3.Error as e:
            self._conn = None
            msg = f"Cannot open {self._db_path}: {e}"
            raise StoreConnectionError(msg) from e

        migration_mgr = MigrationManager(self._conn)
        old_version = migration_mgr.get_current_version()
        applied = migration_mgr.apply_migrations()

        self._log.info(
            "database_connected",
            old_version=old_version,
            new_version=CURRENT_VERSION,
            migrations_applied=applied,
        )

    def _open_writer(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _open_read_only(self) -> sqlite3.Connection:
        if not self._db_path.exists():
            msg = f"Cache database does not exist: {self._db_path}"
            raise StoreConnectionError(msg)
        uri = f"{self._db_path.resolve().as_uri()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA query_only=ON")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._log.info("database_closed")

    def __enter__(self) -> "CacheStore":
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Context manager exit."""
        self.close()

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database is connected.

        Returns:
            The database connection.

        Raises:
            StoreConnectionError: If not connected.
        """
        if self._conn is None:
            raise StoreConnectionError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self, operation: str) -> Generator[TransactionContext]:
        """Run a write transaction with timing and logging.

        Components that share this store's database (the failure ledger)
        write through this method rather than holding their own connection.

        Args:
            operation: Name of the operation for logging.

        Yields:
            Transaction context with timing information.

        Raises:
            ReadOnlyStoreError: If the handle is read-only.
        """
        if self._read_only:
            raise ReadOnlyStoreError(operation)

        with self._lock:
            conn = self._ensure_connected()
            tx_id = str(uuid.uuid4())[:8]
            start_ns = time.perf_counter_ns()
            ctx = TransactionContext(
                tx_id=tx_id, start_time_ns=start_ns, operation=operation
            )

            try:
                yield ctx
                conn.commit()
            except Exception:
                conn.rollback()
                duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
                self._log.error(
                    "transaction_failed",
                    tx_id=tx_id,
                    op=operation,
                    duration_ms=round(duration_ms, 2),
                )
                raise

            duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
            self._metrics.record_tx_duration(duration_ms)
            self._log.debug(
                "transaction_complete",
                tx_id=tx_id,
                op=operation,
                affected_rows=ctx.affected_rows,
                duration_ms=round(duration_ms, 2),
            )

    @contextmanager
    def reading(self) -> Generator[sqlite3.Connection]:
        """Hold the connection lock for a read."""
        with self._lock:
            yield self._ensure_connected()

    def connection(self) -> sqlite3.Connection:
        """Get the live connection for statements inside `transaction()`.

        Returns:
            The database connection.
        """
        return self._ensure_connected()

    # ===== Import Runs =====

    def begin_import(self, target: str) -> int:
        """Record the start of a network request.

        Must be called before the request is sent so that a failure is
        still attributable to a run.

        Args:
            target: Request URL or description.

        Returns:
            The new import run id.
        """
        with self.transaction("begin_import") as ctx:
            conn = self._ensure_connected()
            cursor = conn.execute(
                """
                INSERT INTO import_runs (target, status, started_at)
                VALUES (?, ?, ?)
                """,
                (target, ImportRunStatus.RUNNING.value, format_timestamp(self.now())),
            )
            ctx.add_affected_rows(1)
            import_run_id = cursor.lastrowid

        if import_run_id is None:
            raise StoreConnectionError("Insert into import_runs returned no row id")
        return import_run_id

    def complete_import_success(
        self,
        import_run_id: int,
        status: int,
        payload_bytes: int,
        duration_ms: float,
    ) -> ImportRun:
        """Finalize an import run as successful.

        Args:
            import_run_id: The run to finalize.
            status: HTTP status received.
            payload_bytes: Size of the response body.
            duration_ms: Request duration.

        Returns:
            The completed run.

        Raises:
            ImportRunNotFoundError: If the run does not exist.
            ImportRunStateError: If the run was already completed.
        """
        run = self._complete_import(
            import_run_id,
            ImportRunStatus.SUCCEEDED,
            status=status,
            payload_bytes=payload_bytes,
            duration_ms=duration_ms,
            error=None,
        )
        self._metrics.record_import(success=True)
        return run

    def complete_import_failure(
        self,
        import_run_id: int,
        error: str,
        status: int | None = None,
        duration_ms: float | None = None,
    ) -> ImportRun:
        """Finalize an import run as failed.

        Args:
            import_run_id: The run to finalize.
            error: Error text.
            status: HTTP status, if a response was received.
            duration_ms: Request duration.

        Returns:
            The completed run.

        Raises:
            ImportRunNotFoundError: If the run does not exist.
            ImportRunStateError: If the run was already completed.
        """
        run = self._complete_import(
            import_run_id,
            ImportRunStatus.FAILED,
            status=status,
            payload_bytes=None,
            duration_ms=duration_ms,
            error=error,
        )
        self._metrics.record_import(success=False)
        return run

    def _complete_import(  # noqa: PLR0913
        self,
        import_run_id: int,
        outcome: ImportRunStatus,
        status: int | None,
        payload_bytes: int | None,
        duration_ms: float | None,
        error: str | None,
    ) -> ImportRun:
        with self.transaction("complete_import") as ctx:
            conn = self._ensure_connected()
            cursor = conn.execute(
                """
                UPDATE import_runs
                SET status = ?, ended_at = ?, duration_ms = ?,
                    http_status = ?, payload_bytes = ?, error = ?
                WHERE id = ? AND status = ?
                """,
                (
                    outcome.value,
                    format_timestamp(self.now()),
                    duration_ms,
                    status,
                    payload_bytes,
                    error,
                    import_run_id,
                    ImportRunStatus.RUNNING.value,
                ),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT status FROM import_runs WHERE id = ?", (import_run_id,)
                ).fetchone()
                if row is None:
                    raise ImportRunNotFoundError(import_run_id)
                self._log.error(
                    "invariant_violation",
                    error_type="import_run_completed_twice",
                    import_run_id=import_run_id,
                    current_status=row["status"],
                )
                raise ImportRunStateError(import_run_id, row["status"])
            ctx.add_affected_rows(cursor.rowcount)

        run = self.get_import_run(import_run_id)
        if run is None:
            raise ImportRunNotFoundError(import_run_id)
        return run

    def abandon_import(self, import_run_id: int) -> bool:
        """Delete an import run that never completed.

        Used when cancellation interrupts a request so no half-written run
        remains. Completed runs are never removed.

        Args:
            import_run_id: The run to discard.

        Returns:
            True if a running import was removed.
        """
        with self.transaction("abandon_import") as ctx:
            conn = self._ensure_connected()
            cursor = conn.execute(
                "DELETE FROM import_runs WHERE id = ? AND status = ?",
                (import_run_id, ImportRunStatus.RUNNING.value),
            )
            ctx.add_affected_rows(cursor.rowcount)
            return cursor.rowcount > 0

    def get_import_run(self, import_run_id: int) -> ImportRun | None:
        """Get an import run by id.

        Args:
            import_run_id: The run id.

        Returns:
            The run, or None if not found.
        """
        with self.reading() as conn:
            row = conn.execute(
                "SELECT * FROM import_runs WHERE id = ?", (import_run_id,)
            ).fetchone()
        return self._row_to_import_run(row) if row is not None else None

    def get_recent_import_runs(self, limit: int = 20) -> list[ImportRun]:
        """Get the most recently started import runs.

        Args:
            limit: Maximum number of runs.

        Returns:
            Runs, newest first.
        """
        with self.reading() as conn:
            rows = conn.execute(
                "SELECT * FROM import_runs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_import_run(row) for row in rows]

    def get_import_run_summaries(
        self, limit: int | None = None
    ) -> list[ImportRunSummary]:
        """Summarize import runs by status.

        Args:
            limit: Only consider the most recent `limit` runs.

        Returns:
            One summary per status present, ordered running, succeeded, failed.
        """
        with self.reading() as conn:
            rows = conn.execute(
                """
                SELECT status,
                       COUNT(*) AS runs,
                       COALESCE(SUM(payload_bytes), 0) AS payload_bytes,
                       AVG(duration_ms) AS avg_duration_ms,
                       MIN(started_at) AS first_started_at,
                       MAX(started_at) AS last_started_at
                FROM (
                    SELECT * FROM import_runs ORDER BY id DESC LIMIT ?
                )
                GROUP BY status
                """,
                (limit if limit is not None else -1,),
            ).fetchall()

        order = {status: index for index, status in enumerate(ImportRunStatus)}
        summaries = [
            ImportRunSummary(
                status=ImportRunStatus(row["status"]),
                runs=row["runs"],
                payload_bytes=row["payload_bytes"],
                avg_duration_ms=row["avg_duration_ms"],
                first_started_at=parse_timestamp(row["first_started_at"]),
                last_started_at=parse_timestamp(row["last_started_at"]),
            )
            for row in rows
        ]
        return sorted(summaries, key=lambda s: order[s.status])

    def _row_to_import_run(self, row: sqlite3.Row) -> ImportRun:
        started_at = parse_timestamp(row["started_at"])
        if started_at is None:
            raise StoreConnectionError(f"Import run {row['id']} has no start time")
        return ImportRun(
            id=row["id"],
            target=row["target"],
            status=ImportRunStatus(row["status"]),
            started_at=started_at,
            ended_at=parse_timestamp(row["ended_at"]),
            duration_ms=row["duration_ms"],
            http_status=row["http_status"],
            payload_bytes=row["payload_bytes"],
            error=row["error"],
        )

    # ===== Entities =====

    def upsert_entity(  # noqa: PLR0913
        self,
        external_id: str,
        import_run_id: int,
        payload: str,
        downloaded_at: datetime | None = None,
        *,
        canonical_title: str | None = None,
        parent_external_id: str | None = None,
        is_redirect: bool = False,
        attributes: dict[str, Any] | None = None,
    ) -> UpsertResult:
        """Insert or update the entity for an external id.

        - Absent: insert as NEW
        - Present with the same content hash: refresh provenance (UNCHANGED)
        - Present with a different hash: replace payload (UPDATED)

        Args:
            external_id: Provider-scoped id.
            import_run_id: Import run that produced the payload.
            payload: Canonical payload text.
            downloaded_at: Fetch time (defaults to now).
            canonical_title: Resolved display title.
            parent_external_id: Taxonomic parent id.
            is_redirect: Whether the entity is a redirect stub.
            attributes: Provider-specific derived fields.

        Returns:
            Upsert result with row id and event type.
        """
        with self.transaction("upsert_entity") as ctx:
            result = self._upsert_entity(
                self._ensure_connected(),
                external_id=external_id,
                import_run_id=import_run_id,
                payload=payload,
                downloaded_at=downloaded_at or self.now(),
                canonical_title=canonical_title,
                parent_external_id=parent_external_id,
                is_redirect=is_redirect,
                attributes=attributes or {},
            )
            ctx.add_affected_rows(1)
        self._metrics.record_event(result.event_type)
        return result

    def _upsert_entity(  # noqa: PLR0913
        self,
        conn: sqlite3.Connection,
        external_id: str,
        import_run_id: int,
        payload: str,
        downloaded_at: datetime,
        canonical_title: str | None,
        parent_external_id: str | None,
        is_redirect: bool,
        attributes: dict[str, Any],
    ) -> UpsertResult:
        content_hash = compute_content_hash(payload)
        payload_bytes = len(payload.encode("utf-8"))
        attributes_json = json.dumps(attributes, sort_keys=True, ensure_ascii=False)
        downloaded = format_timestamp(downloaded_at)

        existing = conn.execute(
            "SELECT id, content_hash FROM cached_entities WHERE external_id = ?",
            (external_id,),
        ).fetchone()

        if existing is None:
            cursor = conn.execute(
                """
                INSERT INTO cached_entities (
                    external_id, import_run_id, first_seen_at, downloaded_at,
                    payload, payload_bytes, content_hash, canonical_title,
                    parent_external_id, is_redirect, attributes_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    external_id,
                    import_run_id,
                    downloaded,
                    downloaded,
                    payload,
                    payload_bytes,
                    content_hash,
                    canonical_title,
                    parent_external_id,
                    1 if is_redirect else 0,
                    attributes_json,
                ),
            )
            row_id = cursor.lastrowid
            if row_id is None:
                raise StoreConnectionError("Insert into cached_entities returned no id")
            return UpsertResult(
                event_type=EntityEventType.NEW,
                row_id=row_id,
                content_hash=content_hash,
            )

        previous_hash = existing["content_hash"]
        conn.execute(
            """
            UPDATE cached_entities SET
                import_run_id = ?, downloaded_at = ?, payload = ?,
                payload_bytes = ?, content_hash = ?, canonical_title = ?,
                parent_external_id = ?, is_redirect = ?, attributes_json = ?
            WHERE id = ?
            """,
            (
                import_run_id,
                downloaded,
                payload,
                payload_bytes,
                content_hash,
                canonical_title,
                parent_external_id,
                1 if is_redirect else 0,
                attributes_json,
                existing["id"],
            ),
        )
        event = (
            EntityEventType.UNCHANGED
            if previous_hash == content_hash
            else EntityEventType.UPDATED
        )
        return UpsertResult(
            event_type=event,
            row_id=existing["id"],
            content_hash=content_hash,
            previous_hash=previous_hash,
        )

    def commit_entity(  # noqa: PLR0913
        self,
        import_run_id: int,
        external_id: str,
        payload: str,
        downloaded_at: datetime | None = None,
        *,
        canonical_title: str | None = None,
        parent_external_id: str | None = None,
        attributes: dict[str, Any] | None = None,
        lookups: Sequence[LookupRow] = (),
        names: Sequence[NameVariant] = (),
        alias_id: str | None = None,
        redirect_titles: Sequence[str] = (),
    ) -> UpsertResult:
        """Persist a decoded fetch result as one atomic unit.

        Writes the canonical entity with its lookup and name rows. When the
        request was made under an alias that redirected, also writes a
        redirect stub for the alias whose chain ends at the canonical entity.

        Args:
            import_run_id: Import run that produced the payload.
            external_id: Canonical id of the fetched record.
            payload: Canonical payload text.
            downloaded_at: Fetch time (defaults to now).
            canonical_title: Resolved display title.
            parent_external_id: Taxonomic parent id.
            attributes: Provider-specific derived fields.
            lookups: Alternative ids resolving to the entity.
            names: Name variants for search.
            alias_id: Requested id, when it differs from `external_id`.
            redirect_titles: Ordered hops from the alias; the last must equal
                `external_id`.

        Returns:
            Upsert result for the canonical entity.

        Raises:
            ValueError: If the redirect chain is malformed or cyclic.
        """
        if alias_id is not None:
            self._validate_chain(alias_id, external_id, redirect_titles)

        downloaded_at = downloaded_at or self.now()

        with self.transaction("commit_entity") as ctx:
            conn = self._ensure_connected()
            result = self._upsert_entity(
                conn,
                external_id=external_id,
                import_run_id=import_run_id,
                payload=payload,
                downloaded_at=downloaded_at,
                canonical_title=canonical_title,
                parent_external_id=parent_external_id,
                is_redirect=False,
                attributes=attributes or {},
            )
            ctx.add_affected_rows(1)
            ctx.add_affected_rows(self._replace_lookups(conn, result.row_id, lookups))
            ctx.add_affected_rows(self._replace_names(conn, result.row_id, names))
            # A former stub committed as canonical drops its old chain
            self._replace_redirect_chain(conn, result.row_id, [])

            cleared = [external_id]
            if alias_id is not None:
                stub_payload = json.dumps(
                    {"redirect_to": external_id, "hops": list(redirect_titles)},
                    ensure_ascii=False,
                )
                stub = self._upsert_entity(
                    conn,
                    external_id=alias_id,
                    import_run_id=import_run_id,
                    payload=stub_payload,
                    downloaded_at=downloaded_at,
                    canonical_title=canonical_title,
                    parent_external_id=None,
                    is_redirect=True,
                    attributes={"redirect_to": external_id},
                )
                conn.execute(
                    "DELETE FROM entity_names WHERE entity_row_id = ?", (stub.row_id,)
                )
                self._replace_lookups(conn, stub.row_id, [])
                edges = [
                    RedirectEdge(
                        hop=index,
                        target_title=title,
                        target_entity_row_id=(
                            result.row_id
                            if title == external_id
                            else self._find_row_id(conn, title)
                        ),
                    )
                    for index, title in enumerate(redirect_titles, start=1)
                ]
                ctx.add_affected_rows(
                    self._replace_redirect_chain(conn, stub.row_id, edges)
                )
                cleared.append(alias_id)

            conn.executemany(
                """
                UPDATE candidates SET missing_reason = NULL, missing_at = NULL
                WHERE external_id = ?
                """,
                [(entity_id,) for entity_id in cleared],
            )

        self._metrics.record_event(result.event_type)
        return result

    @staticmethod
    def _validate_chain(
        alias_id: str, external_id: str, redirect_titles: Sequence[str]
    ) -> None:
        if not redirect_titles:
            msg = f"Redirect from '{alias_id}' has no hops"
            raise ValueError(msg)
        if redirect_titles[-1] != external_id:
            msg = (
                f"Redirect chain from '{alias_id}' ends at "
                f"'{redirect_titles[-1]}', expected '{external_id}'"
            )
            raise ValueError(msg)
        seen = {alias_id}
        for title in redirect_titles:
            if title in seen:
                msg = f"Redirect chain from '{alias_id}' revisits '{title}'"
                raise ValueError(msg)
            seen.add(title)

    def replace_redirect_chain(
        self,
        entity_row_id: int,
        edges: Sequence[RedirectEdge],
    ) -> int:
        """Replace the stored redirect chain for an entity.

        The old chain is deleted and the new one inserted in one transaction;
        chains are never merged.

        Args:
            entity_row_id: Row id of the redirect stub.
            edges: Hops numbered 1..N in order.

        Returns:
            Number of hops written.

        Raises:
            ValueError: If hops are not numbered 1..N or revisit a title.
        """
        hops = [edge.hop for edge in edges]
        if hops != list(range(1, len(edges) + 1)):
            msg = f"Redirect hops must be numbered 1..{len(edges)}, got {hops}"
            raise ValueError(msg)
        titles = [edge.target_title for edge in edges]
        if len(set(titles)) != len(titles):
            msg = f"Redirect chain revisits a title: {titles}"
            raise ValueError(msg)

        with self.transaction("replace_redirect_chain") as ctx:
            written = self._replace_redirect_chain(
                self._ensure_connected(), entity_row_id, edges
            )
            ctx.add_affected_rows(written)
        return written

    def _replace_redirect_chain(
        self,
        conn: sqlite3.Connection,
        entity_row_id: int,
        edges: Sequence[RedirectEdge],
    ) -> int:
        conn.execute(
            "DELETE FROM redirect_edges WHERE entity_row_id = ?", (entity_row_id,)
        )
        conn.executemany(
            """
            INSERT INTO redirect_edges (
                entity_row_id, hop, target_title, target_entity_row_id
            ) VALUES (?, ?, ?, ?)
            """,
            [
                (entity_row_id, edge.hop, edge.target_title, edge.target_entity_row_id)
                for edge in edges
            ],
        )
        return len(edges)

    def get_redirect_chain(self, entity_row_id: int) -> list[RedirectEdge]:
        """Get the redirect chain of an entity in hop order.

        Args:
            entity_row_id: Row id of the redirect stub.

        Returns:
            Hops in order; empty if the entity is not a redirect.
        """
        with self.reading() as conn:
            rows = conn.execute(
                """
                SELECT hop, target_title, target_entity_row_id
                FROM redirect_edges
                WHERE entity_row_id = ?
                ORDER BY hop
                """,
                (entity_row_id,),
            ).fetchall()
        return [
            RedirectEdge(
                hop=row["hop"],
                target_title=row["target_title"],
                target_entity_row_id=row["target_entity_row_id"],
            )
            for row in rows
        ]

    def replace_lookups(
        self, entity_row_id: int, lookups: Sequence[LookupRow]
    ) -> int:
        """Replace the lookup rows of an entity.

        A lookup id previously owned by another entity moves to this one.

        Args:
            entity_row_id: Row id of the entity.
            lookups: Alternative ids.

        Returns:
            Number of lookup rows written.
        """
        with self.transaction("replace_lookups") as ctx:
            written = self._replace_lookups(
                self._ensure_connected(), entity_row_id, lookups
            )
            ctx.add_affected_rows(written)
        return written

    def _replace_lookups(
        self,
        conn: sqlite3.Connection,
        entity_row_id: int,
        lookups: Sequence[LookupRow],
    ) -> int:
        conn.execute(
            "DELETE FROM entity_lookup WHERE entity_row_id = ?", (entity_row_id,)
        )
        conn.executemany(
            """
            INSERT INTO entity_lookup (lookup_id, entity_row_id, scope)
            VALUES (?, ?, ?)
            ON CONFLICT(lookup_id) DO UPDATE SET
                entity_row_id = excluded.entity_row_id,
                scope = excluded.scope
            """,
            [(row.lookup_id, entity_row_id, row.scope) for row in lookups],
        )
        return len(lookups)

    def get_lookups(self, entity_row_id: int) -> list[LookupRow]:
        """Get the lookup rows of an entity.

        Args:
            entity_row_id: Row id of the entity.

        Returns:
            Lookup rows ordered by id.
        """
        with self.reading() as conn:
            rows = conn.execute(
                """
                SELECT lookup_id, scope FROM entity_lookup
                WHERE entity_row_id = ? ORDER BY lookup_id
                """,
                (entity_row_id,),
            ).fetchall()
        return [
            LookupRow(lookup_id=row["lookup_id"], scope=row["scope"]) for row in rows
        ]

    def replace_names(
        self, entity_row_id: int, names: Sequence[NameVariant]
    ) -> int:
        """Replace the name rows of an entity.

        Args:
            entity_row_id: Row id of the entity.
            names: Name variants; duplicates are collapsed.

        Returns:
            Number of distinct name rows written.
        """
        with self.transaction("replace_names") as ctx:
            written = self._replace_names(
                self._ensure_connected(), entity_row_id, names
            )
            ctx.add_affected_rows(written)
        return written

    def _replace_names(
        self,
        conn: sqlite3.Connection,
        entity_row_id: int,
        names: Sequence[NameVariant],
    ) -> int:
        conn.execute(
            "DELETE FROM entity_names WHERE entity_row_id = ?", (entity_row_id,)
        )
        unique: dict[tuple[str, str], NameVariant] = {}
        for name in names:
            unique.setdefault((name.normalized_form, name.variant_kind), name)
        conn.executemany(
            """
            INSERT INTO entity_names (
                entity_row_id, original_form, normalized_form, variant_kind
            ) VALUES (?, ?, ?, ?)
            """,
            [
                (entity_row_id, n.original_form, n.normalized_form, n.variant_kind)
                for n in unique.values()
            ],
        )
        return len(unique)

    def get_names(self, entity_row_id: int) -> list[NameVariant]:
        """Get the name rows of an entity.

        Args:
            entity_row_id: Row id of the entity.

        Returns:
            Name variants ordered by normalized form.
        """
        with self.reading() as conn:
            rows = conn.execute(
                """
                SELECT original_form, normalized_form, variant_kind
                FROM entity_names WHERE entity_row_id = ?
                ORDER BY normalized_form, variant_kind
                """,
                (entity_row_id,),
            ).fetchall()
        return [
            NameVariant(
                original_form=row["original_form"],
                normalized_form=row["normalized_form"],
                variant_kind=row["variant_kind"],
            )
            for row in rows
        ]

    def _find_row_id(self, conn: sqlite3.Connection, external_id: str) -> int | None:
        row = conn.execute(
            "SELECT id FROM cached_entities WHERE external_id = ?", (external_id,)
        ).fetchone()
        if row is not None:
            return int(row["id"])
        row = conn.execute(
            "SELECT entity_row_id FROM entity_lookup WHERE lookup_id = ?",
            (external_id,),
        ).fetchone()
        return int(row["entity_row_id"]) if row is not None else None

    def get_entity(self, external_id: str) -> CachedEntity | None:
        """Get the cached entity for an id, resolving lookup rows.

        Args:
            external_id: Provider-scoped id or alternative lookup id.

        Returns:
            The entity, or None if not yet cached.
        """
        with self.reading() as conn:
            row_id = self._find_row_id(conn, external_id)
            if row_id is None:
                return None
            row = conn.execute(
                "SELECT * FROM cached_entities WHERE id = ?", (row_id,)
            ).fetchone()
        return self._row_to_entity(row) if row is not None else None

    def get_entity_by_row_id(self, row_id: int) -> CachedEntity | None:
        """Get a cached entity by its internal row id.

        Args:
            row_id: Internal row id.

        Returns:
            The entity, or None if not found.
        """
        with self.reading() as conn:
            row = conn.execute(
                "SELECT * FROM cached_entities WHERE id = ?", (row_id,)
            ).fetchone()
        return self._row_to_entity(row) if row is not None else None

    def get_downloaded_at(self, external_id: str) -> datetime | None:
        """Get when an id was last downloaded.

        Args:
            external_id: Provider-scoped id or alternative lookup id.

        Returns:
            Download timestamp, or None if never cached.
        """
        with self.reading() as conn:
            row_id = self._find_row_id(conn, external_id)
            if row_id is None:
                return None
            row = conn.execute(
                "SELECT downloaded_at FROM cached_entities WHERE id = ?", (row_id,)
            ).fetchone()
        return parse_timestamp(row["downloaded_at"]) if row is not None else None

    def delete_entity(self, external_id: str) -> bool:
        """Delete an entity and, by cascade, its dependent rows.

        Args:
            external_id: Provider-scoped id.

        Returns:
            True if an entity was deleted.
        """
        with self.transaction("delete_entity") as ctx:
            conn = self._ensure_connected()
            cursor = conn.execute(
                "DELETE FROM cached_entities WHERE external_id = ?", (external_id,)
            )
            ctx.add_affected_rows(cursor.rowcount)
            return cursor.rowcount > 0

    def _row_to_entity(self, row: sqlite3.Row) -> CachedEntity:
        return CachedEntity(
            row_id=row["id"],
            external_id=row["external_id"],
            import_run_id=row["import_run_id"],
            first_seen_at=datetime.fromisoformat(row["first_seen_at"]),
            downloaded_at=datetime.fromisoformat(row["downloaded_at"]),
            payload=row["payload"],
            payload_bytes=row["payload_bytes"],
            content_hash=row["content_hash"],
            canonical_title=row["canonical_title"],
            parent_external_id=row["parent_external_id"],
            is_redirect=bool(row["is_redirect"]),
            attributes=json.loads(row["attributes_json"] or "{}"),
        )

    # ===== Candidates =====

    def upsert_candidates(
        self, records: Iterable[CandidateRecord]
    ) -> CandidateUpsertResult:
        """Register discovered ids.

        Args:
            records: Candidate ids with optional sort keys and hints.

        Returns:
            Counts of new, updated, and touched candidates.
        """
        with self.transaction("upsert_candidates") as ctx:
            result = self._upsert_candidates(self._ensure_connected(), records)
            ctx.add_affected_rows(result.total)
        return result

    def _upsert_candidates(
        self,
        conn: sqlite3.Connection,
        records: Iterable[CandidateRecord],
    ) -> CandidateUpsertResult:
        now = format_timestamp(self.now())
        new = updated = touched = 0

        for record in records:
            attributes_json = json.dumps(
                record.attributes, sort_keys=True, ensure_ascii=False
            )
            existing = conn.execute(
                """
                SELECT sort_key, attributes_json FROM candidates
                WHERE external_id = ?
                """,
                (record.external_id,),
            ).fetchone()

            if existing is None:
                conn.execute(
                    """
                    INSERT INTO candidates (
                        external_id, sort_key, discovered_at, last_seen_at,
                        attributes_json
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (record.external_id, record.sort_key, now, now, attributes_json),
                )
                new += 1
                continue

            changed = (
                existing["attributes_json"] != attributes_json
                or existing["sort_key"] != record.sort_key
            )
            conn.execute(
                """
                UPDATE candidates SET sort_key = ?, attributes_json = ?,
                    last_seen_at = ?
                WHERE external_id = ?
                """,
                (record.sort_key, attributes_json, now, record.external_id),
            )
            if changed:
                updated += 1
            else:
                touched += 1

        return CandidateUpsertResult(new=new, updated=updated, touched=touched)

    def commit_candidate_batch(
        self,
        cursor_key: str,
        records: Sequence[CandidateRecord],
        cursor_value: int,
    ) -> CandidateUpsertResult:
        """Register a page of candidates and advance its cursor atomically.

        Args:
            cursor_key: Name of the enumeration stream.
            records: Candidates from the page.
            cursor_value: Position of the last record in the page.

        Returns:
            Counts of new, updated, and touched candidates.
        """
        with self.transaction("commit_candidate_batch") as ctx:
            conn = self._ensure_connected()
            result = self._upsert_candidates(conn, records)
            self._set_cursor(conn, cursor_key, cursor_value)
            ctx.add_affected_rows(result.total + 1)
        return result

    def list_pending_candidates(
        self,
        limit: int | None = None,
        refresh_before: datetime | None = None,
        force: bool = False,
    ) -> list[str]:
        """List candidate ids that need fetching.

        A candidate is pending when it has never been downloaded, or was
        downloaded before `refresh_before`. Candidates marked missing are
        excluded unless `force` is set, which returns every candidate.

        Args:
            limit: Maximum number of ids.
            refresh_before: Staleness threshold.
            force: Return all candidates regardless of cache state.

        Returns:
            Ids in sort-key order.
        """
        threshold = format_timestamp(refresh_before) if refresh_before else None
        with self.reading() as conn:
            rows = conn.execute(
                """
                SELECT c.external_id
                FROM candidates c
                LEFT JOIN cached_entities e ON e.external_id = c.external_id
                LEFT JOIN entity_lookup l ON l.lookup_id = c.external_id
                LEFT JOIN cached_entities le ON le.id = l.entity_row_id
                WHERE :force = 1
                   OR (
                       c.missing_reason IS NULL
                       AND (
                           COALESCE(e.downloaded_at, le.downloaded_at) IS NULL
                           OR COALESCE(e.downloaded_at, le.downloaded_at) < :threshold
                       )
                   )
                ORDER BY c.sort_key IS NULL, c.sort_key, c.external_id
                LIMIT :limit
                """,
                {
                    "force": 1 if force else 0,
                    "threshold": threshold,
                    "limit": limit if limit is not None else -1,
                },
            ).fetchall()
        return [row["external_id"] for row in rows]

    def mark_missing(self, external_id: str, reason: str) -> None:
        """Record that the provider reports an id as nonexistent.

        Args:
            external_id: Provider-scoped id.
            reason: Provider's explanation (e.g. "missing", "invalid").
        """
        now = format_timestamp(self.now())
        with self.transaction("mark_missing") as ctx:
            conn = self._ensure_connected()
            conn.execute(
                """
                INSERT INTO candidates (
                    external_id, discovered_at, last_seen_at, missing_reason,
                    missing_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                    missing_reason = excluded.missing_reason,
                    missing_at = excluded.missing_at,
                    last_seen_at = excluded.last_seen_at
                """,
                (external_id, now, now, reason, now),
            )
            ctx.add_affected_rows(1)

        self._metrics.record_missing()

    def get_missing_reason(self, external_id: str) -> str | None:
        """Get the missing marker for a candidate.

        Args:
            external_id: Provider-scoped id.

        Returns:
            Reason text, or None if not marked missing.
        """
        with self.reading() as conn:
            row = conn.execute(
                "SELECT missing_reason FROM candidates WHERE external_id = ?",
                (external_id,),
            ).fetchone()
        return row["missing_reason"] if row is not None else None

    # ===== Cursors =====

    def get_cursor(self, key: str) -> int | None:
        """Get a persisted cursor position.

        Args:
            key: Name of the enumeration stream.

        Returns:
            The position, or None if never persisted.

        Raises:
            CursorCorruptError: If the stored value is not an integer.
        """
        with self.reading() as conn:
            row = conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        try:
            return int(row["value"])
        except ValueError as e:
            raise CursorCorruptError(key, row["value"]) from e

    def set_cursor(self, key: str, value: int) -> None:
        """Persist a cursor position out of band.

        Args:
            key: Name of the enumeration stream.
            value: New position.
        """
        with self.transaction("set_cursor") as ctx:
            self._set_cursor(self._ensure_connected(), key, value)
            ctx.add_affected_rows(1)

    def _set_cursor(self, conn: sqlite3.Connection, key: str, value: int) -> None:
        conn.execute(
            """
            INSERT INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, str(value), format_timestamp(self.now())),
        )

    # ===== Reporting =====

    def get_cache_stats(self, refresh_before: datetime | None = None) -> CacheStats:
        """Get a read-only snapshot of cache counts.

        Args:
            refresh_before: Staleness threshold used for the pending count.

        Returns:
            Cache statistics.
        """
        pending = len(self.list_pending_candidates(refresh_before=refresh_before))

        with self.reading() as conn:

            def count(sql: str) -> int:
                return int(conn.execute(sql).fetchone()[0])

            last_downloaded = conn.execute(
                "SELECT MAX(downloaded_at) FROM cached_entities"
            ).fetchone()[0]
            cursors = {
                row["key"]: row["value"]
                for row in conn.execute(
                    "SELECT key, value FROM sync_state ORDER BY key"
                )
            }

            return CacheStats(
                candidates=count("SELECT COUNT(*) FROM candidates"),
                pending_candidates=pending,
                missing_candidates=count(
                    "SELECT COUNT(*) FROM candidates WHERE missing_reason IS NOT NULL"
                ),
                cached_entities=count("SELECT COUNT(*) FROM cached_entities"),
                redirect_stubs=count(
                    "SELECT COUNT(*) FROM cached_entities WHERE is_redirect = 1"
                ),
                lookup_rows=count("SELECT COUNT(*) FROM entity_lookup"),
                name_rows=count("SELECT COUNT(*) FROM entity_names"),
                failed_entities=count("SELECT COUNT(*) FROM failed_requests"),
                import_runs=count("SELECT COUNT(*) FROM import_runs"),
                failed_import_runs=count(
                    "SELECT COUNT(*) FROM import_runs WHERE status = 'failed'"
                ),
                last_downloaded_at=parse_timestamp(last_downloaded),
                cursors=cursors,
            )

    def get_schema_version(self) -> int:
        """Get current schema version.

        Returns:
            Current schema version number.
        """
        with self.reading() as conn:
            if self._read_only:
                row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
                return row[0] if row[0] is not None else 0
            return MigrationManager(conn).get_current_version()
