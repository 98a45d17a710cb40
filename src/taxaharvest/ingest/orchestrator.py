"""Ingestion orchestrator with batched parallel fetching and failure isolation."""

import sqlite3
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import structlog

from taxaharvest.fetch.cancellation import CancellationToken
from taxaharvest.fetch.client import RetryClient
from taxaharvest.fetch.errors import ApiError, IngestionCancelled
from taxaharvest.fetch.models import ApiRequest, ApiResponse
from taxaharvest.ingest.errors import DecodeError, FailureClass, classify_api_error
from taxaharvest.ingest.models import (
    DecodedEntity,
    IngestionMode,
    IngestionSummary,
    MissingEntity,
)
from taxaharvest.ingest.names import NameResolver, no_name_variants
from taxaharvest.ingest.outcomes import (
    FailureOutcome,
    FetchOutcome,
    MissingOutcome,
    SkippedOutcome,
    SuccessOutcome,
)
from taxaharvest.observability.logging import bind_run_context, clear_run_context
from taxaharvest.settings.app import IngestionSettings
from taxaharvest.store.errors import StateStoreError
from taxaharvest.store.ledger import FailureLedger
from taxaharvest.store.models import (
    CacheStats,
    CandidateRecord,
    CandidateUpsertResult,
    EntityEventType,
    ImportRunSummary,
)
from taxaharvest.store.store import CacheStore


logger = structlog.get_logger()


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ImportSession:
    """Records import provenance for the requests made on behalf of one entity.

    Every request begins an import run before it reaches the network. Runs
    whose response arrived stay open until the caller settles the session,
    so a later decode failure can still be attributed to them.
    """

    def __init__(
        self,
        store: CacheStore,
        client: RetryClient,
        external_id: str,
    ) -> None:
        """Initialize the session.

        Args:
            store: Store receiving import runs.
            client: Default client for requests.
            external_id: Entity the requests are made for.
        """
        self._store = store
        self._client = client
        self._external_id = external_id
        self._open: list[tuple[int, ApiResponse]] = []

    @property
    def external_id(self) -> str:
        """Entity the session fetches."""
        return self._external_id

    @property
    def last_run_id(self) -> int | None:
        """Id of the most recent open import run, if any."""
        return self._open[-1][0] if self._open else None

    def send(
        self, request: ApiRequest, client: RetryClient | None = None
    ) -> ApiResponse:
        """Send a request under a new import run.

        Args:
            request: Request to send.
            client: Client to use instead of the session default.

        Returns:
            The response; its import run stays open until settled.

        Raises:
            ApiError: The run is completed as failed before re-raising.
            IngestionCancelled: The run is abandoned before re-raising.
        """
        import_run_id = self._store.begin_import(request.target)
        start_ns = time.perf_counter_ns()
        try:
            response = (client or self._client).send(request)
        except IngestionCancelled:
            self._store.abandon_import(import_run_id)
            raise
        except ApiError as e:
            self._store.complete_import_failure(
                import_run_id,
                error=str(e),
                status=e.status,
                duration_ms=(time.perf_counter_ns() - start_ns) / 1_000_000,
            )
            raise

        self._open.append((import_run_id, response))
        return response

    def settle(self, error: str | None = None) -> int | None:
        """Complete every open import run.

        Args:
            error: Failure text; None completes the runs as succeeded.

        Returns:
            Id of the last run settled, or None if none were open.
        """
        last_run_id: int | None = None
        for import_run_id, response in self._open:
            if error is None:
                self._store.complete_import_success(
                    import_run_id,
                    status=response.status_code,
                    payload_bytes=response.body_size,
                    duration_ms=response.duration_ms,
                )
            else:
                self._store.complete_import_failure(
                    import_run_id,
                    error=error,
                    status=response.status_code,
                    duration_ms=response.duration_ms,
                )
            last_run_id = import_run_id
        self._open.clear()
        return last_run_id

    def abandon(self) -> None:
        """Discard open import runs after cancellation."""
        for import_run_id, _ in self._open:
            self._store.abandon_import(import_run_id)
        self._open.clear()


class ProviderAdapter(Protocol):
    """Builds requests for one provider endpoint and decodes its responses."""

    @property
    def endpoint(self) -> str:
        """Endpoint key used by the failure ledger (e.g. "wikidata.entity")."""
        ...

    def fetch(
        self, session: ImportSession, external_id: str
    ) -> DecodedEntity | MissingEntity:
        """Fetch and decode one entity.

        Args:
            session: Import session to send requests through.
            external_id: Requested id.

        Returns:
            The decoded entity, or a missing marker.

        Raises:
            ApiError: If a request fails.
            DecodeError: If a response fails validation.
        """
        ...


@dataclass(frozen=True)
class WorkItem:
    """One queued entity and whether it came from the failure ledger."""

    external_id: str
    retry: bool = False


class IngestionOrchestrator:
    """Drives one provider stream from candidates to cached entities.

    Provides:
    - Work queue of ledger-eligible failures and pending candidates
    - Sequential batches with bounded parallelism inside each batch
    - Per-entity failure isolation through tagged outcomes
    - Import provenance for every network request
    - Cooperative cancellation between batches and inside waits
    """

    def __init__(  # noqa: PLR0913
        self,
        store: CacheStore,
        client: RetryClient,
        adapter: ProviderAdapter,
        settings: IngestionSettings,
        cancel: CancellationToken | None = None,
        name_resolver: NameResolver | None = None,
        related_store: CacheStore | None = None,
        clock: Callable[[], datetime] | None = None,
        run_id: str | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Connected writer store for this stream.
            client: Retry client for the provider endpoint.
            adapter: Request builder and decoder.
            settings: Ingestion tuning.
            cancel: Run-level cancellation token.
            name_resolver: Produces name rows for cached entities.
            related_store: Store receiving ids discovered in payloads.
            clock: Optional UTC clock.
            run_id: Run identifier for logging.
        """
        self._store = store
        self._client = client
        self._adapter = adapter
        self._settings = settings
        self._cancel = cancel or client.cancel_token
        self._name_resolver = name_resolver or no_name_variants
        self._related_store = related_store
        self._clock = clock or _utc_now
        self._run_id = run_id or store.run_id
        self._ledger = FailureLedger(
            store,
            adapter.endpoint,
            default_retry_delay=settings.failure_retry_delay,
            max_retry_delay=settings.failure_retry_max_delay,
            clock=self._clock,
        )
        self._log = logger.bind(
            component="orchestrator",
            run_id=self._run_id,
            endpoint=adapter.endpoint,
        )

    @property
    def ledger(self) -> FailureLedger:
        """Failure ledger for this endpoint."""
        return self._ledger

    @property
    def store(self) -> CacheStore:
        """Store this orchestrator writes to."""
        return self._store

    def register_candidates(
        self, external_ids: Iterable[str]
    ) -> CandidateUpsertResult:
        """Add explicit candidate ids to the stream.

        Args:
            external_ids: Ids to register.

        Returns:
            Counts of new and previously known candidates.
        """
        return self._store.upsert_candidates(
            CandidateRecord(external_id=external_id) for external_id in external_ids
        )

    def get_cache_stats(self) -> CacheStats:
        """Snapshot of the stream's cache counts."""
        return self._store.get_cache_stats(refresh_before=self._refresh_before())

    def get_import_run_summaries(
        self, limit: int | None = None
    ) -> list[ImportRunSummary]:
        """Summaries of recent import runs by status."""
        return self._store.get_import_run_summaries(limit)

    def _refresh_before(self) -> datetime | None:
        max_age = self._settings.refresh_max_age
        if max_age is None:
            return None
        return self._clock() - max_age

    def build_queue(
        self,
        mode: IngestionMode,
        limit: int | None = None,
        force: bool = False,
    ) -> list[WorkItem]:
        """Build the ordered work queue for a run.

        Args:
            mode: Which work to attempt.
            limit: Maximum number of entities.
            force: Include candidates that are cached and fresh.

        Returns:
            Deduplicated work items, ledger retries first.
        """
        now = self._clock()
        queue: list[WorkItem] = []
        seen: set[str] = set()

        for external_id in self._ledger.list_eligible(now, limit=limit):
            seen.add(external_id)
            queue.append(WorkItem(external_id=external_id, retry=True))

        if mode == IngestionMode.FULL:
            # Failures still inside their retry delay wait for a later run
            waiting = self._ledger.list_waiting(now)
            seen |= waiting
            pending = self._store.list_pending_candidates(
                limit=limit + len(waiting) if limit is not None else None,
                refresh_before=self._refresh_before(),
                force=force,
            )
            for external_id in pending:
                if external_id not in seen:
                    seen.add(external_id)
                    queue.append(WorkItem(external_id=external_id))

        if limit is not None:
            queue = queue[:limit]
        return queue

    def run_ingestion(
        self,
        mode: IngestionMode = IngestionMode.FULL,
        limit: int | None = None,
        force: bool = False,
    ) -> IngestionSummary:
        """Fetch and cache every queued entity.

        Args:
            mode: Which work to attempt.
            limit: Maximum number of entities.
            force: Refetch candidates even when cached and fresh.

        Returns:
            Outcome counts for the run.

        Raises:
            IngestionCancelled: If cancelled; finished batches stay committed.
            StateStoreError: If the store fails.
        """
        bind_run_context(self._run_id, self._adapter.endpoint)
        try:
            return self._run_ingestion(mode, limit, force)
        finally:
            clear_run_context()

    def _run_ingestion(
        self,
        mode: IngestionMode,
        limit: int | None,
        force: bool,
    ) -> IngestionSummary:
        start_ns = time.perf_counter_ns()
        queue = self.build_queue(mode, limit=limit, force=force)
        refresh_before = self._refresh_before()
        batch_size = self._settings.work_batch_size
        counts = {field: 0 for field in IngestionSummary.model_fields}

        self._log.info(
            "ingestion_started",
            mode=mode.value,
            queued=len(queue),
            force=force,
            batch_size=batch_size,
            max_workers=self._client.max_concurrency,
        )

        for batch_index, offset in enumerate(range(0, len(queue), batch_size)):
            if self._cancel.is_cancelled:
                self._log.info("ingestion_cancelled", **counts)
                raise IngestionCancelled

            batch = queue[offset : offset + batch_size]
            for outcome in self._run_batch(batch, force, refresh_before):
                self._tally(counts, outcome)

            self._log.info(
                "batch_complete",
                batch=batch_index,
                size=len(batch),
                processed=counts["processed"],
                errors=counts["errors"],
            )

        summary = IngestionSummary(**counts)
        duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
        self._log.info(
            "ingestion_complete",
            mode=mode.value,
            duration_ms=round(duration_ms, 2),
            **summary.model_dump(),
        )
        return summary

    def _run_batch(
        self,
        batch: list[WorkItem],
        force: bool,
        refresh_before: datetime | None,
    ) -> list[FetchOutcome]:
        """Process one batch with bounded parallelism.

        Args:
            batch: Work items.
            force: Skip the freshness check.
            refresh_before: Staleness threshold.

        Returns:
            One outcome per item that ran to completion.
        """
        outcomes: list[FetchOutcome] = []

        with ThreadPoolExecutor(max_workers=self._client.max_concurrency) as executor:
            futures: list[Future[FetchOutcome]] = [
                executor.submit(self._process_entity, item, force, refresh_before)
                for item in batch
            ]
            try:
                for future in as_completed(futures):
                    outcomes.append(future.result())
            except Exception:
                for future in futures:
                    future.cancel()
                raise

        return outcomes

    def _tally(self, counts: dict[str, int], outcome: FetchOutcome) -> None:
        counts["processed"] += 1
        if isinstance(outcome, SuccessOutcome):
            if outcome.event == EntityEventType.NEW:
                counts["added"] += 1
            elif outcome.event == EntityEventType.UPDATED:
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1
        elif isinstance(outcome, MissingOutcome):
            counts["missing"] += 1
        elif isinstance(outcome, SkippedOutcome):
            counts["skipped"] += 1
        else:
            counts["errors"] += 1

    def _is_fresh(self, external_id: str, refresh_before: datetime | None) -> bool:
        downloaded_at = self._store.get_downloaded_at(external_id)
        if downloaded_at is None:
            return False
        return refresh_before is None or downloaded_at >= refresh_before

    def _process_entity(
        self,
        item: WorkItem,
        force: bool,
        refresh_before: datetime | None,
    ) -> FetchOutcome:
        """Fetch, decode, and persist one entity.

        Args:
            item: Work item.
            force: Skip the freshness check.
            refresh_before: Staleness threshold.

        Returns:
            The entity's outcome.
        """
        external_id = item.external_id
        log = self._log.bind(external_id=external_id)

        fresh = not force and not item.retry
        if fresh and self._is_fresh(external_id, refresh_before):
            log.debug("entity_skipped")
            return SkippedOutcome(external_id=external_id)

        session = ImportSession(self._store, self._client, external_id)
        try:
            result = self._adapter.fetch(session, external_id)
        except IngestionCancelled:
            session.abandon()
            raise
        except ApiError as e:
            session.settle()
            return self._record_failure(
                external_id, classify_api_error(e), str(e), e.status
            )
        except DecodeError as e:
            session.settle(error=e.message)
            return self._record_failure(
                external_id, FailureClass.DECODE, e.message, None
            )
        except (StateStoreError, sqlite3.Error):
            raise
        except Exception as e:  # noqa: BLE001
            return self._record_execution_error(session, external_id, e)

        if isinstance(result, MissingEntity):
            session.settle()
            self._store.mark_missing(external_id, result.reason)
            self._ledger.clear_failure(external_id)
            log.info("entity_missing", reason=result.reason)
            return MissingOutcome(external_id=external_id, reason=result.reason)

        import_run_id = session.last_run_id
        if import_run_id is None:
            msg = f"Adapter returned '{external_id}' without making a request"
            raise StateStoreError(msg)

        # Runs stay open until the entity is written
        try:
            names = list(self._name_resolver(result.raw_record))
            upsert = self._store.commit_entity(
                import_run_id,
                result.external_id,
                result.payload,
                canonical_title=result.canonical_title,
                parent_external_id=result.parent_external_id,
                attributes=result.attributes,
                lookups=result.lookups,
                names=names,
                alias_id=result.requested_id if result.is_redirected else None,
                redirect_titles=(
                    result.redirect_hops if result.is_redirected else ()
                ),
            )
        except (StateStoreError, sqlite3.Error):
            raise
        except Exception as e:  # noqa: BLE001
            return self._record_execution_error(session, external_id, e)

        session.settle()
        self._ledger.clear_failure(external_id)

        if self._related_store is not None and result.related_ids:
            self._related_store.upsert_candidates(
                CandidateRecord(external_id=related_id)
                for related_id in result.related_ids
            )

        log.debug(
            "entity_committed",
            canonical_id=result.external_id,
            event_type=upsert.event_type.value,
            row_id=upsert.row_id,
        )
        return SuccessOutcome(
            external_id=external_id,
            event=upsert.event_type,
            row_id=upsert.row_id,
            content_hash=upsert.content_hash,
        )

    def _record_failure(
        self,
        external_id: str,
        failure_class: FailureClass,
        message: str,
        status: int | None,
    ) -> FailureOutcome:
        record = self._ledger.record_failure(external_id, message, status=status)
        self._log.warning(
            "entity_failed",
            external_id=external_id,
            failure_class=failure_class.value,
            status_code=status,
            attempt_count=record.attempt_count,
        )
        return FailureOutcome(
            external_id=external_id,
            failure_class=failure_class,
            message=message,
            status=status,
        )

    def _record_execution_error(
        self, session: ImportSession, external_id: str, error: Exception
    ) -> FailureOutcome:
        """Fail the entity's open runs and ledger an unexpected worker error."""
        message = f"Execution error: {type(error).__name__}: {error}"
        self._log.error(
            "entity_execution_error",
            external_id=external_id,
            error_type=type(error).__name__,
            error=str(error),
        )
        session.settle(error=message)
        return self._record_failure(external_id, FailureClass.DECODE, message, None)
