"""Metrics collection for the content cache store."""

import threading
from dataclasses import dataclass, field
from typing import ClassVar, Protocol

from taxaharvest.store.models import EntityEventType


class MetricsRecorder(Protocol):
    """Receives cache events; shared by every batch worker of a store."""

    def record_event(self, event: EntityEventType) -> None:
        """Record the outcome of an entity upsert."""
        ...

    def record_import(self, success: bool) -> None:
        """Record a completed import run."""
        ...

    def record_missing(self) -> None:
        """Record a candidate the provider reports as nonexistent."""
        ...

    def record_ledger(self, recorded: bool) -> None:
        """Record a failure written to, or cleared from, the ledger."""
        ...

    def record_tx_duration(self, duration_ms: float) -> None:
        """Record transaction duration in milliseconds."""
        ...


@dataclass
class NullMetricsRecorder:
    """Recorder that drops every event."""

    def record_event(self, event: EntityEventType) -> None:  # noqa: ARG002
        """No-op."""

    def record_import(self, success: bool) -> None:  # noqa: ARG002
        """No-op."""

    def record_missing(self) -> None:
        """No-op."""

    def record_ledger(self, recorded: bool) -> None:  # noqa: ARG002
        """No-op."""

    def record_tx_duration(self, duration_ms: float) -> None:  # noqa: ARG002
        """No-op."""


@dataclass
class StoreMetrics:
    """Process-wide counters for every provider cache.

    Attributes:
        entities_new_total: Entities inserted for the first time.
        entities_updated_total: Entities whose content hash changed.
        entities_unchanged_total: Entities refetched with identical content.
        imports_succeeded_total: Import runs completed successfully.
        imports_failed_total: Import runs completed with an error.
        candidates_missing_total: Missing markers written.
        ledger_failures_total: Failure records created or bumped.
        ledger_cleared_total: Failure records removed after a success.
        db_tx_duration_ms: Cumulative transaction duration in milliseconds.
        db_tx_count: Number of transactions.
    """

    entities_new_total: int = 0
    entities_updated_total: int = 0
    entities_unchanged_total: int = 0
    imports_succeeded_total: int = 0
    imports_failed_total: int = 0
    candidates_missing_total: int = 0
    ledger_failures_total: int = 0
    ledger_cleared_total: int = 0
    db_tx_duration_ms: float = 0.0
    db_tx_count: int = 0

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    _instance: ClassVar["StoreMetrics | None"] = None

    @classmethod
    def get_instance(cls) -> "StoreMetrics":
        """Shared instance, created on first use."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the shared instance so the next caller starts from zero."""
        cls._instance = None

    def record_event(self, event: EntityEventType) -> None:
        """Count an upsert by its change event."""
        with self._lock:
            if event == EntityEventType.NEW:
                self.entities_new_total += 1
            elif event == EntityEventType.UPDATED:
                self.entities_updated_total += 1
            else:
                self.entities_unchanged_total += 1

    def record_import(self, success: bool) -> None:
        """Count a completed import run by outcome."""
        with self._lock:
            if success:
                self.imports_succeeded_total += 1
            else:
                self.imports_failed_total += 1

    def record_missing(self) -> None:
        """Count a missing marker."""
        with self._lock:
            self.candidates_missing_total += 1

    def record_ledger(self, recorded: bool) -> None:
        """Count a ledger write (True) or clear (False)."""
        with self._lock:
            if recorded:
                self.ledger_failures_total += 1
            else:
                self.ledger_cleared_total += 1

    def record_tx_duration(self, duration_ms: float) -> None:
        """Accumulate transaction time."""
        with self._lock:
            self.db_tx_duration_ms += duration_ms
            self.db_tx_count += 1

    def to_dict(self) -> dict[str, float | int]:
        """Snapshot every counter, plus the mean transaction time."""
        with self._lock:
            snapshot: dict[str, float | int] = {
                name: getattr(self, name)
                for name in self.__dataclass_fields__
                if not name.startswith("_")
            }
        snapshot["avg_tx_duration_ms"] = self.avg_tx_duration_ms
        return snapshot

    @property
    def avg_tx_duration_ms(self) -> float:
        """Mean transaction duration in milliseconds."""
        if self.db_tx_count == 0:
            return 0.0
        return self.db_tx_duration_ms / self.db_tx_count


@dataclass
class TransactionContext:
    """Context for a single transaction with timing.

    Attributes:
        tx_id: Unique transaction identifier.
        start_time_ns: Start time in nanoseconds.
        operation: The operation being performed.
    """

    tx_id: str
    start_time_ns: int
    operation: str
    affected_rows: int = field(default=0)

    def add_affected_rows(self, rows: int) -> None:
        """Add to the affected row count.

        Args:
            rows: Number of rows affected.
        """
        self.affected_rows += rows
