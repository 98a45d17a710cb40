"""SQLite content cache for fetched provider records.

This module provides persistent storage for:
- Import runs recording provenance of every network request
- Cached entities with idempotent upserts and content-hash change detection
- Lookup rows, name variants, and redirect chains
- Candidate ids, named cursors, and the failure ledger
"""

from taxaharvest.store.errors import (
    CursorCorruptError,
    ImportRunNotFoundError,
    ImportRunStateError,
    MigrationError,
    ReadOnlyStoreError,
    StateStoreError,
    StoreConnectionError,
)
from taxaharvest.store.hash import compute_content_hash
from taxaharvest.store.ledger import FailureLedger
from taxaharvest.store.metrics import MetricsRecorder, NullMetricsRecorder, StoreMetrics
from taxaharvest.store.models import (
    CachedEntity,
    CacheStats,
    CandidateRecord,
    CandidateUpsertResult,
    EntityEventType,
    FailureRecord,
    ImportRun,
    ImportRunStatus,
    ImportRunSummary,
    LookupRow,
    NameVariant,
    RedirectEdge,
    UpsertResult,
)
from taxaharvest.store.store import CacheStore


__all__ = [
    # Errors
    "CursorCorruptError",
    "ImportRunNotFoundError",
    "ImportRunStateError",
    "MigrationError",
    "ReadOnlyStoreError",
    "StateStoreError",
    "StoreConnectionError",
    # Hash utilities
    "compute_content_hash",
    # Ledger
    "FailureLedger",
    # Metrics
    "MetricsRecorder",
    "NullMetricsRecorder",
    "StoreMetrics",
    # Models
    "CacheStats",
    "CachedEntity",
    "CandidateRecord",
    "CandidateUpsertResult",
    "EntityEventType",
    "FailureRecord",
    "ImportRun",
    "ImportRunStatus",
    "ImportRunSummary",
    "LookupRow",
    "NameVariant",
    "RedirectEdge",
    "UpsertResult",
    # Store
    "CacheStore",
]
