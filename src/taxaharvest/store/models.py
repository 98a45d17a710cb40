"""Data models for the content cache store."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ImportRunStatus(str, Enum):
    """Lifecycle of an import run.

    - running: Request issued, outcome not yet recorded
    - succeeded: Response received and accepted
    - failed: Request or decode failed
    """

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EntityEventType(str, Enum):
    """Event type for entity upsert operations.

    - NEW: Entity was newly created
    - UPDATED: Entity existed but content_hash changed
    - UNCHANGED: Entity existed with same content_hash
    """

    NEW = "NEW"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"


class ImportRun(BaseModel):
    """Audit record of one network fetch attempt."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: Annotated[int, Field(ge=1)]
    target: Annotated[str, Field(min_length=1, description="Request target")]
    status: ImportRunStatus
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: float | None = None
    http_status: int | None = None
    payload_bytes: int | None = None
    error: str | None = None

    @property
    def is_complete(self) -> bool:
        """Check whether the run has been finalized."""
        return self.status != ImportRunStatus.RUNNING


class CachedEntity(BaseModel):
    """Durable local copy of one fetched record."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    row_id: Annotated[int, Field(ge=1)]
    external_id: Annotated[str, Field(min_length=1)]
    import_run_id: Annotated[int, Field(ge=1)]
    first_seen_at: datetime
    downloaded_at: datetime
    payload: str
    payload_bytes: Annotated[int, Field(ge=0)]
    content_hash: Annotated[str, Field(min_length=64, max_length=64)]
    canonical_title: str | None = None
    parent_external_id: str | None = None
    is_redirect: bool = False
    attributes: dict[str, Any] = Field(default_factory=dict)


class UpsertResult(BaseModel):
    """Result of an entity upsert."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: EntityEventType
    row_id: Annotated[int, Field(ge=1)]
    content_hash: str
    previous_hash: str | None = None


class LookupRow(BaseModel):
    """Alternative id mapping to a cached entity."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    lookup_id: Annotated[str, Field(min_length=1)]
    scope: Annotated[str, Field(min_length=1)]


class NameVariant(BaseModel):
    """One indexable name form produced for a cached entity."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    original_form: Annotated[str, Field(min_length=1)]
    normalized_form: Annotated[str, Field(min_length=1)]
    variant_kind: Annotated[str, Field(min_length=1)]


class RedirectEdge(BaseModel):
    """One hop in a redirect chain.

    Hops are numbered from 1; the last hop names the canonical entity.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    hop: Annotated[int, Field(ge=1)]
    target_title: Annotated[str, Field(min_length=1)]
    target_entity_row_id: int | None = None


class CandidateRecord(BaseModel):
    """An id discovered by enumeration, pending or already fetched."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    external_id: Annotated[str, Field(min_length=1)]
    sort_key: int | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class CandidateUpsertResult(BaseModel):
    """Counts from registering a batch of candidates.

    Progress reporting only: new ids, ids whose hints changed, and ids seen
    again unchanged.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    new: int = 0
    updated: int = 0
    touched: int = 0

    @property
    def total(self) -> int:
        """Total candidates processed."""
        return self.new + self.updated + self.touched


class FailureRecord(BaseModel):
    """Scheduling state for an entity whose last fetch failed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    endpoint: Annotated[str, Field(min_length=1)]
    external_id: Annotated[str, Field(min_length=1)]
    attempt_count: Annotated[int, Field(ge=1)]
    last_error: str
    last_status: int | None = None
    last_attempt_at: datetime
    next_attempt_after: datetime | None = None

    @model_validator(mode="after")
    def check_retry_not_before_attempt(self) -> "FailureRecord":
        """Next retry can never precede the last attempt."""
        if (
            self.next_attempt_after is not None
            and self.next_attempt_after < self.last_attempt_at
        ):
            msg = "next_attempt_after must not precede last_attempt_at"
            raise ValueError(msg)
        return self


class ImportRunSummary(BaseModel):
    """Aggregate of import runs sharing a status."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    status: ImportRunStatus
    runs: Annotated[int, Field(ge=0)]
    payload_bytes: Annotated[int, Field(ge=0)] = 0
    avg_duration_ms: float | None = None
    first_started_at: datetime | None = None
    last_started_at: datetime | None = None


class CacheStats(BaseModel):
    """Read-only snapshot of a provider cache."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    candidates: int = 0
    pending_candidates: int = 0
    missing_candidates: int = 0
    cached_entities: int = 0
    redirect_stubs: int = 0
    lookup_rows: int = 0
    name_rows: int = 0
    failed_entities: int = 0
    import_runs: int = 0
    failed_import_runs: int = 0
    last_downloaded_at: datetime | None = None
    cursors: dict[str, str] = Field(default_factory=dict)
