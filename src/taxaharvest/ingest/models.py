"""Data models for ingestion runs and cursor streams."""

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taxaharvest.ingest.state_machine import StreamState
from taxaharvest.store.models import CandidateRecord, LookupRow


MIN_BATCH_SIZE = 50
MAX_BATCH_SIZE = 2000


class IngestionMode(str, Enum):
    """Which work an ingestion run attempts.

    - full: Ledger-eligible failures, then pending candidates
    - failed_only: Ledger-eligible failures only
    """

    FULL = "full"
    FAILED_ONLY = "failed_only"


class BatchTuning(BaseModel):
    """Adaptive page sizing for a cursor stream."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    batch_size: int = 500
    ramp_increment: Annotated[int, Field(ge=1)] = 100
    cool_down_seconds: Annotated[float, Field(ge=0.0)] = 10.0
    max_timeout_retries: Annotated[int, Field(ge=0)] = 5

    @field_validator("batch_size")
    @classmethod
    def clamp_batch_size(cls, v: int) -> int:
        """Clamp the configured page size to 50-2000."""
        return min(max(v, MIN_BATCH_SIZE), MAX_BATCH_SIZE)


class IngestionSummary(BaseModel):
    """Counts for one ingestion run.

    `processed` counts every entity attempted or skipped; the remaining
    fields partition it by outcome.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    processed: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    missing: int = 0
    skipped: int = 0
    errors: int = 0


class CursorRunResult(BaseModel):
    """Result of one cursor stream run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    start: Annotated[int, Field(ge=0)]
    cursor: Annotated[int, Field(ge=0)]
    batches: int = 0
    fetched: int = 0
    new: int = 0
    updated: int = 0
    touched: int = 0
    state: StreamState


class SeedPage(BaseModel):
    """One page of rows from an enumeration stream.

    Records are ordered by ascending sort key; `requested` is the page size
    asked for, used to detect the final page.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    records: list[CandidateRecord] = Field(default_factory=list)
    requested: Annotated[int, Field(ge=1)]

    @model_validator(mode="after")
    def check_sort_keys_ascending(self) -> "SeedPage":
        """Every record carries a sort key, strictly increasing."""
        previous: int | None = None
        for record in self.records:
            if record.sort_key is None:
                msg = f"Record {record.external_id} has no sort key"
                raise ValueError(msg)
            if previous is not None and record.sort_key <= previous:
                msg = f"Sort keys not ascending at {record.external_id}"
                raise ValueError(msg)
            previous = record.sort_key
        return self

    @property
    def last_sort_key(self) -> int | None:
        """Sort key of the last record, if any."""
        if not self.records:
            return None
        return self.records[-1].sort_key


class DecodedEntity(BaseModel):
    """A provider response validated and ready to persist.

    Attributes:
        external_id: Canonical id of the record.
        requested_id: Id the caller asked for.
        payload: Canonical payload text; its hash decides change.
        canonical_title: Resolved display title.
        parent_external_id: Taxonomic parent id.
        attributes: Provider-specific derived fields.
        lookups: Alternative ids resolving to the record.
        redirect_hops: Ordered titles from `requested_id` to `external_id`,
            empty when no redirect happened.
        related_ids: Ids of records in a related stream to register.
        raw_record: Decoded JSON handed to the name resolver.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    external_id: Annotated[str, Field(min_length=1)]
    requested_id: Annotated[str, Field(min_length=1)]
    payload: str
    canonical_title: str | None = None
    parent_external_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    lookups: list[LookupRow] = Field(default_factory=list)
    redirect_hops: list[str] = Field(default_factory=list)
    related_ids: list[str] = Field(default_factory=list)
    raw_record: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_redirected(self) -> bool:
        """Check whether the requested id resolved through a redirect."""
        return bool(self.redirect_hops) and self.requested_id != self.external_id


class MissingEntity(BaseModel):
    """Provider confirmed the requested entity does not exist."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    requested_id: Annotated[str, Field(min_length=1)]
    reason: str = "missing"
