"""Per-entity fetch outcomes.

Every attempted entity produces exactly one outcome. Outcomes form a
tagged union discriminated on `kind`, so summaries can match on the variant
without isinstance chains.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from taxaharvest.ingest.errors import FailureClass
from taxaharvest.store.models import EntityEventType


class SuccessOutcome(BaseModel):
    """Entity fetched, decoded, and committed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["success"] = "success"
    external_id: str
    event: EntityEventType
    row_id: int
    content_hash: str


class MissingOutcome(BaseModel):
    """Provider reported the entity does not exist."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["missing"] = "missing"
    external_id: str
    reason: str


class FailureOutcome(BaseModel):
    """Fetch or decode failed; recorded in the failure ledger."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["failure"] = "failure"
    external_id: str
    failure_class: FailureClass
    message: str
    status: int | None = None


class SkippedOutcome(BaseModel):
    """Entity already cached and fresh; no request was made."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["skipped"] = "skipped"
    external_id: str


FetchOutcome = Annotated[
    SuccessOutcome | MissingOutcome | FailureOutcome | SkippedOutcome,
    Field(discriminator="kind"),
]
