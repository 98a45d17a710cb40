"""Unit tests for ingestion models, outcomes and error classification."""

import pytest
from pydantic import TypeAdapter, ValidationError

from taxaharvest.fetch.errors import (
    ApiError,
    PermanentApiError,
    RetryableApiError,
    TransportError,
)
from taxaharvest.ingest.errors import DecodeError, FailureClass, classify_api_error
from taxaharvest.ingest.models import (
    MAX_BATCH_SIZE,
    MIN_BATCH_SIZE,
    BatchTuning,
    DecodedEntity,
    IngestionMode,
    SeedPage,
)
from taxaharvest.ingest.outcomes import FailureOutcome, FetchOutcome, SuccessOutcome
from taxaharvest.store.models import CandidateRecord


URL = "https://api.example.org/x"


class TestBatchTuning:
    """Tests for batch size clamping."""

    def test_defaults(self) -> None:
        """Default tuning sits inside the bounds."""
        tuning = BatchTuning()

        assert tuning.batch_size == 500
        assert tuning.ramp_increment == 100
        assert tuning.cool_down_seconds == 10.0

    @pytest.mark.parametrize(
        ("configured", "expected"),
        [(1, MIN_BATCH_SIZE), (50, 50), (750, 750), (10_000, MAX_BATCH_SIZE)],
    )
    def test_batch_size_clamped(self, configured: int, expected: int) -> None:
        """Configured sizes are clamped to 50-2000."""
        assert BatchTuning(batch_size=configured).batch_size == expected


class TestSeedPage:
    """Tests for page ordering validation."""

    def test_last_sort_key(self) -> None:
        """The last record's key is the page position."""
        page = SeedPage(
            records=[
                CandidateRecord(external_id="Q3", sort_key=3),
                CandidateRecord(external_id="Q8", sort_key=8),
            ],
            requested=10,
        )

        assert page.last_sort_key == 8

    def test_empty_page(self) -> None:
        """An empty page has no position."""
        assert SeedPage(requested=10).last_sort_key is None

    def test_descending_keys_rejected(self) -> None:
        """Records must be strictly ascending."""
        with pytest.raises(ValidationError, match="not ascending"):
            SeedPage(
                records=[
                    CandidateRecord(external_id="Q8", sort_key=8),
                    CandidateRecord(external_id="Q3", sort_key=3),
                ],
                requested=10,
            )

    def test_missing_key_rejected(self) -> None:
        """Every record needs a sort key."""
        with pytest.raises(ValidationError, match="no sort key"):
            SeedPage(records=[CandidateRecord(external_id="Q8")], requested=10)


class TestDecodedEntity:
    """Tests for the decoded record model."""

    def test_not_redirected_without_hops(self) -> None:
        """Plain fetches are not redirects."""
        entity = DecodedEntity(external_id="Q140", requested_id="Q140", payload="{}")

        assert entity.is_redirected is False

    def test_redirected_with_hops(self) -> None:
        """A differing requested id with hops is a redirect."""
        entity = DecodedEntity(
            external_id="Lion",
            requested_id="African lion",
            payload="",
            redirect_hops=["Lion"],
        )

        assert entity.is_redirected is True


class TestClassifyApiError:
    """Tests for mapping client errors to failure classes."""

    def test_transport(self) -> None:
        """Transport errors classify as transport."""
        error = TransportError(URL, "refused", attempts=5)
        assert classify_api_error(error) == FailureClass.TRANSPORT

    def test_retryable(self) -> None:
        """Exhausted retryable statuses keep their class."""
        error = RetryableApiError(URL, 503, None, attempts=5)
        assert classify_api_error(error) == FailureClass.RETRYABLE_HTTP

    def test_permanent(self) -> None:
        """Permanent statuses classify as permanent."""
        error = PermanentApiError(URL, 403, "forbidden", attempts=1)
        assert classify_api_error(error) == FailureClass.PERMANENT_HTTP

    def test_bare_api_error(self) -> None:
        """A base error falls back on its status."""
        assert classify_api_error(ApiError(URL, None, None, 1)) == (
            FailureClass.TRANSPORT
        )
        assert classify_api_error(ApiError(URL, 418, None, 1)) == (
            FailureClass.PERMANENT_HTTP
        )

    def test_error_message_includes_attempts(self) -> None:
        """The message names the URL, attempts and status."""
        error = RetryableApiError(URL, 503, "busy", attempts=5)

        assert str(error) == (
            f"Request to {URL} failed after 5 attempt(s) (status: 503): busy"
        )

    def test_decode_error_message(self) -> None:
        """Decode errors name the entity."""
        error = DecodeError("Q140", "missing claims")

        assert error.external_id == "Q140"
        assert "Q140" in str(error)


class TestOutcomes:
    """Tests for the outcome union."""

    def test_discriminated_on_kind(self) -> None:
        """Outcomes parse into the variant named by kind."""
        adapter = TypeAdapter(FetchOutcome)

        outcome = adapter.validate_python(
            {
                "kind": "failure",
                "external_id": "Q140",
                "failure_class": "decode",
                "message": "bad",
            }
        )

        assert isinstance(outcome, FailureOutcome)
        assert outcome.failure_class == FailureClass.DECODE

    def test_success_is_frozen(self) -> None:
        """Outcomes are immutable."""
        outcome = SuccessOutcome(
            external_id="Q140", event="NEW", row_id=1, content_hash="a" * 64
        )

        with pytest.raises(ValidationError):
            outcome.row_id = 2  # type: ignore[misc]

    def test_mode_values(self) -> None:
        """Modes parse from their wire names."""
        assert IngestionMode("full") == IngestionMode.FULL
        assert IngestionMode("failed_only") == IngestionMode.FAILED_ONLY
