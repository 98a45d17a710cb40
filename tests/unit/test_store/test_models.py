"""Unit tests for store models and content hashing."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from taxaharvest.store.hash import compute_content_hash
from taxaharvest.store.models import (
    CandidateUpsertResult,
    EntityEventType,
    FailureRecord,
    ImportRun,
    ImportRunStatus,
    RedirectEdge,
)
from taxaharvest.store.store import format_timestamp, parse_timestamp
from tests.helpers.time import FIXED_NOW


class TestEnums:
    """Tests for store enums."""

    def test_event_type_values(self) -> None:
        """Test enum values."""
        assert EntityEventType.NEW.value == "NEW"
        assert EntityEventType.UPDATED.value == "UPDATED"
        assert EntityEventType.UNCHANGED.value == "UNCHANGED"

    def test_import_status_from_string(self) -> None:
        """Test creating from string."""
        assert ImportRunStatus("running") == ImportRunStatus.RUNNING
        assert ImportRunStatus("succeeded") == ImportRunStatus.SUCCEEDED
        assert ImportRunStatus("failed") == ImportRunStatus.FAILED


class TestImportRun:
    """Tests for ImportRun model."""

    def test_running_is_not_complete(self) -> None:
        """A running import is not complete."""
        run = ImportRun(
            id=1,
            target="https://api.example.org/x",
            status=ImportRunStatus.RUNNING,
            started_at=FIXED_NOW,
        )

        assert run.is_complete is False

    def test_failed_is_complete(self) -> None:
        """A failed import is complete."""
        run = ImportRun(
            id=1,
            target="https://api.example.org/x",
            status=ImportRunStatus.FAILED,
            started_at=FIXED_NOW,
            error="boom",
        )

        assert run.is_complete is True

    def test_empty_target_rejected(self) -> None:
        """Target is required."""
        with pytest.raises(ValidationError):
            ImportRun(id=1, target="", status="running", started_at=FIXED_NOW)


class TestFailureRecord:
    """Tests for FailureRecord validation."""

    def test_retry_after_attempt_allowed(self) -> None:
        """next_attempt_after may equal or follow the attempt."""
        record = FailureRecord(
            endpoint="wikidata.entity",
            external_id="Q1",
            attempt_count=1,
            last_error="boom",
            last_attempt_at=FIXED_NOW,
            next_attempt_after=FIXED_NOW,
        )

        assert record.next_attempt_after == FIXED_NOW

    def test_retry_before_attempt_rejected(self) -> None:
        """next_attempt_after before the attempt is invalid."""
        with pytest.raises(ValidationError, match="must not precede"):
            FailureRecord(
                endpoint="wikidata.entity",
                external_id="Q1",
                attempt_count=1,
                last_error="boom",
                last_attempt_at=FIXED_NOW,
                next_attempt_after=FIXED_NOW - timedelta(seconds=1),
            )

    def test_attempt_count_positive(self) -> None:
        """A failure record has at least one attempt."""
        with pytest.raises(ValidationError):
            FailureRecord(
                endpoint="wikidata.entity",
                external_id="Q1",
                attempt_count=0,
                last_error="boom",
                last_attempt_at=FIXED_NOW,
            )


class TestSmallModels:
    """Tests for edges and candidate counts."""

    def test_redirect_hop_starts_at_one(self) -> None:
        """Hop numbers are 1-based."""
        with pytest.raises(ValidationError):
            RedirectEdge(hop=0, target_title="Lion")

    def test_candidate_result_total(self) -> None:
        """Total sums every bucket."""
        result = CandidateUpsertResult(new=2, updated=1, touched=3)

        assert result.total == 6


class TestContentHash:
    """Tests for compute_content_hash."""

    def test_empty_digest(self) -> None:
        """The empty payload has the well-known SHA-256 digest."""
        assert compute_content_hash("") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_text_and_bytes_agree(self) -> None:
        """Text hashes as its UTF-8 bytes."""
        assert compute_content_hash("Felidé") == compute_content_hash(
            "Felidé".encode()
        )

    def test_different_payloads_differ(self) -> None:
        """Any change in the payload changes the digest."""
        assert compute_content_hash('{"a": 1}') != compute_content_hash('{"a": 2}')


class TestTimestamps:
    """Tests for the stored timestamp format."""

    def test_fixed_width_utc(self) -> None:
        """Timestamps always carry microseconds and a UTC offset."""
        assert format_timestamp(FIXED_NOW) == "2017-06-13T00:00:00.000000+00:00"

    def test_parse_inverts_format(self) -> None:
        """Parsing a formatted timestamp yields the same instant."""
        value = FIXED_NOW + timedelta(microseconds=123)

        assert parse_timestamp(format_timestamp(value)) == value

    def test_parse_none(self) -> None:
        """Absent timestamps stay absent."""
        assert parse_timestamp(None) is None
