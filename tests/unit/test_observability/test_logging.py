"""Unit tests for structured logging setup."""

import io
import json
from collections.abc import Generator

import pytest
import structlog

from taxaharvest.observability.logging import (
    bind_run_context,
    clear_run_context,
    configure_logging,
)


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None]:
    """Restore structlog defaults after each test."""
    yield
    clear_run_context()
    structlog.reset_defaults()


def read_events(stream: io.StringIO) -> list[dict[str, object]]:
    """Parse JSON log lines."""
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestConfigureLogging:
    """Tests for logging configuration."""

    def test_json_lines(self) -> None:
        """Events render as JSON with level and timestamp."""
        stream = io.StringIO()
        configure_logging(output=stream)

        structlog.get_logger().info("stream_built", endpoint="wikidata.entity")

        (event,) = read_events(stream)
        assert event["event"] == "stream_built"
        assert event["level"] == "info"
        assert event["endpoint"] == "wikidata.entity"
        assert "timestamp" in event

    def test_level_by_name(self) -> None:
        """Levels below the configured name are filtered."""
        stream = io.StringIO()
        configure_logging(level="warning", output=stream)

        log = structlog.get_logger()
        log.info("ignored")
        log.warning("batch_timeout")

        assert [e["event"] for e in read_events(stream)] == ["batch_timeout"]


class TestRunContext:
    """Tests for run context binding."""

    def test_context_bound_and_cleared(self) -> None:
        """Run id and provider appear until cleared."""
        stream = io.StringIO()
        configure_logging(output=stream)
        log = structlog.get_logger()

        bind_run_context("run-42", "wikipedia.page")
        log.info("ingestion_started")
        clear_run_context()
        log.info("ingestion_finished")

        first, second = read_events(stream)
        assert first["run_id"] == "run-42"
        assert first["provider"] == "wikipedia.page"
        assert "run_id" not in second
