"""Unit tests for stream builders."""

import tempfile
from collections.abc import Generator
from contextlib import ExitStack
from pathlib import Path

import pytest

from taxaharvest.fetch.cancellation import CancellationToken
from taxaharvest.fetch.errors import IngestionCancelled
from taxaharvest.fetch.metrics import FetchMetrics
from taxaharvest.providers import (
    build_iucn_assessment_orchestrator,
    build_iucn_taxa_orchestrator,
    build_wikidata_orchestrator,
    build_wikidata_seed_controller,
    build_wikipedia_orchestrator,
    open_store,
)
from taxaharvest.settings import HarvestSettings, IngestionSettings, IucnApiSettings
from taxaharvest.store.metrics import StoreMetrics


@pytest.fixture(autouse=True)
def reset_metrics() -> None:
    """Reset metrics singletons before each test."""
    FetchMetrics.reset()
    StoreMetrics.reset()


@pytest.fixture
def cache_dir() -> Generator[Path]:
    """Create a temporary cache directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(cache_dir: Path) -> HarvestSettings:
    """Settings with a token and a temporary cache directory."""
    return HarvestSettings(
        iucn=IucnApiSettings(_env_file=None, token="secret"),
        ingestion=IngestionSettings(_env_file=None, cache_dir=cache_dir),
    )


class TestOpenStore:
    """Tests for open_store."""

    def test_store_closed_with_stack(self, settings: HarvestSettings) -> None:
        """The stack closes the store on exit."""
        with ExitStack() as resources:
            store = open_store(settings, "wikidata", resources)
            assert store.is_connected is True
            assert store.db_path == settings.cache_path("wikidata")

        assert store.is_connected is False

    def test_read_only_handle(self, settings: HarvestSettings) -> None:
        """A reporting handle opens an existing store read-only."""
        with ExitStack() as resources:
            open_store(settings, "wikidata", resources)
            reader = open_store(settings, "wikidata", resources, read_only=True)

            assert reader.read_only is True


class TestBuilders:
    """Tests for the per-stream builders."""

    def test_iucn_taxa_stream(self, settings: HarvestSettings, cache_dir: Path) -> None:
        """The taxa stream writes taxa and registers assessments."""
        with ExitStack() as resources:
            orchestrator = build_iucn_taxa_orchestrator(settings, resources)

            assert orchestrator.ledger.endpoint == "iucn.taxa"
            assert orchestrator.store.db_path == cache_dir / "iucn_taxa.sqlite"

        assert (cache_dir / "iucn_assessments.sqlite").exists()

    def test_iucn_requires_token(self, cache_dir: Path) -> None:
        """IUCN streams refuse to build without a token."""
        settings = HarvestSettings(
            iucn=IucnApiSettings(_env_file=None, token=None),
            ingestion=IngestionSettings(_env_file=None, cache_dir=cache_dir),
        )

        with ExitStack() as resources, pytest.raises(ValueError, match="TOKEN"):
            build_iucn_assessment_orchestrator(settings, resources)

    def test_wikidata_streams_share_store_file(
        self, settings: HarvestSettings, cache_dir: Path
    ) -> None:
        """Entity and seed streams both use wikidata.sqlite."""
        with ExitStack() as resources:
            orchestrator = build_wikidata_orchestrator(settings, resources)
            controller = build_wikidata_seed_controller(settings, resources)

            assert orchestrator.store.db_path == cache_dir / "wikidata.sqlite"
            assert orchestrator.ledger.endpoint == "wikidata.entity"
            assert controller.cursor_key == "wikidata_taxa_cursor"

    def test_wikipedia_stream(self, settings: HarvestSettings, cache_dir: Path) -> None:
        """The page stream writes wikipedia.sqlite."""
        with ExitStack() as resources:
            orchestrator = build_wikipedia_orchestrator(settings, resources)

            assert orchestrator.store.db_path == cache_dir / "wikipedia.sqlite"
            assert orchestrator.ledger.endpoint == "wikipedia.page"

    def test_shared_cancel_token(self, settings: HarvestSettings) -> None:
        """A cancelled token stops a built stream before any request."""
        cancel = CancellationToken()
        with ExitStack() as resources:
            orchestrator = build_wikidata_orchestrator(
                settings, resources, cancel=cancel
            )
            orchestrator.register_candidates(["Q140"])
            cancel.cancel()

            with pytest.raises(IngestionCancelled):
                orchestrator.run_ingestion()

            assert orchestrator.get_import_run_summaries() == []
