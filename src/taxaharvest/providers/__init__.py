"""Provider adapters and the entry points for running each stream.

This module provides:
- Adapters for IUCN taxa and assessments, Wikidata entities, and Wikipedia
  pages
- The Wikidata SPARQL seed stream
- Builders wiring settings, stores, and clients into runnable streams
"""

from taxaharvest.ingest.cursor import CursorController
from taxaharvest.ingest.models import (
    CursorRunResult,
    IngestionMode,
    IngestionSummary,
)
from taxaharvest.ingest.orchestrator import IngestionOrchestrator
from taxaharvest.providers.factory import (
    build_iucn_assessment_orchestrator,
    build_iucn_taxa_orchestrator,
    build_wikidata_orchestrator,
    build_wikidata_seed_controller,
    build_wikipedia_orchestrator,
    configure_harvest_logging,
    open_store,
)
from taxaharvest.providers.iucn import IucnAssessmentAdapter, IucnTaxaAdapter
from taxaharvest.providers.wikidata import WikidataEntityAdapter, WikidataSeedSource
from taxaharvest.providers.wikipedia import WikipediaPageAdapter


__all__ = [
    # Streams
    "CursorController",
    "CursorRunResult",
    "IngestionMode",
    "IngestionOrchestrator",
    "IngestionSummary",
    # Adapters
    "IucnAssessmentAdapter",
    "IucnTaxaAdapter",
    "WikidataEntityAdapter",
    "WikidataSeedSource",
    "WikipediaPageAdapter",
    # Builders
    "build_iucn_assessment_orchestrator",
    "build_iucn_taxa_orchestrator",
    "build_wikidata_orchestrator",
    "build_wikidata_seed_controller",
    "build_wikipedia_orchestrator",
    "configure_harvest_logging",
    "open_store",
]
