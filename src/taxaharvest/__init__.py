"""Resilient ingestion of taxonomic data from IUCN, Wikidata, and Wikipedia."""

__version__ = "0.1.0"
