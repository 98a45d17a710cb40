"""Application settings loading."""

from .app import (
    HarvestSettings,
    IngestionSettings,
    IucnApiSettings,
    WikidataSettings,
    WikipediaSettings,
    load_settings,
)


__all__ = [
    "HarvestSettings",
    "IngestionSettings",
    "IucnApiSettings",
    "WikidataSettings",
    "WikipediaSettings",
    "load_settings",
]
