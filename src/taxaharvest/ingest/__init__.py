"""Ingestion engine: work queues, cursor streams, and per-entity outcomes.

Import from the submodules directly; `taxaharvest.providers` re-exports the
public entry points.
"""
