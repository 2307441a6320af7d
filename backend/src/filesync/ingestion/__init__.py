"""Ingestion pipeline: filtering, fingerprinting, deduplication and task dispatch."""
