"""Metadata storage for ingested files."""
