"""Long-running services built on the ingestion pipeline."""
