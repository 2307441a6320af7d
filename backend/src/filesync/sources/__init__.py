"""Change sources that feed the ingestion pipeline."""
