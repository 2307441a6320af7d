"""filesync: content-addressed file ingestion with task dispatch."""

__version__ = "0.1.0"
