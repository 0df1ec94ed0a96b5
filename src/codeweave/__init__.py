"""CodeWeave - incremental code graph index, freshness watcher and query pipeline."""

__version__ = "0.1.0"
