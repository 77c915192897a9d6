"""Commerce webhook ingestion: verification, deduplication and dispatch."""
