"""Feed entry ingestion, image enrichment and store reconciliation workers."""
