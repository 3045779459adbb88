"""Mail ingestion pipelines."""
