"""adchrono: temporal ingestion and reconstruction of ad platform analytics."""
