"""identity_sync: event ingestion, identity resolution, behavioral scoring and destination sync."""

__version__ = "0.1.0"

__all__ = ["config", "models", "pipeline", "tasks"]
