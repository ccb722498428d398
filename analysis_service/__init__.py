"""EcoSense image analysis ingestion service."""

__version__ = "1.0.0"
