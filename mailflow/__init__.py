"""mailflow: adaptive concurrent mail ingestion and classification."""

__version__ = "0.1.0"
