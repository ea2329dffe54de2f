"""FuelIntel scraper: fuel price ingestion pipeline."""

__version__ = "1.0.0"
