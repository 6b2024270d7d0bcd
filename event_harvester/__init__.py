"""Event Harvester: scrape, deduplicate and store event listings."""

__version__ = "0.1.0"
