"""Scheduling helpers built on APScheduler."""

from .apsched_adapter import ScrapeScheduler

__all__ = ["ScrapeScheduler"]
