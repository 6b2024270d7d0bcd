"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    DeduplicationConfig,
    EventSelectors,
    EventSource,
    ExtractionConfig,
    GlobalConfig,
    MonitoringConfig,
    PaginationConfig,
    QueueConfig,
    RateLimitConfig,
    SchedulerConfig,
    ScrapeConfig,
    SourceType,
    WaitCondition,
)

__all__ = [
    "ConfigLocator",
    "ConfigRepository",
    "DeduplicationConfig",
    "EventSelectors",
    "EventSource",
    "ExtractionConfig",
    "GlobalConfig",
    "MonitoringConfig",
    "PaginationConfig",
    "QueueConfig",
    "RateLimitConfig",
    "SchedulerConfig",
    "ScrapeConfig",
    "SourceType",
    "WaitCondition",
]
