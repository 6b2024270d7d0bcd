"""Pydantic models used across the Event Harvester configuration flow."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceType(str, Enum):
    """Kinds of event origins a source may describe."""

    WEBSITE = "website"
    API = "api"
    MANUAL = "manual"


class EventSelectors(BaseModel):
    """CSS selectors locating the fields of one event on a listing page.

    ``container`` scopes every other selector to a single event card. When it
    is omitted the parent element of each ``title`` match acts as the card.
    ``image`` and ``link`` read the ``src``/``href`` attribute of the match.
    """

    container: str | None = None
    title: str
    description: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    location: str | None = None
    price: str | None = None
    image: str | None = None
    link: str | None = None

    @field_validator("title")
    @classmethod
    def _require_title(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("title selector cannot be empty")
        return value.strip()


class WaitCondition(BaseModel):
    """What a browser-based strategy waits for before reading the page."""

    selector: str | None = None
    network_idle: bool = False
    delay_ms: int = 0

    @field_validator("delay_ms")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("delay_ms must be >= 0")
        return value


class PaginationConfig(BaseModel):
    enabled: bool = False
    next_selector: str | None = None
    max_pages: int = 1

    @model_validator(mode="after")
    def _validate_pages(self) -> "PaginationConfig":
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if self.enabled and not self.next_selector:
            raise ValueError("pagination requires next_selector when enabled")
        return self


class RateLimitConfig(BaseModel):
    """Per-source request cadence."""

    requests_per_minute: float = 30.0
    delay_seconds: float = 0.0

    @model_validator(mode="after")
    def _validate_rate(self) -> "RateLimitConfig":
        if self.requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be > 0")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        return self

    def min_interval(self) -> float:
        """Seconds that must separate two requests to the same host."""

        return max(60.0 / self.requests_per_minute, self.delay_seconds)


class ScrapeConfig(BaseModel):
    """Extraction settings attached to a source."""

    selectors: EventSelectors | None = None
    wait_for: WaitCondition = Field(default_factory=WaitCondition)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    timeout_seconds: float | None = None
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retries: int = 0
    user_agents: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    # Optional per-source override of the global strategy order
    strategies: list[str] = Field(default_factory=list)
    freshness_check: bool = True

    @field_validator("retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retries must be >= 0")
        return value

    @field_validator("timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("timeout_seconds must be > 0")
        return value


class EventSource(BaseModel):
    """A configured external origin of event listings."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    url: str
    source_type: SourceType = SourceType.WEBSITE
    category: str | None = None
    is_active: bool = True
    scrape_config: ScrapeConfig = Field(default_factory=ScrapeConfig)
    scrape_frequency_hours: float = 24.0
    error_count: int = 0
    last_error: str | None = None
    last_scraped_at: datetime | None = None
    next_scrape_at: datetime | None = None
    # Cache validators remembered from the last successful fetch
    etag: str | None = None
    last_modified: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _validate_source(self) -> "EventSource":
        if not self.id or not self.id.strip():
            raise ValueError("id cannot be empty")
        if not self.name.strip():
            raise ValueError("name cannot be empty")
        if self.source_type is not SourceType.MANUAL and not self.url.strip():
            raise ValueError("url cannot be empty")
        if self.scrape_frequency_hours <= 0:
            raise ValueError("scrape_frequency_hours must be > 0")
        if self.error_count < 0:
            raise ValueError("error_count must be >= 0")
        return self


class DeduplicationConfig(BaseModel):
    """Thresholds steering exact and fuzzy duplicate detection."""

    title_similarity_threshold: float = 0.85
    location_similarity_threshold: float = 0.9
    time_tolerance_minutes: float = 120.0
    combined_similarity_threshold: float = 0.6
    # Scores this far below the combined threshold are logged as near misses
    near_miss_margin: float = 0.05
    candidate_window_hours: float = 48.0
    max_candidates: int = 500
    enable_fuzzy_matching: bool = True

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "DeduplicationConfig":
        for name in (
            "title_similarity_threshold",
            "location_similarity_threshold",
            "combined_similarity_threshold",
            "near_miss_margin",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1]")
        if self.time_tolerance_minutes <= 0:
            raise ValueError("time_tolerance_minutes must be > 0")
        if self.candidate_window_hours <= 0:
            raise ValueError("candidate_window_hours must be > 0")
        if self.max_candidates < 1:
            raise ValueError("max_candidates must be >= 1")
        return self


class QueueConfig(BaseModel):
    """Durable job queue and worker pool settings."""

    path: Path = Field(default=Path("data/queue.db"))
    concurrency: int = 3
    attempts: int = 3
    backoff_base_seconds: float = 2.0
    job_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 1.0
    connect_retries: int = 5
    connect_backoff_seconds: float = 0.5
    busy_timeout_seconds: float = 5.0

    @field_validator("path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @model_validator(mode="after")
    def _validate_queue(self) -> "QueueConfig":
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds must be >= 0")
        if self.job_timeout_seconds <= 0:
            raise ValueError("job_timeout_seconds must be > 0")
        if self.connect_retries < 1:
            raise ValueError("connect_retries must be >= 1")
        return self


class SchedulerConfig(BaseModel):
    enabled: bool = True
    interval_minutes: float = 15.0
    health_check_cron: str = "0 * * * *"
    cleanup_cron: str = "0 2 * * *"
    max_queue_size: int = 1000
    completed_grace_hours: float = 24.0
    failed_grace_hours: float = 24.0 * 7

    @field_validator("interval_minutes")
    @classmethod
    def _validate_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval_minutes must be > 0")
        return value


class ExtractionConfig(BaseModel):
    """Defaults for the extraction fallback chain."""

    strategy_order: list[str] = Field(default_factory=lambda: ["http", "browser", "service"])
    default_timeout_seconds: float = 30.0
    extraction_workers: int = 8
    service_base_url: str = "https://api.firecrawl.dev"
    service_api_key_env: str = "FIRECRAWL_API_KEY"
    headless: bool = True
    block_images: bool = True
    viewport_size: tuple[int, int] = (1280, 720)

    @model_validator(mode="after")
    def _validate_extraction(self) -> "ExtractionConfig":
        if not self.strategy_order:
            raise ValueError("strategy_order cannot be empty")
        if self.default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        if self.extraction_workers < 1:
            raise ValueError("extraction_workers must be >= 1")
        return self


class MonitoringConfig(BaseModel):
    """Alert thresholds used by the health check."""

    error_rate_threshold: float = 0.2
    failed_jobs_per_hour: int = 10
    max_waiting_jobs: int = 100


class GlobalConfig(BaseModel):
    """Global controls shared across sources."""

    user_agent_list: list[str] | Path | None = None
    thread_pool_workers: int = 8
    source_error_threshold: int = 10
    events_db: Path = Field(default=Path("data/events.db"))
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator("events_db", mode="before")
    @classmethod
    def _coerce_dirs(cls, value: Any) -> Path:
        return Path(value)

    @field_validator("source_error_threshold")
    @classmethod
    def _validate_threshold(cls, value: int) -> int:
        if value < 1:
            raise ValueError("source_error_threshold must be >= 1")
        return value

    @model_validator(mode="after")
    def _apply_user_agents(self) -> "GlobalConfig":
        if isinstance(self.user_agent_list, Path):
            if not self.user_agent_list.exists():
                raise ValueError(f"UA file not found: {self.user_agent_list}")
            content = self.user_agent_list.read_text(encoding="utf-8").splitlines()
            self.user_agent_list = [line.strip() for line in content if line.strip()]
        return self

    def user_agents(self) -> list[str]:
        if isinstance(self.user_agent_list, list) and self.user_agent_list:
            return list(self.user_agent_list)
        return list(DEFAULT_USER_AGENTS)


__all__ = [
    "DEFAULT_USER_AGENTS",
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
