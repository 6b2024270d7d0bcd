"""Rolling scrape metrics and the health check derived from them."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from .config import MonitoringConfig
from .queue.job_queue import JobQueue
from .queue.jobs import Job
from .records import JobStatus, utcnow
from .registry import SourceRegistry
from .store import EventStore


@dataclass(slots=True)
class ScrapeMetrics:
    events_scraped_today: int = 0
    events_created_today: int = 0
    events_updated_today: int = 0
    jobs_today: int = 0
    jobs_failed_today: int = 0
    error_rate: float = 0.0
    failed_jobs_last_hour: int = 0
    average_duration_seconds: float = 0.0
    queue: dict[str, int] = field(default_factory=dict)
    sources: dict[str, Any] = field(default_factory=dict)
    healthy: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class HealthReport:
    healthy: bool
    issues: list[str]
    metrics: ScrapeMetrics

    def to_dict(self) -> dict[str, Any]:
        return {"healthy": self.healthy, "issues": list(self.issues), "metrics": self.metrics.to_dict()}


def _events_found(job: Job) -> int:
    if not job.result:
        return 0
    if "summary" in job.result:
        return int(job.result["summary"].get("events_found", 0))
    return int(job.result.get("events_found", 0))


class Monitor:
    """Aggregates queue, store and registry state into metrics and alerts."""

    def __init__(
        self,
        queue: JobQueue,
        store: EventStore,
        registry: SourceRegistry,
        config: MonitoringConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.registry = registry
        self.config = config or MonitoringConfig()
        self._clock = clock
        self.logger = logger or structlog.get_logger("event_harvester.monitoring")

    def collect_metrics(self, now: Optional[datetime] = None) -> ScrapeMetrics:
        now = now or self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        finished = self.queue.finished_since(midnight)
        failed = [job for job in finished if job.status is JobStatus.FAILED]
        durations = [job.duration_seconds for job in finished if job.duration_seconds is not None]
        store_stats = self.store.stats(midnight)

        metrics = ScrapeMetrics(
            events_scraped_today=sum(_events_found(job) for job in finished),
            events_created_today=store_stats.get("created_since", 0),
            events_updated_today=store_stats.get("updated_since", 0),
            jobs_today=len(finished),
            jobs_failed_today=len(failed),
            error_rate=round(len(failed) / len(finished), 4) if finished else 0.0,
            failed_jobs_last_hour=sum(
                1 for job in failed if job.finished_at is not None and job.finished_at >= now - timedelta(hours=1)
            ),
            average_duration_seconds=round(sum(durations) / len(durations), 3) if durations else 0.0,
            queue=self.queue.stats(),
            sources=self.registry.metrics(),
        )
        metrics.healthy = not self._issues(metrics)
        return metrics

    def health_check(self, now: Optional[datetime] = None) -> HealthReport:
        metrics = self.collect_metrics(now)
        issues = self._issues(metrics)
        report = HealthReport(healthy=not issues, issues=issues, metrics=metrics)
        if issues:
            self.logger.warning("health_check_failed", issues=issues)
        else:
            self.logger.info("health_check_passed", jobs_today=metrics.jobs_today, error_rate=metrics.error_rate)
        return report

    def _issues(self, metrics: ScrapeMetrics) -> list[str]:
        config = self.config
        issues: list[str] = []
        waiting = metrics.queue.get("waiting", 0)
        if waiting >= config.max_waiting_jobs:
            issues.append(f"Queue backlog: {waiting} waiting jobs (limit {config.max_waiting_jobs})")
        if metrics.failed_jobs_last_hour >= config.failed_jobs_per_hour:
            issues.append(
                f"{metrics.failed_jobs_last_hour} jobs failed in the last hour (limit {config.failed_jobs_per_hour})"
            )
        if metrics.error_rate >= config.error_rate_threshold:
            issues.append(f"Error rate {metrics.error_rate:.0%} exceeds {config.error_rate_threshold:.0%}")
        return issues


__all__ = ["HealthReport", "Monitor", "ScrapeMetrics"]
