"""APScheduler wrapper that feeds recurring and on-demand work into the job queue."""

from __future__ import annotations

from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import SchedulerConfig, SourceType
from ..errors import ConfigurationError
from ..logging_conf import configure_logging
from ..queue import BulkSchedule, HealthCheck, Job, JobQueue, Priority, ScrapeAll, ScrapeSource
from ..registry import SourceRegistry

SCRAPE_ALL_JOB = "harvester::scrape_all"
HEALTH_CHECK_JOB = "harvester::health_check"
CLEANUP_JOB = "harvester::cleanup"


class ScrapeScheduler:
    """Own the recurring triggers and the enqueue helpers used by the CLI."""

    def __init__(
        self,
        queue: JobQueue,
        registry: SourceRegistry,
        config: SchedulerConfig | None = None,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.config = config or SchedulerConfig()
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.logger = configure_logging().bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if self.started:
            return
        self.scheduler.add_job(
            self.enqueue_scrape_all,
            trigger=IntervalTrigger(minutes=self.config.interval_minutes),
            id=SCRAPE_ALL_JOB,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.enqueue_health_check,
            trigger=CronTrigger.from_crontab(self.config.health_check_cron, timezone="UTC"),
            id=HEALTH_CHECK_JOB,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cleanup,
            trigger=CronTrigger.from_crontab(self.config.cleanup_cron, timezone="UTC"),
            id=CLEANUP_JOB,
            replace_existing=True,
        )
        self.scheduler.start()
        self.started = True
        self.logger.info("scheduler_started", interval_minutes=self.config.interval_minutes)

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("scheduler_stopped")

    # ------------------------------------------------------------------
    # Enqueue helpers
    # ------------------------------------------------------------------
    def enqueue_scrape_all(self) -> Job | None:
        pending = self.queue.pending_count()
        if pending >= self.config.max_queue_size:
            self.logger.warning("scrape_all_skipped", pending=pending, limit=self.config.max_queue_size)
            return None
        return self.queue.enqueue(ScrapeAll(), priority=Priority.NORMAL)

    def enqueue_health_check(self) -> Job:
        return self.queue.enqueue(HealthCheck(), priority=Priority.LOW)

    def scrape_now(self, source_id: str) -> Job:
        source = self.registry.get_active(source_id)
        if source.source_type is SourceType.MANUAL:
            raise ConfigurationError(f"Source {source_id} is manual and cannot be scraped")
        job = self.queue.enqueue(ScrapeSource(source.id), priority=Priority.HIGH)
        self.logger.info("scrape_requested", source=source.id, job=job.id)
        return job

    def schedule_source(self, source_id: str, delay_minutes: float = 0.0) -> Job:
        if delay_minutes < 0:
            raise ConfigurationError("delay_minutes must be >= 0")
        source = self.registry.get_active(source_id)
        return self.queue.enqueue(
            ScrapeSource(source.id), priority=Priority.NORMAL, delay_seconds=delay_minutes * 60
        )

    def schedule_bulk(self, delay_minutes: float = 0.0) -> Job:
        return self.queue.enqueue(BulkSchedule(delay_minutes=delay_minutes), priority=Priority.LOW)

    def cleanup(self) -> dict[str, int]:
        removed = {
            "completed": self.queue.clean(self.config.completed_grace_hours * 3600, "completed"),
            "failed": self.queue.clean(self.config.failed_grace_hours * 3600, "failed"),
        }
        self.logger.info("queue_cleanup", **removed)
        return removed

    # ------------------------------------------------------------------
    def list_jobs(self) -> list[dict[str, Any]]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs

    def status(self) -> dict[str, Any]:
        return {
            "running": self.started,
            "interval_minutes": self.config.interval_minutes,
            "max_queue_size": self.config.max_queue_size,
            "pending": self.queue.pending_count(),
            "jobs": self.list_jobs(),
        }


__all__ = ["CLEANUP_JOB", "HEALTH_CHECK_JOB", "SCRAPE_ALL_JOB", "ScrapeScheduler"]
