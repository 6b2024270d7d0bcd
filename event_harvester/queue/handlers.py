"""Dispatch from job kinds to the components that do the work."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

import structlog

from ..config import SourceType
from ..context import JobContext
from ..errors import HarvesterError
from ..records import ScrapeJobResult
from .jobs import BulkSchedule, HealthCheck, JobPayload, Priority, ScrapeAll, ScrapeSource

if TYPE_CHECKING:
    from ..monitoring import Monitor
    from ..orchestrator import ScrapeOrchestrator
    from ..registry import SourceRegistry
    from .job_queue import JobQueue

Handler = Callable[[Any, JobContext], dict[str, Any]]


class ScrapeJobFailed(HarvesterError):
    """A scrape finished with a failed result; carries it so the job records it."""

    def __init__(self, result: ScrapeJobResult) -> None:
        super().__init__(result.error_message or f"Scrape of {result.source_id} failed")
        self.result = result
        self.retryable = result.retryable


class JobHandlers:
    def __init__(
        self,
        orchestrator: "ScrapeOrchestrator",
        registry: "SourceRegistry",
        queue: "JobQueue",
        monitor: "Monitor",
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.registry = registry
        self.queue = queue
        self.monitor = monitor
        self.logger = logger or structlog.get_logger("event_harvester.handlers")

    def mapping(self) -> dict[type, Handler]:
        return {
            ScrapeSource: self.scrape_source,
            ScrapeAll: self.scrape_all,
            HealthCheck: self.health_check,
            BulkSchedule: self.bulk_schedule,
        }

    def dispatch(self, payload: JobPayload, context: JobContext) -> dict[str, Any]:
        handler = self.mapping()[type(payload)]
        return handler(payload, context)

    def scrape_source(self, payload: ScrapeSource, context: JobContext) -> dict[str, Any]:
        result = self.orchestrator.scrape_source(payload.source_id, context)
        if not result.succeeded:
            raise ScrapeJobFailed(result)
        return result.to_dict()

    def scrape_all(self, payload: ScrapeAll, context: JobContext) -> dict[str, Any]:
        return self.orchestrator.scrape_all(context).to_dict()

    def health_check(self, payload: HealthCheck, context: JobContext) -> dict[str, Any]:
        return self.monitor.health_check().to_dict()

    def bulk_schedule(self, payload: BulkSchedule, context: JobContext) -> dict[str, Any]:
        sources = [
            source
            for source in self.registry.list_sources(active=True)
            if source.source_type is not SourceType.MANUAL
        ]
        job_ids = []
        for source in sources:
            context.check()
            job = self.queue.enqueue(
                ScrapeSource(source.id),
                priority=Priority.NORMAL,
                delay_seconds=payload.delay_minutes * 60,
            )
            job_ids.append(job.id)
        self.logger.info("bulk_scheduled", sources=len(job_ids), delay_minutes=payload.delay_minutes)
        return {"scheduled": len(job_ids), "job_ids": job_ids}


__all__ = ["Handler", "JobHandlers", "ScrapeJobFailed"]
