"""Durable job queue, job kinds and the worker pool."""

from .handlers import JobHandlers, ScrapeJobFailed
from .job_queue import JobQueue
from .jobs import (
    BulkSchedule,
    HealthCheck,
    Job,
    JobPayload,
    Priority,
    ScrapeAll,
    ScrapeSource,
    decode_payload,
    encode_payload,
)
from .worker import WorkerPool

__all__ = [
    "BulkSchedule",
    "HealthCheck",
    "Job",
    "JobHandlers",
    "JobPayload",
    "JobQueue",
    "Priority",
    "ScrapeAll",
    "ScrapeJobFailed",
    "ScrapeSource",
    "WorkerPool",
    "decode_payload",
    "encode_payload",
]
