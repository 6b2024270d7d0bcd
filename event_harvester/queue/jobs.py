"""Closed set of job kinds and the queued job record."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, ClassVar, Optional, Union

from ..errors import ConfigurationError
from ..records import JobStatus, utcnow


class Priority(IntEnum):
    LOW = 1
    NORMAL = 5
    HIGH = 10


@dataclass(frozen=True, slots=True)
class ScrapeSource:
    source_id: str
    kind: ClassVar[str] = "scrape_source"

    def __post_init__(self) -> None:
        if not self.source_id:
            raise ConfigurationError("ScrapeSource requires a source_id")


@dataclass(frozen=True, slots=True)
class ScrapeAll:
    kind: ClassVar[str] = "scrape_all"


@dataclass(frozen=True, slots=True)
class HealthCheck:
    kind: ClassVar[str] = "health_check"


@dataclass(frozen=True, slots=True)
class BulkSchedule:
    delay_minutes: float = 0.0
    kind: ClassVar[str] = "bulk_schedule"

    def __post_init__(self) -> None:
        if self.delay_minutes < 0:
            raise ConfigurationError("BulkSchedule delay_minutes must be >= 0")


JobPayload = Union[ScrapeSource, ScrapeAll, HealthCheck, BulkSchedule]

PAYLOAD_TYPES: dict[str, type] = {
    cls.kind: cls for cls in (ScrapeSource, ScrapeAll, HealthCheck, BulkSchedule)
}


def encode_payload(payload: JobPayload) -> dict[str, Any]:
    return {"kind": payload.kind, **asdict(payload)}


def decode_payload(data: dict[str, Any]) -> JobPayload:
    values = dict(data)
    kind = values.pop("kind", None)
    cls = PAYLOAD_TYPES.get(kind)
    if cls is None:
        raise ConfigurationError(f"Unknown job kind: {kind!r}")
    try:
        return cls(**values)
    except TypeError as exc:
        raise ConfigurationError(f"Malformed {kind} payload: {exc}") from exc


@dataclass(slots=True)
class Job:
    """A unit of work as persisted in the queue database."""

    id: str
    payload: JobPayload
    priority: int = Priority.NORMAL
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    run_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    progress: int = 0
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.payload.kind

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": encode_payload(self.payload),
            "priority": int(self.priority),
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "run_at": self.run_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
        }


__all__ = [
    "BulkSchedule",
    "HealthCheck",
    "Job",
    "JobPayload",
    "PAYLOAD_TYPES",
    "Priority",
    "ScrapeAll",
    "ScrapeSource",
    "decode_payload",
    "encode_payload",
]
