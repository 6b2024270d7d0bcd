"""Runtime records exchanged between extraction, dedup, storage and jobs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchType(str, Enum):
    TITLE = "title"
    TIME = "time"
    LOCATION = "location"
    COMBINED = "combined"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class RawEventData:
    """One event listing as produced by an extraction strategy."""

    title: str = ""
    description: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None
    price: Optional[str] = None
    image_url: Optional[str] = None
    source_url: Optional[str] = None
    source_id: str = ""
    extracted_at: datetime = field(default_factory=utcnow)
    scrape_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["extracted_at"] = self.extracted_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RawEventData":
        known = {f.name for f in fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        extracted = data.get("extracted_at")
        if isinstance(extracted, str):
            data["extracted_at"] = datetime.fromisoformat(extracted)
        elif extracted is None:
            data.pop("extracted_at", None)
        return cls(**data)


@dataclass(slots=True)
class SimilarityMatch:
    event_id: str
    similarity: float
    match_type: MatchType
    title_score: float = 0.0
    time_score: float = 0.0
    location_score: float = 0.0


@dataclass(slots=True)
class StoredEvent:
    """What the event store hands back for an existing record."""

    event_id: str
    event: RawEventData
    category: Optional[str] = None
    quality_score: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ScrapeJobResult:
    """Outcome of scraping one source.

    ``events_found`` always equals created + updated + skipped.
    """

    source_id: str
    job_id: Optional[str] = None
    status: JobStatus = JobStatus.ACTIVE
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    events_created: int = 0
    events_updated: int = 0
    events_skipped: int = 0
    error_message: Optional[str] = None
    strategy: Optional[str] = None
    unchanged: bool = False
    retryable: bool = True

    @property
    def events_found(self) -> int:
        return self.events_created + self.events_updated + self.events_skipped

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or utcnow()
        return max(0.0, (end - self.started_at).total_seconds())

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.COMPLETED

    def finish(self, error: str | None = None) -> "ScrapeJobResult":
        self.completed_at = utcnow()
        self.error_message = error
        self.status = JobStatus.FAILED if error else JobStatus.COMPLETED
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "source_id": self.source_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "events_found": self.events_found,
            "events_created": self.events_created,
            "events_updated": self.events_updated,
            "events_skipped": self.events_skipped,
            "error_message": self.error_message,
            "strategy": self.strategy,
            "unchanged": self.unchanged,
            "retryable": self.retryable,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class BatchResult:
    results: list[ScrapeJobResult] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        successful = sum(1 for result in self.results if result.succeeded)
        return {
            "sources": len(self.results),
            "successful": successful,
            "failed": len(self.results) - successful,
            "events_found": sum(result.events_found for result in self.results),
            "events_created": sum(result.events_created for result in self.results),
            "events_updated": sum(result.events_updated for result in self.results),
            "events_skipped": sum(result.events_skipped for result in self.results),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "results": [result.to_dict() for result in self.results],
        }


__all__ = [
    "BatchResult",
    "JobStatus",
    "MatchType",
    "RawEventData",
    "ScrapeJobResult",
    "SimilarityMatch",
    "StoredEvent",
    "utcnow",
]
