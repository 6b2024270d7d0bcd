"""Source registry: the single owner of every ``EventSource`` record."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError

from .config import ConfigRepository, EventSource, SourceType
from .errors import ConfigurationError, SourceNotFoundError
from .records import utcnow


class SourceRegistry:
    """Arena of sources keyed by id, loaded once and written through to YAML.

    Readers always receive copies; every mutation goes through the repository
    first and then replaces the arena entry.
    """

    def __init__(
        self,
        repository: ConfigRepository,
        error_threshold: int = 10,
        logger: structlog.BoundLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.error_threshold = error_threshold
        self.logger = logger or structlog.get_logger("event_harvester.registry")
        self._clock = clock
        self._arena: dict[str, EventSource] = {}
        self._lock = RLock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def initialize(self) -> int:
        with self._lock:
            if self._initialized:
                return len(self._arena)
            self._arena = {source.id: source for source in self.repository.list_sources()}
            self._initialized = True
            self.logger.info("registry_loaded", sources=len(self._arena))
            return len(self._arena)

    def invalidate(self, source_id: str | None = None) -> None:
        """Reload one source (or all of them) from the repository."""

        with self._lock:
            if source_id is None:
                self._initialized = False
                self.initialize()
                return
            try:
                self._arena[source_id] = self.repository.load_source(source_id)
            except FileNotFoundError:
                self._arena.pop(source_id, None)

    def _ensure_loaded(self) -> None:
        if not self._initialized:
            self.initialize()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def find(self, source_id: str) -> Optional[EventSource]:
        with self._lock:
            self._ensure_loaded()
            source = self._arena.get(source_id)
            return source.model_copy(deep=True) if source else None

    def get(self, source_id: str) -> EventSource:
        source = self.find(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    def get_active(self, source_id: str) -> EventSource:
        source = self.find(source_id)
        if source is None or not source.is_active:
            raise SourceNotFoundError(source_id, "not found or inactive")
        return source

    def list_sources(
        self, active: bool | None = None, source_type: SourceType | str | None = None
    ) -> list[EventSource]:
        kind = SourceType(source_type) if source_type is not None else None
        with self._lock:
            self._ensure_loaded()
            sources = [
                source.model_copy(deep=True)
                for source in self._arena.values()
                if (active is None or source.is_active == active)
                and (kind is None or source.source_type == kind)
            ]
        return sorted(sources, key=lambda source: (source.name.lower(), source.id))

    def sources_due(self, now: datetime | None = None) -> list[EventSource]:
        now = now or self._clock()
        return [
            source
            for source in self.list_sources(active=True)
            if source.source_type is not SourceType.MANUAL
            and (source.next_scrape_at is None or source.next_scrape_at <= now)
        ]

    def metrics(self) -> dict[str, Any]:
        sources = self.list_sources()
        return {
            "total": len(sources),
            "active": sum(1 for source in sources if source.is_active),
            "inactive": sum(1 for source in sources if not source.is_active),
            "with_errors": sum(1 for source in sources if source.error_count > 0),
            "due": len(self.sources_due()),
            "by_type": dict(Counter(source.source_type.value for source in sources)),
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, source: EventSource) -> EventSource:
        with self._lock:
            self._ensure_loaded()
            if source.id in self._arena:
                raise ConfigurationError(f"Source {source.id} already exists")
            self._commit(source)
            self.logger.info("source_created", source=source.id, name=source.name)
            return source.model_copy(deep=True)

    def update(self, source_id: str, **changes: Any) -> EventSource:
        with self._lock:
            current = self._require(source_id)
            payload = current.model_dump()
            payload.update(changes)
            payload["id"] = source_id
            payload["updated_at"] = self._clock()
            try:
                updated = EventSource.model_validate(payload)
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid update for source {source_id}: {exc}") from exc
            self._commit(updated)
            return updated.model_copy(deep=True)

    def upsert(self, source: EventSource) -> EventSource:
        with self._lock:
            self._ensure_loaded()
            if source.id in self._arena:
                changes = source.model_dump(exclude={"id", "created_at"})
                return self.update(source.id, **changes)
            return self.create(source)

    def import_file(self, path: Path) -> list[EventSource]:
        return [self.upsert(source) for source in self.repository.read_sources_file(path)]

    def delete(self, source_id: str) -> None:
        with self._lock:
            self._require(source_id)
            self.repository.delete_source(source_id)
            self._arena.pop(source_id, None)
            self.logger.info("source_deleted", source=source_id)

    def activate(self, source_id: str) -> EventSource:
        source = self.update(source_id, is_active=True)
        self.logger.info("source_activated", source=source_id)
        return source

    def deactivate(self, source_id: str, reason: str | None = None) -> EventSource:
        source = self.update(source_id, is_active=False)
        self.logger.info("source_deactivated", source=source_id, reason=reason or "manual")
        return source

    def reset_error_count(self, source_id: str) -> EventSource:
        return self.update(source_id, error_count=0, last_error=None)

    def record_failure(self, source_id: str, message: str) -> EventSource:
        with self._lock:
            current = self._require(source_id)
            error_count = current.error_count + 1
            changes: dict[str, Any] = {"error_count": error_count, "last_error": message}
            deactivate = current.is_active and error_count >= self.error_threshold
            if deactivate:
                changes["is_active"] = False
            source = self.update(source_id, **changes)
        self.logger.warning("source_failure_recorded", source=source_id, error_count=error_count, error=message)
        if deactivate:
            self.logger.warning(
                "source_auto_deactivated", source=source_id, error_count=error_count, threshold=self.error_threshold
            )
        return source

    def record_success(
        self,
        source_id: str,
        etag: str | None = None,
        last_modified: str | None = None,
        when: datetime | None = None,
    ) -> EventSource:
        with self._lock:
            current = self._require(source_id)
            now = when or self._clock()
            changes: dict[str, Any] = {
                "error_count": 0,
                "last_error": None,
                "last_scraped_at": now,
                "next_scrape_at": now + timedelta(hours=current.scrape_frequency_hours),
            }
            if etag is not None:
                changes["etag"] = etag
            if last_modified is not None:
                changes["last_modified"] = last_modified
            return self.update(source_id, **changes)

    # ------------------------------------------------------------------
    def _require(self, source_id: str) -> EventSource:
        self._ensure_loaded()
        source = self._arena.get(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    def _commit(self, source: EventSource) -> None:
        self.repository.save_source(source)
        self._arena[source.id] = source.model_copy(deep=True)


__all__ = ["SourceRegistry"]
