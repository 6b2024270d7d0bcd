"""Process-local event store, used for dry runs and tests."""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Iterable, Optional

from ..engine.dedup import calculate_event_quality_score, parse_event_time
from ..errors import PersistenceFailure
from ..records import RawEventData, StoredEvent, utcnow
from .base import EventStore


class InMemoryEventStore(EventStore):
    def __init__(self) -> None:
        self._events: dict[str, StoredEvent] = {}
        self._hashes: dict[str, str] = {}
        self._lock = Lock()

    def create(self, event: RawEventData, category: Optional[str] = None) -> str:
        event_id = uuid.uuid4().hex
        now = utcnow()
        stored = StoredEvent(
            event_id=event_id,
            event=replace(event),
            category=category,
            quality_score=calculate_event_quality_score(event),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._events[event_id] = stored
            if event.scrape_hash:
                self._hashes[event.scrape_hash] = event_id
        return event_id

    def update(self, event_id: str, event: RawEventData, aliases: Iterable[str] = ()) -> None:
        with self._lock:
            current = self._events.get(event_id)
            if current is None:
                raise PersistenceFailure(f"Event {event_id} does not exist")
            self._events[event_id] = replace(
                current,
                event=replace(event),
                quality_score=calculate_event_quality_score(event),
                updated_at=utcnow(),
            )
            for value in (event.scrape_hash, *aliases):
                if value:
                    self._hashes[value] = event_id

    def find_by_hash(self, event_hash: str) -> Optional[StoredEvent]:
        with self._lock:
            event_id = self._hashes.get(event_hash)
            return self._copy(self._events[event_id]) if event_id else None

    def get(self, event_id: str) -> Optional[StoredEvent]:
        with self._lock:
            stored = self._events.get(event_id)
            return self._copy(stored) if stored else None

    def find_candidates_in_window(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        category: Optional[str],
        limit: int,
        near: Optional[datetime] = None,
    ) -> list[StoredEvent]:
        with self._lock:
            snapshot = list(self._events.values())
        matches = []
        for stored in snapshot:
            if stored.category != category:
                continue
            when = parse_event_time(stored.event.start_time)
            if start is not None and (when is None or when < start):
                continue
            if end is not None and (when is None or when > end):
                continue
            matches.append((when, stored.event_id, stored))
        if near is None:
            matches.sort(key=lambda item: (item[0].isoformat() if item[0] else "", item[1]))
        else:
            matches.sort(
                key=lambda item: (
                    item[0] is None,
                    abs((item[0] - near).total_seconds()) if item[0] else 0.0,
                    item[1],
                )
            )
        return [self._copy(item[2]) for item in matches[:limit]]

    def stats(self, since: datetime) -> dict[str, int]:
        with self._lock:
            events = list(self._events.values())
        return {
            "total": len(events),
            "created_since": sum(1 for stored in events if stored.created_at >= since),
            "updated_since": sum(
                1 for stored in events if stored.updated_at >= since and stored.updated_at > stored.created_at
            ),
        }

    def all(self) -> list[StoredEvent]:
        with self._lock:
            return [self._copy(stored) for stored in self._events.values()]

    @staticmethod
    def _copy(stored: StoredEvent) -> StoredEvent:
        return replace(stored, event=replace(stored.event))


__all__ = ["InMemoryEventStore"]
