"""Event store backed by a local SQLite database."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from ..engine.dedup import calculate_event_quality_score, format_event_time, parse_event_time
from ..errors import PersistenceFailure
from ..infra.storage import SQLiteManager
from ..records import RawEventData, StoredEvent, utcnow
from .base import EventStore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    start_time TEXT,
    end_time TEXT,
    location TEXT,
    price TEXT,
    image_url TEXT,
    source_url TEXT,
    source_id TEXT,
    extracted_at TEXT NOT NULL,
    scrape_hash TEXT,
    start_at TEXT,
    category TEXT,
    quality_score INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_window ON events(category, start_at);
CREATE TABLE IF NOT EXISTS event_hashes (
    hash TEXT PRIMARY KEY,
    event_id TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE
);
"""

_EVENT_COLUMNS = (
    "title",
    "description",
    "start_time",
    "end_time",
    "location",
    "price",
    "image_url",
    "source_url",
    "source_id",
    "scrape_hash",
)


def _start_key(event: RawEventData) -> Optional[str]:
    parsed = parse_event_time(event.start_time)
    return format_event_time(parsed) if parsed else None


class SQLiteEventStore(EventStore):
    """Persist events and their known hashes in two tables."""

    def __init__(self, path: Path, manager: SQLiteManager | None = None) -> None:
        self.path = Path(path)
        self.manager = manager or SQLiteManager()
        self._owns_manager = manager is None
        try:
            self.manager.ensure_schema(self.path, _SCHEMA)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Cannot initialise event store {self.path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, event: RawEventData, category: Optional[str] = None) -> str:
        event_id = uuid.uuid4().hex
        now = utcnow().isoformat(timespec="microseconds")
        values = [getattr(event, name) for name in _EVENT_COLUMNS]
        try:
            with self.manager.transaction(self.path) as conn:
                conn.execute(
                    f"""
                    INSERT INTO events(id, {", ".join(_EVENT_COLUMNS)}, extracted_at, start_at,
                                       category, quality_score, created_at, updated_at)
                    VALUES (?, {", ".join("?" for _ in _EVENT_COLUMNS)}, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id,
                        *values,
                        event.extracted_at.isoformat(),
                        _start_key(event),
                        category,
                        calculate_event_quality_score(event),
                        now,
                        now,
                    ),
                )
                self._register_hashes(conn, event_id, [event.scrape_hash])
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to create event '{event.title}': {exc}") from exc
        return event_id

    def update(self, event_id: str, event: RawEventData, aliases: Iterable[str] = ()) -> None:
        assignments = ", ".join(f"{name} = ?" for name in _EVENT_COLUMNS)
        values = [getattr(event, name) for name in _EVENT_COLUMNS]
        try:
            with self.manager.transaction(self.path) as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE events SET {assignments}, extracted_at = ?, start_at = ?,
                                      quality_score = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        *values,
                        event.extracted_at.isoformat(),
                        _start_key(event),
                        calculate_event_quality_score(event),
                        utcnow().isoformat(timespec="microseconds"),
                        event_id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise PersistenceFailure(f"Event {event_id} does not exist")
                self._register_hashes(conn, event_id, [event.scrape_hash, *aliases])
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to update event {event_id}: {exc}") from exc

    @staticmethod
    def _register_hashes(conn: sqlite3.Connection, event_id: str, hashes: Iterable[str]) -> None:
        for value in hashes:
            if value:
                conn.execute(
                    "INSERT OR REPLACE INTO event_hashes(hash, event_id) VALUES (?, ?)",
                    (value, event_id),
                )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def find_by_hash(self, event_hash: str) -> Optional[StoredEvent]:
        if not event_hash:
            return None
        row = self._query_one(
            "SELECT e.* FROM events e JOIN event_hashes h ON h.event_id = e.id WHERE h.hash = ?",
            (event_hash,),
        )
        return self._to_stored(row) if row else None

    def get(self, event_id: str) -> Optional[StoredEvent]:
        row = self._query_one("SELECT * FROM events WHERE id = ?", (event_id,))
        return self._to_stored(row) if row else None

    def find_candidates_in_window(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        category: Optional[str],
        limit: int,
        near: Optional[datetime] = None,
    ) -> list[StoredEvent]:
        clauses = ["category IS ?"]
        params: list[object] = [category]
        if start is not None:
            clauses.append("start_at >= ?")
            params.append(format_event_time(start))
        if end is not None:
            clauses.append("start_at <= ?")
            params.append(format_event_time(end))
        order = "start_at, id"
        if near is not None:
            order = "start_at IS NULL, ABS(julianday(start_at) - julianday(?)), id"
            params.append(format_event_time(near))
        params.append(limit)
        sql = f"SELECT * FROM events WHERE {' AND '.join(clauses)} ORDER BY {order} LIMIT ?"
        try:
            with self.manager.reading(self.path) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Candidate query failed: {exc}") from exc
        return [self._to_stored(row) for row in rows]

    def stats(self, since: datetime) -> dict[str, int]:
        marker = since.isoformat(timespec="microseconds")
        row = self._query_one(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(created_at >= ?), 0) AS created_since,
                   COALESCE(SUM(updated_at >= ? AND updated_at > created_at), 0) AS updated_since
            FROM events
            """,
            (marker, marker),
        )
        return {
            "total": row["total"],
            "created_since": row["created_since"],
            "updated_since": row["updated_since"],
        }

    def close(self) -> None:
        if self._owns_manager:
            self.manager.close(self.path)

    # ------------------------------------------------------------------
    def _query_one(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        try:
            with self.manager.reading(self.path) as conn:
                return conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Event store query failed: {exc}") from exc

    @staticmethod
    def _to_stored(row: sqlite3.Row) -> StoredEvent:
        event = RawEventData(
            **{name: row[name] for name in _EVENT_COLUMNS if name not in ("title", "source_id", "scrape_hash")},
            title=row["title"],
            source_id=row["source_id"] or "",
            scrape_hash=row["scrape_hash"] or "",
            extracted_at=datetime.fromisoformat(row["extracted_at"]),
        )
        return StoredEvent(
            event_id=row["id"],
            event=event,
            category=row["category"],
            quality_score=row["quality_score"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


__all__ = ["SQLiteEventStore"]
