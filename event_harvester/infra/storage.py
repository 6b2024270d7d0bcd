"""SQLite connection management shared by the event store and the job queue."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Dict, Iterator


class SQLiteManager:
    """Manage one serialized SQLite connection per database file."""

    def __init__(self, busy_timeout: float = 5.0) -> None:
        self.busy_timeout = busy_timeout
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._locks: Dict[Path, RLock] = {}
        self._lock = RLock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path = Path(path)
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(
                    str(path),
                    check_same_thread=False,
                    timeout=self.busy_timeout,
                    isolation_level=None,
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                if str(path) != ":memory:":
                    conn.execute("PRAGMA journal_mode = WAL")
                self._connections[path] = conn
                self._locks[path] = RLock()
            return self._connections[path]

    def ensure_schema(self, path: Path, ddl: str) -> None:
        conn = self.connect(path)
        with self._locks[Path(path)]:
            conn.executescript(ddl)

    @contextmanager
    def transaction(self, path: Path, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block inside one serialized transaction, rolling back on error."""

        conn = self.connect(path)
        with self._locks[Path(path)]:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    @contextmanager
    def reading(self, path: Path) -> Iterator[sqlite3.Connection]:
        conn = self.connect(path)
        with self._locks[Path(path)]:
            yield conn

    def reset(self, path: Path) -> None:
        path = Path(path)
        with self._lock:
            if path in self._connections:
                self._connections.pop(path).close()
                self._locks.pop(path, None)
        if path.exists():
            path.unlink()

    def close(self, path: Path) -> None:
        with self._lock:
            conn = self._connections.pop(Path(path), None)
            self._locks.pop(Path(path), None)
        if conn is not None:
            conn.close()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
            self._locks.clear()


__all__ = ["SQLiteManager"]
