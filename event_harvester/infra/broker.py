"""Explicit handle on the queue database, opened at start and closed on shutdown."""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Callable, Iterator

import structlog

from ..errors import BrokerUnavailable
from .storage import SQLiteManager


class BrokerConnection:
    """Connection to the durable job broker with reconnect-and-backoff.

    One instance is created per process and handed to every queue and worker
    that needs it.
    """

    def __init__(
        self,
        path: Path,
        manager: SQLiteManager | None = None,
        retries: int = 5,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.path = Path(path)
        self.manager = manager or SQLiteManager()
        self.retries = max(1, retries)
        self.backoff = backoff
        self._sleep = sleep
        self._open = False
        self._lock = Lock()
        self.logger = logger or structlog.get_logger("event_harvester.broker")

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> "BrokerConnection":
        with self._lock:
            if self._open:
                return self
            last_error: Exception | None = None
            for attempt in range(1, self.retries + 1):
                try:
                    conn = self.manager.connect(self.path)
                    conn.execute("SELECT 1").fetchone()
                except sqlite3.Error as exc:
                    last_error = exc
                    self.manager.close(self.path)
                    delay = self.backoff * (2 ** (attempt - 1))
                    self.logger.warning(
                        "broker_connect_failed", path=str(self.path), attempt=attempt, retry_in=delay, error=str(exc)
                    )
                    if attempt < self.retries:
                        self._sleep(delay)
                    continue
                self._open = True
                self.logger.info("broker_connected", path=str(self.path))
                return self
            raise BrokerUnavailable(f"Cannot open broker at {self.path}: {last_error}") from last_error

    def close(self) -> None:
        with self._lock:
            if self._open:
                self.manager.close(self.path)
                self._open = False
                self.logger.info("broker_closed", path=str(self.path))

    def reconnect(self) -> None:
        self.close()
        self.open()

    def ensure_schema(self, ddl: str) -> None:
        self._require_open()
        self.manager.ensure_schema(self.path, ddl)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        self._require_open()
        with self.manager.transaction(self.path) as conn:
            yield conn

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        self._require_open()
        with self.manager.reading(self.path) as conn:
            yield conn

    def _require_open(self) -> None:
        if not self._open:
            raise BrokerUnavailable(f"Broker at {self.path} is not open")

    def __enter__(self) -> "BrokerConnection":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["BrokerConnection"]
