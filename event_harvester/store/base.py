"""Event store contract consumed by the orchestrator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from ..records import RawEventData, StoredEvent


class EventStore(ABC):
    """Create / update / query interface of the persistent event store.

    Every write is atomic: a failing ``create`` or ``update`` raises
    :class:`~event_harvester.errors.PersistenceFailure` and leaves no partial
    record behind.
    """

    @abstractmethod
    def create(self, event: RawEventData, category: Optional[str] = None) -> str:
        """Persist a new record and return its id."""

    @abstractmethod
    def update(self, event_id: str, event: RawEventData, aliases: Iterable[str] = ()) -> None:
        """Replace a stored record; ``aliases`` are extra hashes that resolve to it."""

    @abstractmethod
    def find_by_hash(self, event_hash: str) -> Optional[StoredEvent]:
        """Return the record registered under ``event_hash``."""

    @abstractmethod
    def find_candidates_in_window(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        category: Optional[str],
        limit: int,
        near: Optional[datetime] = None,
    ) -> list[StoredEvent]:
        """Stored records of ``category`` starting inside ``[start, end]``.

        Open bounds (``None``) leave that side of the window unconstrained.
        With ``near`` set, the ``limit`` closest starts to it are kept;
        otherwise the earliest ones.
        """

    @abstractmethod
    def get(self, event_id: str) -> Optional[StoredEvent]:
        """Return one stored record."""

    @abstractmethod
    def stats(self, since: datetime) -> dict[str, int]:
        """Counts used by the metrics view: total, created and updated since ``since``."""

    def close(self) -> None:
        """Release underlying resources."""


__all__ = ["EventStore"]
