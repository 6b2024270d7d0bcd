"""Extraction strategy interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ...config import EventSource
from ...context import JobContext
from ...records import RawEventData


class ExtractionStrategy(ABC):
    """One way of turning a source's pages into raw event records."""

    name: str = "base"

    def is_available(self, source: EventSource) -> bool:
        return True

    @abstractmethod
    def extract(self, source: EventSource, job: JobContext | None = None) -> list[RawEventData]:
        """Return every listing found for ``source``; raise on failure."""

    def close(self) -> None:
        """Release sessions or clients held by the strategy."""


__all__ = ["ExtractionStrategy"]
