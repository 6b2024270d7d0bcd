"""Cooperative deadline and progress handle passed down from a running job."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Event
from typing import Callable, Optional

from .errors import JobTimeout


@dataclass(slots=True)
class JobContext:
    """Carries the job deadline through extraction and persistence.

    Long-running code calls :meth:`check` (or :meth:`sleep`) at its
    suspension points; both raise :class:`JobTimeout` once the deadline has
    passed or the job was cancelled.
    """

    job_id: Optional[str] = None
    timeout: Optional[float] = None
    on_progress: Optional[Callable[[int], None]] = None
    started: float = field(default_factory=time.monotonic)
    cancelled: Event = field(default_factory=Event)

    @property
    def deadline(self) -> Optional[float]:
        if self.timeout is None:
            return None
        return self.started + self.timeout

    def remaining(self) -> Optional[float]:
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return self.cancelled.is_set() or (remaining is not None and remaining <= 0)

    def check(self) -> None:
        if self.cancelled.is_set():
            raise JobTimeout(f"Job {self.job_id} was cancelled")
        if self.expired():
            raise JobTimeout(f"Job {self.job_id} exceeded {self.timeout:.0f}s")

    def bound(self, timeout: float) -> float:
        """Clamp a per-operation timeout to what is left of the job."""

        remaining = self.remaining()
        return timeout if remaining is None else min(timeout, remaining)

    def sleep(self, seconds: float) -> None:
        self.check()
        if seconds <= 0:
            return
        remaining = self.remaining()
        if remaining is not None and seconds >= remaining:
            self.cancelled.wait(remaining)
            raise JobTimeout(f"Job {self.job_id} exceeded {self.timeout:.0f}s while waiting")
        if self.cancelled.wait(seconds):
            self.check()

    def progress(self, percent: int) -> None:
        if self.on_progress is not None:
            self.on_progress(max(0, min(100, int(percent))))

    def child(self) -> "JobContext":
        """Same deadline and cancellation, but progress stays with the parent."""

        return JobContext(job_id=self.job_id, timeout=self.timeout, started=self.started, cancelled=self.cancelled)


__all__ = ["JobContext"]
