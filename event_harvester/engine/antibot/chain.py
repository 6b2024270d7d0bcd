"""Request-shaping chain consulted by the fetcher around every attempt."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import httpx

from ...config import EventSource, GlobalConfig
from ...context import JobContext


@dataclass
class RequestPlan:
    """Headers, timeout and pre-request pause for a single attempt."""

    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    delay: float = 0.0

    def pause_at_least(self, seconds: float) -> None:
        self.delay = max(self.delay, seconds)


@dataclass
class FetchAttempt:
    """Where one fetch stands across its retries."""

    source: EventSource
    global_config: GlobalConfig
    job: JobContext | None = None
    number: int = 1
    limit: int = 1
    failures: int = 0
    status_code: int | None = None
    error: Exception | None = None

    @property
    def retrying(self) -> bool:
        return self.number > 1


class AntiBotStrategy:
    """No-op hooks; concrete strategies override the side they care about."""

    def before_request(self, attempt: FetchAttempt, plan: RequestPlan) -> None:
        return None

    def after_response(
        self, attempt: FetchAttempt, response: httpx.Response | None, error: Exception | None
    ) -> None:
        """``error`` is ``None`` exactly when the attempt succeeded."""


class AntiBotChain:
    """Applies strategies in order. The fetcher owns the request loop itself."""

    def __init__(self, strategies: Iterable[AntiBotStrategy] = ()) -> None:
        self.strategies = list(strategies)

    def plan(self, attempt: FetchAttempt) -> RequestPlan:
        plan = RequestPlan()
        for strategy in self.strategies:
            strategy.before_request(attempt, plan)
        return plan

    def succeeded(self, attempt: FetchAttempt, response: httpx.Response) -> None:
        attempt.status_code = response.status_code
        attempt.error = None
        for strategy in self.strategies:
            strategy.after_response(attempt, response, None)

    def failed(self, attempt: FetchAttempt, response: httpx.Response | None, error: Exception) -> None:
        attempt.status_code = response.status_code if response is not None else None
        attempt.error = error
        attempt.failures += 1
        for strategy in self.strategies:
            strategy.after_response(attempt, response, error)
        attempt.number += 1

    def can_retry(self, attempt: FetchAttempt) -> bool:
        if attempt.job is not None and attempt.job.expired():
            return False
        return attempt.number <= attempt.limit


__all__ = ["AntiBotChain", "AntiBotStrategy", "FetchAttempt", "RequestPlan"]
