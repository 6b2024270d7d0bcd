"""Concrete request-shaping strategies and the factory the fetcher uses."""

from __future__ import annotations

import random
from urllib.parse import urlparse

from ...config import EventSource, GlobalConfig
from ...context import JobContext
from ...infra import RateLimiter, UserAgentPool
from .chain import AntiBotChain, AntiBotStrategy, FetchAttempt, RequestPlan


class RetryStrategy(AntiBotStrategy):
    """Allow ``retries + 1`` attempts with a 1s, 2s, 4s... pause between them."""

    def before_request(self, attempt: FetchAttempt, plan: RequestPlan) -> None:
        attempt.limit = max(1, attempt.source.scrape_config.retries + 1)
        if attempt.retrying:
            plan.pause_at_least(float(2 ** (attempt.number - 2)))


class TimeoutStrategy(AntiBotStrategy):
    """Source timeout (or the extraction default), never past the job deadline."""

    def before_request(self, attempt: FetchAttempt, plan: RequestPlan) -> None:
        timeout = (
            attempt.source.scrape_config.timeout_seconds
            or attempt.global_config.extraction.default_timeout_seconds
        )
        if attempt.job is not None:
            timeout = max(0.1, attempt.job.bound(timeout))
        plan.timeout = timeout


class HeaderStrategy(AntiBotStrategy):
    def before_request(self, attempt: FetchAttempt, plan: RequestPlan) -> None:
        for name, value in attempt.source.scrape_config.headers.items():
            plan.headers.setdefault(name, value)


class UserAgentStrategy(AntiBotStrategy):
    """Source-specific agents win over the shared pool."""

    def __init__(self, pool: UserAgentPool | None) -> None:
        self.pool = pool

    def before_request(self, attempt: FetchAttempt, plan: RequestPlan) -> None:
        own = attempt.source.scrape_config.user_agents
        agent = random.choice(own) if own else (self.pool.get() if self.pool else None)
        if agent:
            plan.headers.setdefault("User-Agent", agent)


class RateLimitStrategy(AntiBotStrategy):
    """Reserve a per-host slot according to the source's requests-per-minute."""

    def __init__(self, limiter: RateLimiter) -> None:
        self.limiter = limiter

    def before_request(self, attempt: FetchAttempt, plan: RequestPlan) -> None:
        source = attempt.source
        host = urlparse(source.url).hostname or source.id
        wait = self.limiter.reserve(host, source.scrape_config.rate_limit.min_interval())
        if wait > 0:
            plan.pause_at_least(wait)


def build_chain(
    source: EventSource,
    global_config: GlobalConfig,
    ua_pool: UserAgentPool | None,
    limiter: RateLimiter | None,
    job: JobContext | None = None,
) -> tuple[FetchAttempt, AntiBotChain]:
    attempt = FetchAttempt(source=source, global_config=global_config, job=job)
    chain: list[AntiBotStrategy] = [
        RetryStrategy(),
        TimeoutStrategy(),
        HeaderStrategy(),
        UserAgentStrategy(ua_pool),
    ]
    if limiter is not None:
        chain.append(RateLimitStrategy(limiter))
    return attempt, AntiBotChain(chain)


__all__ = [
    "HeaderStrategy",
    "RateLimitStrategy",
    "RetryStrategy",
    "TimeoutStrategy",
    "UserAgentStrategy",
    "build_chain",
]
