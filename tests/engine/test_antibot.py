from __future__ import annotations

import httpx

from event_harvester.config import GlobalConfig, RateLimitConfig, ScrapeConfig
from event_harvester.context import JobContext
from event_harvester.engine.antibot import AntiBotChain, FetchAttempt, RequestPlan, build_chain
from event_harvester.engine.antibot.strategies import (
    RateLimitStrategy,
    RetryStrategy,
    TimeoutStrategy,
)
from event_harvester.infra import RateLimiter, UserAgentPool


def test_retry_strategy_backs_off_exponentially(sample_source) -> None:
    source = sample_source(scrape_config=ScrapeConfig(retries=3))
    attempt = FetchAttempt(source=source, global_config=GlobalConfig())
    chain = AntiBotChain([RetryStrategy()])
    delays = []
    for _ in range(4):
        delays.append(chain.plan(attempt).delay)
        chain.failed(attempt, None, RuntimeError("x"))
    assert attempt.limit == 4
    assert delays == [0.0, 1.0, 2.0, 4.0]
    assert attempt.failures == 4
    assert not chain.can_retry(attempt)


def test_timeout_strategy_respects_job_deadline(sample_source) -> None:
    source = sample_source(scrape_config=ScrapeConfig(timeout_seconds=30))
    plan = RequestPlan()
    TimeoutStrategy().before_request(FetchAttempt(source=source, global_config=GlobalConfig()), plan)
    assert plan.timeout == 30

    job = JobContext(job_id="j", timeout=5)
    plan = RequestPlan()
    TimeoutStrategy().before_request(
        FetchAttempt(source=source, global_config=GlobalConfig(), job=job), plan
    )
    assert plan.timeout <= 5


def test_rate_limit_strategy_spaces_requests_per_host(sample_source) -> None:
    now = [0.0]
    limiter = RateLimiter(clock=lambda: now[0])
    source = sample_source(
        scrape_config=ScrapeConfig(rate_limit=RateLimitConfig(requests_per_minute=60))
    )
    attempt = FetchAttempt(source=source, global_config=GlobalConfig())
    strategy = RateLimitStrategy(limiter)
    first, second = RequestPlan(), RequestPlan()
    strategy.before_request(attempt, first)
    strategy.before_request(attempt, second)
    assert first.delay == 0.0
    assert second.delay == 1.0


def test_build_chain_prepares_headers(sample_source) -> None:
    source = sample_source(scrape_config=ScrapeConfig(headers={"Accept": "text/html"}, retries=2))
    attempt, chain = build_chain(source, GlobalConfig(), UserAgentPool(["UA-1"]), None)
    plan = chain.plan(attempt)
    assert plan.headers == {"Accept": "text/html", "User-Agent": "UA-1"}
    assert attempt.limit == 3

    chain.failed(attempt, httpx.Response(503), RuntimeError("unavailable"))
    assert attempt.status_code == 503
    assert attempt.number == 2
    assert chain.can_retry(attempt)
    chain.failed(attempt, None, RuntimeError("x"))
    chain.failed(attempt, None, RuntimeError("x"))
    assert not chain.can_retry(attempt)

    chain.succeeded(attempt, httpx.Response(200))
    assert attempt.error is None
    assert attempt.status_code == 200


def test_expired_job_stops_retries(sample_source) -> None:
    job = JobContext(job_id="j", timeout=0)
    attempt, chain = build_chain(sample_source(), GlobalConfig(), None, None, job)
    chain.plan(attempt)
    chain.failed(attempt, None, RuntimeError("x"))
    assert not chain.can_retry(attempt)
