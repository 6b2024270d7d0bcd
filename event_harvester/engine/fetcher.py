"""HTTP fetching with request-shaping strategy integration."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict

import httpx
import structlog

from ..config import EventSource, GlobalConfig
from ..context import JobContext
from ..errors import DeferredError, ExtractionFailure, JobTimeout, RateLimitExceeded
from ..infra import RateLimiter, UserAgentPool
from ..records import utcnow
from .antibot import strategies
from .antibot.chain import AntiBotChain, FetchAttempt

DEFAULT_RETRY_AFTER = 60.0


@dataclass(slots=True)
class FetchRequest:
    """Input for the fetcher."""

    url: str
    method: str = "GET"
    params: dict[str, Any] | None = None
    json: Any = None
    headers: dict[str, str] | None = None
    timeout: float | None = None


@dataclass(slots=True)
class FetchResponse:
    """Standardised response wrapper."""

    url: str
    status_code: int
    text: str
    headers: Dict[str, str]
    raw: httpx.Response | None = field(repr=False, default=None)

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304

    def json(self) -> Any:
        if self.raw is not None:
            return self.raw.json()
        raise ExtractionFailure(f"No JSON body for {self.url}")


@dataclass(slots=True)
class ProbeResult:
    unchanged: bool
    etag: str | None = None
    last_modified: str | None = None


class Fetcher:
    """Coordinate request execution and the request-shaping chain."""

    def __init__(
        self,
        global_config: GlobalConfig,
        ua_pool: UserAgentPool | None = None,
        rate_limiter: RateLimiter | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.global_config = global_config
        self.ua_pool = ua_pool
        self.rate_limiter = rate_limiter
        self.logger = logger or structlog.get_logger("event_harvester.fetcher")
        self._client = httpx.Client(
            follow_redirects=True,
            timeout=global_config.extraction.default_timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def fetch(
        self, source: EventSource, request: FetchRequest, job: JobContext | None = None
    ) -> FetchResponse:
        attempt, chain = self._build_chain(source, job)
        while True:
            plan = chain.plan(attempt)
            headers = {**plan.headers, **(request.headers or {})}
            if plan.delay:
                self._wait(plan.delay, job)

            try:
                response = self._client.request(
                    method=request.method,
                    url=request.url,
                    params=request.params,
                    json=request.json,
                    headers=headers,
                    timeout=request.timeout or plan.timeout or 20,
                )
                if response.status_code == 429:
                    raise RateLimitExceeded(
                        f"{request.url} answered 429", retry_after=self._retry_after(response)
                    )
                if self._is_failure(response):
                    chain.failed(
                        attempt, response, ExtractionFailure(f"Unexpected status {response.status_code}")
                    )
                else:
                    chain.succeeded(attempt, response)
                    return FetchResponse(
                        url=str(response.url),
                        status_code=response.status_code,
                        text=response.text,
                        headers=dict(response.headers),
                        raw=response,
                    )
            except (DeferredError, JobTimeout):
                raise
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "fetch_error",
                    url=request.url,
                    source=source.id,
                    attempt=attempt.number,
                    error=str(exc),
                )
                chain.failed(attempt, None, exc)

            if not chain.can_retry(attempt):
                break

        if job is not None:
            job.check()
        raise ExtractionFailure(
            f"Fetch failed after {attempt.failures} attempts: {request.url}"
        ) from attempt.error

    def probe(self, source: EventSource, job: JobContext | None = None) -> ProbeResult:
        """Conditional GET using the validators remembered for ``source``."""

        headers: dict[str, str] = {}
        if source.etag:
            headers["If-None-Match"] = source.etag
        if source.last_modified:
            headers["If-Modified-Since"] = source.last_modified
        response = self.fetch(source, FetchRequest(url=source.url, headers=headers), job)
        received = {name.lower(): value for name, value in response.headers.items()}
        return ProbeResult(
            unchanged=response.not_modified,
            etag=received.get("etag") or source.etag,
            last_modified=received.get("last-modified") or source.last_modified,
        )

    # ------------------------------------------------------------------
    def _build_chain(
        self, source: EventSource, job: JobContext | None
    ) -> tuple[FetchAttempt, AntiBotChain]:
        return strategies.build_chain(
            source, self.global_config, self.ua_pool, self.rate_limiter, job
        )

    @staticmethod
    def _wait(delay: float, job: JobContext | None) -> None:
        if job is not None:
            job.sleep(delay)
        else:
            time.sleep(delay)

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        value = response.headers.get("retry-after")
        if not value:
            return DEFAULT_RETRY_AFTER
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            moment = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return DEFAULT_RETRY_AFTER
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return max(0.0, (moment - utcnow()).total_seconds())

    @staticmethod
    def _is_failure(response: Any) -> bool:
        status_code = getattr(response, "status_code", 0)
        if status_code >= 500:
            return True
        if status_code in {401, 403, 404, 410}:
            return True
        return False


__all__ = ["Fetcher", "FetchRequest", "FetchResponse", "ProbeResult"]
