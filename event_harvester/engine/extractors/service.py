"""Managed extraction through a Firecrawl-compatible scrape API."""

from __future__ import annotations

import os

from ...config import EventSource, ExtractionConfig
from ...context import JobContext
from ...errors import ExtractionFailure
from ...records import RawEventData
from ..fetcher import FetchRequest, Fetcher
from ..parser import ListingParser
from .base import ExtractionStrategy

SCRAPE_PATH = "/v0/scrape"


class ServiceStrategy(ExtractionStrategy):
    """Ask the remote service to render the page, then parse its HTML locally."""

    name = "service"

    def __init__(
        self,
        fetcher: Fetcher,
        config: ExtractionConfig,
        parser: ListingParser | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.config = config
        self.parser = parser or ListingParser()

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.config.service_api_key_env) or None

    def is_available(self, source: EventSource) -> bool:
        return self.api_key is not None

    def extract(self, source: EventSource, job: JobContext | None = None) -> list[RawEventData]:
        api_key = self.api_key
        if api_key is None:
            raise ExtractionFailure("Extraction service API key is not configured", self.name)
        config = source.scrape_config
        timeout = config.timeout_seconds or self.config.default_timeout_seconds
        if job is not None:
            timeout = job.bound(timeout)
        payload = {
            "url": source.url,
            "pageOptions": {
                "onlyMainContent": False,
                "includeHtml": True,
                "waitFor": config.wait_for.delay_ms or 3000,
            },
            "timeout": int(timeout * 1000),
        }
        response = self.fetcher.fetch(
            source,
            FetchRequest(
                url=self.config.service_base_url.rstrip("/") + SCRAPE_PATH,
                method="POST",
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=timeout,
            ),
            job,
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise ExtractionFailure(f"Extraction service returned invalid JSON: {exc}", self.name) from exc
        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise ExtractionFailure(f"Extraction service error: {error or 'unknown'}", self.name)
        data = body.get("data") or {}
        html = data.get("html") or data.get("content") or ""
        if not html:
            return []
        page_url = (data.get("metadata") or {}).get("sourceURL") or source.url
        return self.parser.parse_listing(html, page_url, config.selectors, source.id)


__all__ = ["ServiceStrategy", "SCRAPE_PATH"]
