"""In-process extraction: httpx fetch plus selectolax parsing."""

from __future__ import annotations

from ...config import EventSource, SourceType
from ...context import JobContext
from ...records import RawEventData
from ..fetcher import FetchRequest, Fetcher
from ..parser import ListingParser
from .base import ExtractionStrategy


class HttpStrategy(ExtractionStrategy):
    name = "http"

    def __init__(self, fetcher: Fetcher, parser: ListingParser | None = None) -> None:
        self.fetcher = fetcher
        self.parser = parser or ListingParser()

    def extract(self, source: EventSource, job: JobContext | None = None) -> list[RawEventData]:
        config = source.scrape_config
        max_pages = config.pagination.max_pages if config.pagination.enabled else 1
        url: str | None = source.url
        visited: set[str] = set()
        events: list[RawEventData] = []
        while url and url not in visited and len(visited) < max_pages:
            if job is not None:
                job.check()
            visited.add(url)
            response = self.fetcher.fetch(source, FetchRequest(url=url), job)
            if source.source_type is SourceType.API:
                events.extend(self.parser.parse_json_document(response.json(), response.url, source.id))
            else:
                events.extend(
                    self.parser.parse_listing(response.text, response.url, config.selectors, source.id)
                )
            url = None
            if config.pagination.enabled and config.pagination.next_selector:
                url = self.parser.next_page_url(response.text, response.url, config.pagination.next_selector)
        return events


__all__ = ["HttpStrategy"]
