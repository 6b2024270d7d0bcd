"""Headless Chromium extraction for script-rendered listing pages."""

from __future__ import annotations

import importlib.util
from threading import Lock, get_ident

import structlog

from ...config import EventSource, ExtractionConfig
from ...context import JobContext
from ...errors import ExtractionFailure
from ...records import RawEventData
from ..parser import ListingParser
from .base import ExtractionStrategy

_BLOCKED_RESOURCES = {"image", "media", "font"}


class BrowserStrategy(ExtractionStrategy):
    name = "browser"

    def __init__(
        self,
        config: ExtractionConfig,
        parser: ListingParser | None = None,
        user_agent: str | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.parser = parser or ListingParser()
        self.user_agent = user_agent
        self.logger = logger or structlog.get_logger("event_harvester.browser")
        self._sessions: dict[int, _PlaywrightSession] = {}
        self._lock = Lock()

    def is_available(self, source: EventSource) -> bool:
        return importlib.util.find_spec("playwright") is not None

    def extract(self, source: EventSource, job: JobContext | None = None) -> list[RawEventData]:
        timeout = source.scrape_config.timeout_seconds or self.config.default_timeout_seconds
        if job is not None:
            timeout = job.bound(timeout)
        pages = self._session().render(source, timeout, job)
        events: list[RawEventData] = []
        for url, html in pages:
            events.extend(self.parser.parse_listing(html, url, source.scrape_config.selectors, source.id))
        return events

    def close(self) -> None:
        with self._lock:
            for session in self._sessions.values():
                try:
                    session.close()
                except Exception as exc:  # noqa: BLE001
                    self.logger.warning("browser_close_failed", error=str(exc))
            self._sessions.clear()

    def _session(self) -> "_PlaywrightSession":
        # Playwright sync objects are bound to the thread that created them
        thread_id = get_ident()
        with self._lock:
            session = self._sessions.get(thread_id)
            if session is None:
                session = _PlaywrightSession(self.config, self.user_agent)
                self._sessions[thread_id] = session
            return session


class _PlaywrightSession:
    def __init__(self, config: ExtractionConfig, user_agent: str | None) -> None:
        self._config = config
        self._user_agent = user_agent
        self._lock = Lock()
        self._playwright = None
        self._browser = None
        self._context = None

    def _ensure_started(self) -> None:
        if self._playwright is not None:
            return
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as exc:  # pragma: no cover
            raise ExtractionFailure(
                "Browser extraction requires installing the 'playwright' package.", "browser"
            ) from exc

        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self._config.headless)
        width, height = self._config.viewport_size
        self._context = self._browser.new_context(
            user_agent=self._user_agent,
            viewport={"width": width, "height": height},
            ignore_https_errors=True,
        )
        if self._config.block_images:
            self._context.route(
                "**/*",
                lambda route: route.abort()
                if route.request.resource_type in _BLOCKED_RESOURCES
                else route.continue_(),
            )

    def render(
        self, source: EventSource, timeout: float, job: JobContext | None
    ) -> list[tuple[str, str]]:
        """Load the listing and return ``(url, html)`` for every page visited."""

        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        config = source.scrape_config
        timeout_ms = int(max(timeout, 1.0) * 1000)
        with self._lock:
            self._ensure_started()
            page = self._context.new_page()
            try:
                if config.headers:
                    page.set_extra_http_headers(config.headers)
                wait_until = "networkidle" if config.wait_for.network_idle else "domcontentloaded"
                try:
                    page.goto(source.url, wait_until=wait_until, timeout=timeout_ms)
                    self._settle(page, source, timeout_ms)
                except PlaywrightTimeoutError as exc:
                    raise ExtractionFailure(f"Browser timeout: {exc}", "browser") from exc

                pages = [(page.url, page.content())]
                pagination = config.pagination
                if pagination.enabled and pagination.next_selector:
                    for _ in range(pagination.max_pages - 1):
                        if job is not None:
                            job.check()
                        next_button = page.locator(pagination.next_selector)
                        if next_button.count() == 0:
                            break
                        try:
                            next_button.first.click(timeout=timeout_ms)
                            page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
                            self._settle(page, source, timeout_ms)
                        except PlaywrightTimeoutError:
                            break
                        pages.append((page.url, page.content()))
                return pages
            except PlaywrightError as exc:
                raise ExtractionFailure(f"Browser error: {exc}", "browser") from exc
            finally:
                page.close()

    @staticmethod
    def _settle(page, source: EventSource, timeout_ms: int) -> None:
        wait_for = source.scrape_config.wait_for
        if wait_for.selector:
            page.wait_for_selector(wait_for.selector, timeout=timeout_ms)
        if wait_for.delay_ms:
            page.wait_for_timeout(wait_for.delay_ms)

    def close(self) -> None:
        with self._lock:
            if self._context is not None:
                self._context.close()
                self._context = None
            if self._browser is not None:
                self._browser.close()
                self._browser = None
            if self._playwright is not None:
                self._playwright.stop()
                self._playwright = None


__all__ = ["BrowserStrategy"]
