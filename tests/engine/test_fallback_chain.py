from __future__ import annotations

from dataclasses import dataclass

import pytest

from event_harvester.config import (
    EventSelectors,
    ExtractionConfig,
    GlobalConfig,
    PaginationConfig,
    ScrapeConfig,
    SourceType,
)
from event_harvester.context import JobContext
from event_harvester.engine.extractors import (
    FallbackChain,
    HttpStrategy,
    ServiceStrategy,
    build_strategies,
)
from event_harvester.errors import (
    AllStrategiesFailed,
    ConfigurationError,
    ExtractionFailure,
    JobTimeout,
    RateLimitExceeded,
    StrategyTimeout,
)


def test_first_successful_strategy_wins(stub_strategy, sample_source, make_event, executor) -> None:
    broken = stub_strategy("http", error=ExtractionFailure("selector drift"))
    browser = stub_strategy("browser", events=[make_event()])
    service = stub_strategy("service", events=[make_event(title="Never used at all")])
    chain = FallbackChain([broken, browser, service], executor, default_timeout=5.0)
    source = sample_source()

    outcome = chain.run(source)

    assert outcome.strategy == "browser"
    assert [event.title for event in outcome.events] == ["Jazz Concert at Cultural Centre"]
    assert [name for name, _ in outcome.failures] == ["http"]
    assert service.calls == []


def test_all_failing_strategies_raise(stub_strategy, sample_source, executor) -> None:
    chain = FallbackChain(
        [
            stub_strategy("http", error=ExtractionFailure("404")),
            stub_strategy("browser", error=RuntimeError("crashed")),
        ],
        executor,
    )
    with pytest.raises(AllStrategiesFailed) as excinfo:
        chain.run(sample_source())
    assert [name for name, _ in excinfo.value.failures] == ["http", "browser"]
    assert "crashed" in str(excinfo.value)


def test_empty_results_fall_through_and_end_empty(stub_strategy, sample_source, executor) -> None:
    first, second = stub_strategy("http"), stub_strategy("browser")
    outcome = FallbackChain([first, second], executor).run(sample_source())
    assert outcome.events == []
    assert outcome.strategy is None
    assert len(first.calls) == len(second.calls) == 1


def test_unavailable_strategies_are_skipped(stub_strategy, sample_source, make_event, executor) -> None:
    skipped = stub_strategy("service", events=[make_event()], available=False)
    chain = FallbackChain([skipped], executor)
    with pytest.raises(ExtractionFailure, match="No extraction strategy available"):
        chain.run(sample_source())
    assert skipped.calls == []


def test_slow_strategy_times_out_and_chain_continues(stub_strategy, sample_source, make_event, executor) -> None:
    slow = stub_strategy("http", events=[make_event()], delay=1.0)
    fast = stub_strategy("browser", events=[make_event()])
    source = sample_source(scrape_config=ScrapeConfig(timeout_seconds=0.1))
    outcome = FallbackChain([slow, fast], executor).run(source)
    assert outcome.strategy == "browser"
    assert isinstance(outcome.failures[0][1], StrategyTimeout)


def test_deferral_propagates_immediately(stub_strategy, sample_source, make_event, executor) -> None:
    limited = stub_strategy("http", error=RateLimitExceeded("slow down", retry_after=30))
    fallback = stub_strategy("browser", events=[make_event()])
    with pytest.raises(RateLimitExceeded):
        FallbackChain([limited, fallback], executor).run(sample_source())
    assert fallback.calls == []


def test_source_strategy_override(stub_strategy, sample_source, make_event, executor) -> None:
    http = stub_strategy("http", events=[make_event()])
    browser = stub_strategy("browser", events=[make_event()])
    chain = FallbackChain([http, browser], executor)
    source = sample_source(scrape_config=ScrapeConfig(strategies=["browser"]))
    assert chain.run(source).strategy == "browser"
    assert http.calls == []

    with pytest.raises(ConfigurationError):
        chain.run(sample_source(scrape_config=ScrapeConfig(strategies=["carrier-pigeon"])))


def test_expired_job_stops_before_next_strategy(stub_strategy, sample_source, executor) -> None:
    strategy = stub_strategy("http")
    job = JobContext(job_id="j", timeout=10)
    job.cancelled.set()
    with pytest.raises(JobTimeout):
        FallbackChain([strategy], executor).run(sample_source(), job)
    assert strategy.calls == []


def test_build_strategies_follows_configured_order(sample_global_config) -> None:
    config = sample_global_config.model_copy(
        update={"extraction": ExtractionConfig(strategy_order=["service", "http"])}
    )
    strategies = build_strategies(config, fetcher=None)  # type: ignore[arg-type]
    assert [strategy.name for strategy in strategies] == ["service", "http"]

    broken = GlobalConfig(extraction=ExtractionConfig(strategy_order=["telepathy"]))
    with pytest.raises(ConfigurationError):
        build_strategies(broken, fetcher=None)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Concrete strategies against a canned fetcher
# ---------------------------------------------------------------------------
@dataclass
class CannedResponse:
    url: str
    text: str = ""
    body: object = None

    def json(self) -> object:
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class CannedFetcher:
    def __init__(self, pages: dict[str, CannedResponse]) -> None:
        self.pages = pages
        self.requests = []

    def fetch(self, source, request, job=None):  # noqa: ANN001
        self.requests.append(request)
        return self.pages[request.url]


PAGE_ONE = """
<div class="event"><h2>Jazz Concert at Cultural Centre</h2></div>
<a class="next" href="/listing?page=2">next</a>
"""
PAGE_TWO = """
<div class="event"><h2>Poetry Evening in the Garden</h2></div>
<a class="next" href="/listing">back to start</a>
"""


def test_http_strategy_follows_pagination(sample_source) -> None:
    base = "https://events.example.com/listing"
    fetcher = CannedFetcher(
        {
            base: CannedResponse(base, PAGE_ONE),
            base + "?page=2": CannedResponse(base + "?page=2", PAGE_TWO),
        }
    )
    source = sample_source(
        scrape_config=ScrapeConfig(
            selectors=EventSelectors(container="div.event", title="h2"),
            pagination=PaginationConfig(enabled=True, next_selector="a.next", max_pages=5),
        )
    )
    events = HttpStrategy(fetcher).extract(source)  # type: ignore[arg-type]
    assert [event.title for event in events] == [
        "Jazz Concert at Cultural Centre",
        "Poetry Evening in the Garden",
    ]
    assert len(fetcher.requests) == 2


def test_http_strategy_parses_api_sources(sample_source) -> None:
    url = "https://api.example.com/events"
    body = [{"@type": "Event", "name": "Harbour Fireworks Display", "startDate": "2026-12-31T23:00:00Z"}]
    fetcher = CannedFetcher({url: CannedResponse(url, body=body)})
    source = sample_source(url=url, source_type=SourceType.API)
    events = HttpStrategy(fetcher).extract(source)  # type: ignore[arg-type]
    assert [event.title for event in events] == ["Harbour Fireworks Display"]


def test_service_strategy(sample_source, monkeypatch: pytest.MonkeyPatch) -> None:
    config = ExtractionConfig(service_base_url="https://scrape.example.com/")
    endpoint = "https://scrape.example.com/v0/scrape"
    html = '<div class="event"><h2>Jazz Concert at Cultural Centre</h2></div>'
    fetcher = CannedFetcher(
        {endpoint: CannedResponse(endpoint, body={"success": True, "data": {"html": html}})}
    )
    strategy = ServiceStrategy(fetcher, config)  # type: ignore[arg-type]
    source = sample_source()
    assert not strategy.is_available(source)
    with pytest.raises(ExtractionFailure):
        strategy.extract(source)

    monkeypatch.setenv("FIRECRAWL_API_KEY", "secret")
    assert strategy.is_available(source)
    events = strategy.extract(source)
    assert [event.title for event in events] == ["Jazz Concert at Cultural Centre"]
    request = fetcher.requests[0]
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.json["url"] == source.url

    fetcher.pages[endpoint] = CannedResponse(endpoint, body={"success": False, "error": "quota"})
    with pytest.raises(ExtractionFailure, match="quota"):
        strategy.extract(source)
