"""Shared fixtures: isolated harvester home, source builders and stub strategies."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from event_harvester.config import (
    ConfigLocator,
    ConfigRepository,
    DeduplicationConfig,
    EventSelectors,
    EventSource,
    GlobalConfig,
    ScrapeConfig,
)
from event_harvester.engine import ThreadPoolManager
from event_harvester.engine.dedup import format_event_time
from event_harvester.engine.extractors import ExtractionStrategy, FallbackChain
from event_harvester.infra import BrokerConnection, SQLiteManager
from event_harvester.logging_conf import configure_logging
from event_harvester.orchestrator import ScrapeOrchestrator
from event_harvester.queue import JobQueue
from event_harvester.records import RawEventData, utcnow
from event_harvester.registry import SourceRegistry
from event_harvester.store import InMemoryEventStore


@pytest.fixture(scope="session", autouse=True)
def harvester_logging(tmp_path_factory: pytest.TempPathFactory) -> None:
    with pytest.MonkeyPatch.context() as patch:
        patch.setenv("EVENT_HARVESTER_HOME", str(tmp_path_factory.mktemp("home")))
        configure_logging()


@pytest.fixture(autouse=True)
def harvester_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("EVENT_HARVESTER_HOME", str(tmp_path))
    monkeypatch.delenv("FIRECRAWL_API_KEY", raising=False)
    return tmp_path


@pytest.fixture
def sample_global_config(tmp_path: Path) -> GlobalConfig:
    return GlobalConfig(events_db=tmp_path / "data" / "events.db")


def event_time(days: float = 7, hours: float = 0, minutes: float = 0) -> str:
    """An ISO start time relative to now, inside the accepted validation range."""

    moment = utcnow().replace(minute=0, second=0, microsecond=0) + timedelta(
        days=days, hours=hours, minutes=minutes
    )
    return format_event_time(moment)


@pytest.fixture
def when() -> Callable[..., str]:
    return event_time


@pytest.fixture
def make_event() -> Callable[..., RawEventData]:
    def _builder(**overrides: Any) -> RawEventData:
        base: dict[str, Any] = {
            "title": "Jazz Concert at Cultural Centre",
            "description": "An evening of live jazz with the city big band and guest soloists.",
            "start_time": event_time(),
            "location": "Cultural Centre, Main Hall",
            "source_url": "https://events.example.com/jazz",
        }
        base.update(overrides)
        return RawEventData(**base)

    return _builder


@pytest.fixture
def sample_source() -> Callable[..., EventSource]:
    def _builder(**overrides: Any) -> EventSource:
        base: dict[str, Any] = {
            "name": "City Events",
            "url": "https://events.example.com/listing",
            "category": "music",
            "scrape_config": ScrapeConfig(
                selectors=EventSelectors(
                    container="div.event",
                    title="h2",
                    description="p.summary",
                    start_time="time::attr:datetime",
                    location=".venue",
                    link="a",
                ),
                freshness_check=False,
            ),
        }
        base.update(overrides)
        return EventSource(**base)

    return _builder


@pytest.fixture
def temp_config_repository(tmp_path: Path) -> Iterable[ConfigRepository]:
    locator = ConfigLocator(project_root=tmp_path)
    yield ConfigRepository(locator)


@pytest.fixture
def registry(temp_config_repository: ConfigRepository) -> SourceRegistry:
    registry = SourceRegistry(temp_config_repository, error_threshold=3)
    registry.initialize()
    return registry


@pytest.fixture
def memory_store() -> InMemoryEventStore:
    return InMemoryEventStore()


# ---------------------------------------------------------------------------
# Extraction stubs
# ---------------------------------------------------------------------------
class StubStrategy(ExtractionStrategy):
    """Returns canned events, raises, or sleeps; records every call."""

    def __init__(
        self,
        name: str,
        events: list[RawEventData] | Callable[[], list[RawEventData]] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
        available: bool = True,
    ) -> None:
        self.name = name
        self.events = events or []
        self.error = error
        self.delay = delay
        self.available = available
        self.calls: list[str] = []

    def is_available(self, source: EventSource) -> bool:
        return self.available

    def extract(self, source: EventSource, job=None) -> list[RawEventData]:  # noqa: ANN001
        self.calls.append(source.id)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        events = self.events() if callable(self.events) else self.events
        return [RawEventData.from_dict(event.to_dict()) for event in events]


@pytest.fixture
def stub_strategy() -> type[StubStrategy]:
    return StubStrategy


@pytest.fixture
def executor() -> Iterable[ThreadPoolExecutor]:
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


@pytest.fixture
def make_orchestrator(
    registry: SourceRegistry, memory_store: InMemoryEventStore, executor: ThreadPoolExecutor
) -> Iterable[Callable[..., ScrapeOrchestrator]]:
    pools: list[ThreadPoolManager] = []

    def _builder(
        strategies: list[ExtractionStrategy], dedup: DeduplicationConfig | None = None, **kwargs: Any
    ) -> ScrapeOrchestrator:
        pool = ThreadPoolManager(4)
        pools.append(pool)
        chain = FallbackChain(strategies, executor, default_timeout=5.0)
        return ScrapeOrchestrator(
            registry,
            kwargs.pop("store", memory_store),
            chain,
            dedup or DeduplicationConfig(),
            pool,
            **kwargs,
        )

    yield _builder
    for pool in pools:
        pool.shutdown(wait=False)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------
class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def broker(tmp_path: Path) -> Iterable[BrokerConnection]:
    connection = BrokerConnection(tmp_path / "queue.db", SQLiteManager(), sleep=lambda _s: None).open()
    yield connection
    connection.close()


@pytest.fixture
def job_queue(broker: BrokerConnection, clock: ManualClock) -> JobQueue:
    return JobQueue(broker, default_attempts=3, backoff_base=2.0, clock=clock)
