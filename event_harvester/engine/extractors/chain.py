"""Ordered fallback across extraction strategies."""

from __future__ import annotations

from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Sequence

import structlog

from ...config import EventSource
from ...context import JobContext
from ...errors import (
    AllStrategiesFailed,
    ConfigurationError,
    DeferredError,
    ExtractionFailure,
    JobTimeout,
    StrategyTimeout,
)
from ...records import RawEventData
from .base import ExtractionStrategy


@dataclass(slots=True)
class ChainOutcome:
    events: list[RawEventData]
    strategy: str | None = None
    failures: list[tuple[str, BaseException]] = field(default_factory=list)


class FallbackChain:
    """Run strategies one at a time until one returns records.

    Each attempt runs on ``executor`` so it can be abandoned once its own
    timeout (clamped to the job deadline) passes.
    """

    def __init__(
        self,
        strategies: Sequence[ExtractionStrategy],
        executor: Executor,
        default_timeout: float = 30.0,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.strategies = list(strategies)
        self.executor = executor
        self.default_timeout = default_timeout
        self.logger = logger or structlog.get_logger("event_harvester.extraction")

    def order_for(self, source: EventSource) -> list[ExtractionStrategy]:
        names = source.scrape_config.strategies
        if not names:
            return list(self.strategies)
        by_name = {strategy.name: strategy for strategy in self.strategies}
        unknown = [name for name in names if name not in by_name]
        if unknown:
            raise ConfigurationError(f"Source {source.id} names unknown strategies: {', '.join(unknown)}")
        return [by_name[name] for name in names]

    def run(self, source: EventSource, job: JobContext | None = None) -> ChainOutcome:
        failures: list[tuple[str, BaseException]] = []
        attempted = 0
        for strategy in self.order_for(source):
            if job is not None:
                job.check()
            if not strategy.is_available(source):
                self.logger.info("strategy_unavailable", source=source.id, strategy=strategy.name)
                continue
            attempted += 1
            timeout = source.scrape_config.timeout_seconds or self.default_timeout
            if job is not None:
                timeout = job.bound(timeout)
            future = self.executor.submit(strategy.extract, source, job)
            try:
                events = future.result(timeout=timeout)
            except FuturesTimeout:
                future.cancel()
                if job is not None:
                    job.check()
                failure = StrategyTimeout(strategy.name, timeout)
                failures.append((strategy.name, failure))
                self.logger.warning("strategy_timeout", source=source.id, strategy=strategy.name, timeout=timeout)
                continue
            except (DeferredError, JobTimeout, ConfigurationError):
                raise
            except Exception as exc:  # noqa: BLE001
                failures.append((strategy.name, exc))
                self.logger.warning("strategy_failed", source=source.id, strategy=strategy.name, error=str(exc))
                continue
            if events:
                self.logger.info(
                    "strategy_succeeded", source=source.id, strategy=strategy.name, events=len(events)
                )
                return ChainOutcome(events=list(events), strategy=strategy.name, failures=failures)
            self.logger.info("strategy_empty", source=source.id, strategy=strategy.name)

        if failures:
            raise AllStrategiesFailed(failures)
        if attempted == 0:
            raise ExtractionFailure(f"No extraction strategy available for source {source.id}")
        return ChainOutcome(events=[], failures=failures)

    def close(self) -> None:
        for strategy in self.strategies:
            strategy.close()


__all__ = ["ChainOutcome", "FallbackChain"]
