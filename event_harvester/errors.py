"""Exception taxonomy shared by extraction, persistence and job dispatch."""

from __future__ import annotations

from typing import Sequence


class HarvesterError(Exception):
    """Base class; ``retryable`` tells the job queue whether to back off and retry."""

    retryable = True


class ConfigurationError(HarvesterError):
    """Missing or invalid configuration. Fatal for the affected source only."""

    retryable = False


class SourceNotFoundError(ConfigurationError):
    def __init__(self, source_id: str, reason: str = "not found") -> None:
        super().__init__(f"Source {source_id} {reason}")
        self.source_id = source_id


class ExtractionFailure(HarvesterError):
    """One extraction strategy failed; the fallback chain moves on."""

    def __init__(self, message: str, strategy: str | None = None) -> None:
        super().__init__(message)
        self.strategy = strategy


class AllStrategiesFailed(ExtractionFailure):
    def __init__(self, failures: Sequence[tuple[str, BaseException]]) -> None:
        self.failures = list(failures)
        detail = "; ".join(f"{name}: {exc}" for name, exc in self.failures)
        super().__init__(f"All extraction strategies failed ({detail})")


class TimeoutFailure(HarvesterError):
    pass


class StrategyTimeout(TimeoutFailure, ExtractionFailure):
    """A single strategy exceeded its own timeout. Treated as a strategy failure."""

    def __init__(self, strategy: str, timeout: float) -> None:
        ExtractionFailure.__init__(self, f"Strategy {strategy} timed out after {timeout:.1f}s", strategy)
        self.timeout = timeout


class JobTimeout(TimeoutFailure):
    """The overall job deadline passed; outstanding work is abandoned."""


class DeferredError(HarvesterError):
    """Work should be requeued after ``retry_after`` seconds without consuming an attempt."""

    def __init__(self, message: str, retry_after: float = 60.0) -> None:
        super().__init__(message)
        self.retry_after = max(0.0, retry_after)


class RateLimitExceeded(DeferredError):
    pass


class SourceBusyError(DeferredError):
    def __init__(self, source_id: str, retry_after: float = 30.0) -> None:
        super().__init__(f"Source {source_id} is already being scraped", retry_after)
        self.source_id = source_id


class PersistenceFailure(HarvesterError):
    """A write to the event store failed; no partial record was committed."""


class BrokerUnavailable(HarvesterError):
    """The job queue database could not be reached after reconnect attempts."""


__all__ = [
    "AllStrategiesFailed",
    "BrokerUnavailable",
    "ConfigurationError",
    "DeferredError",
    "ExtractionFailure",
    "HarvesterError",
    "JobTimeout",
    "PersistenceFailure",
    "RateLimitExceeded",
    "SourceBusyError",
    "SourceNotFoundError",
    "StrategyTimeout",
    "TimeoutFailure",
]
