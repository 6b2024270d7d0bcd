"""Scrape orchestration: extraction, validation, dedup and persistence per source."""

from __future__ import annotations

from concurrent.futures import TimeoutError as FuturesTimeout
from concurrent.futures import as_completed
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Any, Callable

import structlog

from .config import DeduplicationConfig, EventSource, SourceType
from .context import JobContext
from .engine import Fetcher, ThreadPoolManager
from .engine.dedup import (
    generate_event_hash,
    is_exact_duplicate,
    merge_event_data,
    normalize_event_data,
    parse_event_time,
    qualifies,
    rank_candidates,
)
from .engine.extractors import FallbackChain
from .engine.fetcher import ProbeResult
from .engine.validator import rejection_summary, validate_event
from .errors import (
    ConfigurationError,
    DeferredError,
    HarvesterError,
    JobTimeout,
    SourceBusyError,
)
from .logging_conf import configure_logging, source_logger
from .records import BatchResult, RawEventData, ScrapeJobResult, utcnow
from .registry import SourceRegistry
from .store import EventStore


class Decision(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


class ScrapeOrchestrator:
    """Central coordinator turning one source's listings into stored events."""

    def __init__(
        self,
        registry: SourceRegistry,
        store: EventStore,
        chain: FallbackChain,
        dedup_config: DeduplicationConfig,
        thread_pool: ThreadPoolManager,
        fetcher: Fetcher | None = None,
        batch_workers: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.store = store
        self.chain = chain
        self.dedup_config = dedup_config
        self.thread_pool = thread_pool
        self.fetcher = fetcher
        self.batch_workers = batch_workers
        self._clock = clock
        self.logger = configure_logging().bind(component="orchestrator")
        # Guards decide+write so two jobs never both believe a record is new
        self._persist_lock = Lock()
        self._source_locks: dict[str, Lock] = {}
        self._source_locks_guard = Lock()

    # ------------------------------------------------------------------
    # Single source
    # ------------------------------------------------------------------
    def scrape_source(self, source_id: str, job: JobContext | None = None) -> ScrapeJobResult:
        source = self.registry.get_active(source_id)
        lock = self._source_lock(source_id)
        if not lock.acquire(blocking=False):
            raise SourceBusyError(source_id)
        try:
            return self._scrape_locked(source, job)
        finally:
            lock.release()

    def _scrape_locked(self, source: EventSource, job: JobContext | None) -> ScrapeJobResult:
        result = ScrapeJobResult(source_id=source.id, job_id=job.job_id if job else None)
        log = source_logger(source.id).bind(job=result.job_id)
        log.info("scrape_started", url=source.url)
        probe: ProbeResult | None = None
        try:
            self._check_config(source)
            probe = self._probe(source, job, log)
            if probe is not None and probe.unchanged:
                result.unchanged = True
                self.registry.record_success(source.id, probe.etag, probe.last_modified)
                log.info("source_unchanged")
                return result.finish()
            outcome = self.chain.run(source, job)
            result.strategy = outcome.strategy
            self._process(source, outcome.events, result, job, log)
        except DeferredError:
            raise
        except JobTimeout as exc:
            self._record_failure(source, str(exc), log)
            raise
        except HarvesterError as exc:
            result.retryable = exc.retryable
            self._record_failure(source, str(exc), log)
            return result.finish(error=str(exc))
        except Exception as exc:  # noqa: BLE001
            self._record_failure(source, f"Unexpected error: {exc}", log)
            log.exception("scrape_crashed")
            return result.finish(error=f"Unexpected error: {exc}")

        self.registry.record_success(
            source.id,
            etag=probe.etag if probe else None,
            last_modified=probe.last_modified if probe else None,
        )
        result.finish()
        log.info("scrape_completed", **result.to_dict())
        return result

    def _check_config(self, source: EventSource) -> None:
        if source.source_type is SourceType.MANUAL:
            raise ConfigurationError(f"Source {source.id} is manual and cannot be scraped")
        if source.source_type is SourceType.WEBSITE and source.scrape_config.selectors is None:
            raise ConfigurationError(f"Source {source.id} has no selectors configured")

    def _probe(
        self, source: EventSource, job: JobContext | None, log: structlog.BoundLogger
    ) -> ProbeResult | None:
        # First scrape probes unconditionally to learn the validators
        has_validators = bool(source.etag or source.last_modified)
        if self.fetcher is None or not source.scrape_config.freshness_check:
            return None
        if not has_validators and source.last_scraped_at is not None:
            return None
        try:
            return self.fetcher.probe(source, job)
        except (DeferredError, JobTimeout):
            raise
        except HarvesterError as exc:
            log.warning("freshness_probe_failed", error=str(exc))
            return None

    def _record_failure(self, source: EventSource, message: str, log: structlog.BoundLogger) -> None:
        log.error("scrape_failed", error=message)
        try:
            self.registry.record_failure(source.id, message)
        except HarvesterError as exc:
            log.error("failure_not_recorded", error=str(exc))

    # ------------------------------------------------------------------
    # Record pipeline
    # ------------------------------------------------------------------
    def _process(
        self,
        source: EventSource,
        events: list[RawEventData],
        result: ScrapeJobResult,
        job: JobContext | None,
        log: structlog.BoundLogger,
    ) -> None:
        seen: dict[str, str] = {}
        total = len(events)
        for index, raw in enumerate(events, start=1):
            if job is not None:
                job.check()
            verdict = validate_event(raw, now=self._clock())
            if not verdict.is_valid:
                result.events_skipped += 1
                log.debug("record_rejected", title=raw.title, reason=verdict.reason)
                continue
            event = normalize_event_data(raw)
            event = replace(event, source_id=event.source_id or source.id)
            event = replace(event, scrape_hash=generate_event_hash(event))
            with self._persist_lock:
                decision = self._decide_and_write(source, event, seen, log)
            if decision is Decision.CREATED:
                result.events_created += 1
            elif decision is Decision.UPDATED:
                result.events_updated += 1
            else:
                result.events_skipped += 1
            if job is not None:
                job.progress(index * 100 // total)

    def _decide_and_write(
        self,
        source: EventSource,
        event: RawEventData,
        seen: dict[str, str],
        log: structlog.BoundLogger,
    ) -> Decision:
        config = self.dedup_config
        if is_exact_duplicate(event.scrape_hash, seen) or self.store.find_by_hash(event.scrape_hash):
            log.debug("exact_duplicate", title=event.title, hash=event.scrape_hash)
            return Decision.SKIPPED

        start = parse_event_time(event.start_time)
        window = timedelta(hours=config.candidate_window_hours)
        candidates = self.store.find_candidates_in_window(
            start - window if start else None,
            start + window if start else None,
            source.category,
            config.max_candidates,
            near=start,
        )
        existing = {candidate.event_id: candidate.event for candidate in candidates}
        ranked = rank_candidates(event, existing, config)
        matches = [match for match in ranked if qualifies(match, config)] if config.enable_fuzzy_matching else []

        if matches:
            best = matches[0]
            merged = merge_event_data(existing[best.event_id], event)
            merged = replace(merged, scrape_hash=generate_event_hash(merged))
            self.store.update(best.event_id, merged, aliases=[event.scrape_hash])
            seen[event.scrape_hash] = best.event_id
            log.info(
                "event_merged",
                event_id=best.event_id,
                similarity=best.similarity,
                match_type=best.match_type.value,
            )
            return Decision.UPDATED

        if ranked and ranked[0].similarity >= config.combined_similarity_threshold - config.near_miss_margin:
            log.info(
                "near_miss",
                title=event.title,
                event_id=ranked[0].event_id,
                similarity=ranked[0].similarity,
                threshold=config.combined_similarity_threshold,
            )
        event_id = self.store.create(event, source.category)
        seen[event.scrape_hash] = event_id
        return Decision.CREATED

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    def scrape_all(self, job: JobContext | None = None) -> BatchResult:
        due = self.registry.sources_due(self._clock())
        self.logger.info("batch_started", sources=len(due))
        if not due:
            return BatchResult()
        pool = self.thread_pool.get("batch", self.batch_workers)
        child = job.child() if job is not None else None
        futures = {pool.submit(self._scrape_isolated, source.id, child): source.id for source in due}
        results: dict[str, ScrapeJobResult] = {}
        timeout = job.remaining() if job is not None else None
        try:
            for done, future in enumerate(as_completed(futures, timeout=timeout), start=1):
                results[futures[future]] = future.result()
                if job is not None:
                    job.progress(done * 100 // len(futures))
        except FuturesTimeout as exc:
            for future in futures:
                future.cancel()
            raise JobTimeout(f"Batch exceeded its deadline with {len(futures) - len(results)} sources pending") from exc
        batch = BatchResult(results=[results[source.id] for source in due])
        self.logger.info("batch_completed", **batch.summary())
        return batch

    def _scrape_isolated(self, source_id: str, job: JobContext | None) -> ScrapeJobResult:
        try:
            return self.scrape_source(source_id, job)
        except DeferredError as exc:
            self.logger.info("batch_source_deferred", source=source_id, reason=str(exc))
            return ScrapeJobResult(source_id=source_id).finish(error=f"deferred: {exc}")
        except ConfigurationError as exc:
            return ScrapeJobResult(source_id=source_id, retryable=False).finish(error=str(exc))

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------
    def test_source(self, source_id: str) -> dict[str, Any]:
        """Run the extraction chain for one source without persisting anything."""

        source = self.registry.get(source_id)
        self._check_config(source)
        outcome = self.chain.run(source)
        now = self._clock()
        verdicts = [validate_event(event, now=now) for event in outcome.events]
        valid = [
            normalize_event_data(event).to_dict()
            for event, verdict in zip(outcome.events, verdicts)
            if verdict.is_valid
        ]
        return {
            "source_id": source.id,
            "strategy": outcome.strategy,
            "events_found": len(outcome.events),
            "valid": len(valid),
            "rejected": rejection_summary(verdicts),
            "sample": valid[:5],
            "failures": [f"{name}: {exc}" for name, exc in outcome.failures],
        }

    # ------------------------------------------------------------------
    def _source_lock(self, source_id: str) -> Lock:
        with self._source_locks_guard:
            lock = self._source_locks.get(source_id)
            if lock is None:
                lock = self._source_locks[source_id] = Lock()
            return lock

    def close(self) -> None:
        self.chain.close()
        if self.fetcher is not None:
            self.fetcher.close()


__all__ = ["Decision", "ScrapeOrchestrator"]
