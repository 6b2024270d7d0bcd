from __future__ import annotations

import time

import pytest

from event_harvester.engine import ThreadPoolManager
from event_harvester.errors import BrokerUnavailable, ConfigurationError, ExtractionFailure, RateLimitExceeded
from event_harvester.queue import BulkSchedule, JobHandlers, JobQueue, ScrapeAll, ScrapeSource, WorkerPool
from event_harvester.records import JobStatus


class ScriptedHandlers:
    """Dispatch stand-in: returns or raises whatever the test scripted."""

    def __init__(self, outcome=None) -> None:  # noqa: ANN001
        self.outcome = outcome if outcome is not None else {"ok": True}
        self.seen = []

    def dispatch(self, payload, context):  # noqa: ANN001
        self.seen.append(payload)
        context.progress(50)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


def _pool(job_queue: JobQueue, handlers, **kwargs) -> WorkerPool:  # noqa: ANN001
    return WorkerPool(job_queue, handlers, concurrency=1, poll_interval=0.01, **kwargs)


def test_run_once_completes_job(job_queue: JobQueue) -> None:
    job_queue.enqueue(ScrapeSource("a"))
    handlers = ScriptedHandlers({"events_created": 2})
    finished = _pool(job_queue, handlers).run_once()
    assert finished.status is JobStatus.COMPLETED
    assert finished.result == {"events_created": 2}
    assert handlers.seen == [ScrapeSource("a")]


def test_run_once_on_empty_queue(job_queue: JobQueue) -> None:
    assert _pool(job_queue, ScriptedHandlers()).run_once() is None


def test_retryable_errors_are_requeued(job_queue: JobQueue) -> None:
    job_queue.enqueue(ScrapeSource("a"))
    finished = _pool(job_queue, ScriptedHandlers(ExtractionFailure("all strategies failed"))).run_once()
    assert finished.status is JobStatus.QUEUED
    assert finished.attempts == 1
    assert finished.error == "all strategies failed"


def test_permanent_errors_fail_immediately(job_queue: JobQueue) -> None:
    job_queue.enqueue(ScrapeSource("a"))
    finished = _pool(job_queue, ScriptedHandlers(ConfigurationError("no selectors"))).run_once()
    assert finished.status is JobStatus.FAILED


def test_unexpected_errors_are_retryable(job_queue: JobQueue) -> None:
    job_queue.enqueue(ScrapeSource("a"))
    finished = _pool(job_queue, ScriptedHandlers(KeyError("boom"))).run_once()
    assert finished.status is JobStatus.QUEUED
    assert finished.error.startswith("Unexpected error")


def test_deferral_keeps_attempt_budget(job_queue: JobQueue, clock) -> None:
    job_queue.enqueue(ScrapeSource("a"))
    finished = _pool(job_queue, ScriptedHandlers(RateLimitExceeded("429", retry_after=120))).run_once()
    assert finished.status is JobStatus.QUEUED
    assert finished.attempts == 0
    assert (finished.run_at - clock.now).total_seconds() == pytest.approx(120)


def test_progress_is_reported_to_queue(job_queue: JobQueue) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))

    class Observing(ScriptedHandlers):
        def dispatch(self, payload, context):  # noqa: ANN001
            result = super().dispatch(payload, context)
            self.progress_seen = job_queue.get(job.id).progress
            return result

    handlers = Observing()
    _pool(job_queue, handlers).run_once()
    assert handlers.progress_seen == 50


def test_background_loops_drain_the_queue(job_queue: JobQueue) -> None:
    for name in "abc":
        job_queue.enqueue(ScrapeSource(name))
    threads = ThreadPoolManager(2)
    pool = WorkerPool(job_queue, ScriptedHandlers(), concurrency=2, poll_interval=0.01, thread_pool=threads)
    pool.start()
    try:
        deadline = time.monotonic() + 5
        while job_queue.stats()["completed"] < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert pool.running
    finally:
        pool.stop(timeout=5)
        threads.shutdown(wait=True)
    assert job_queue.stats()["completed"] == 3
    assert not pool.running
    assert pool.active_jobs() == []


def test_start_recovers_stalled_jobs(job_queue: JobQueue) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))
    job_queue.claim_next()
    threads = ThreadPoolManager(1)
    pool = WorkerPool(job_queue, ScriptedHandlers(), concurrency=1, poll_interval=0.01, thread_pool=threads)
    pool.start()
    try:
        deadline = time.monotonic() + 5
        while job_queue.get(job.id).status is not JobStatus.COMPLETED and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        pool.stop(timeout=5)
        threads.shutdown(wait=True)
    finished = job_queue.get(job.id)
    assert finished.status is JobStatus.COMPLETED
    assert finished.attempts == 2


def _failing_first(monkeypatch, target, name: str, times: int = 1) -> list[int]:  # noqa: ANN001
    """Make ``target.name`` raise BrokerUnavailable for its first ``times`` calls."""

    original = getattr(target, name)
    calls = []

    def _flaky(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        calls.append(1)
        if len(calls) <= times:
            raise BrokerUnavailable("queue database went away")
        return original(*args, **kwargs)

    monkeypatch.setattr(target, name, _flaky)
    return calls


def _counting_reconnects(monkeypatch, broker) -> list[int]:  # noqa: ANN001
    original = broker.reconnect
    reconnects = []

    def _reconnect() -> None:
        reconnects.append(1)
        original()

    monkeypatch.setattr(broker, "reconnect", _reconnect)
    return reconnects


def test_completion_is_rewritten_after_reconnect(job_queue: JobQueue, broker, monkeypatch) -> None:
    job_queue.enqueue(ScrapeSource("a"))
    _failing_first(monkeypatch, job_queue, "complete")
    reconnects = _counting_reconnects(monkeypatch, broker)

    finished = _pool(job_queue, ScriptedHandlers({"events_created": 1})).run_once()

    assert finished.status is JobStatus.COMPLETED
    assert finished.result == {"events_created": 1}
    assert reconnects == [1]
    assert job_queue.stats()["active"] == 0


def test_failure_outcome_survives_broker_loss(job_queue: JobQueue, broker, monkeypatch) -> None:
    job_queue.enqueue(ScrapeSource("a"))
    _failing_first(monkeypatch, job_queue, "fail", times=2)
    reconnects = _counting_reconnects(monkeypatch, broker)

    finished = _pool(job_queue, ScriptedHandlers(ConfigurationError("no selectors"))).run_once()

    assert finished.status is JobStatus.FAILED
    assert len(reconnects) == 2


def test_unrecorded_outcome_is_left_for_recovery(job_queue: JobQueue, monkeypatch) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))
    _failing_first(monkeypatch, job_queue, "complete", times=10)
    pool = _pool(job_queue, ScriptedHandlers(), outcome_attempts=2)

    with pytest.raises(BrokerUnavailable):
        pool.run_once()

    assert job_queue.get(job.id).status is JobStatus.ACTIVE
    assert job_queue.recover_stalled() == 1
    assert job_queue.get(job.id).status is JobStatus.QUEUED


def test_loop_reconnects_and_keeps_draining(job_queue: JobQueue, broker, monkeypatch) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))
    claims = _failing_first(monkeypatch, job_queue, "claim_next")
    reconnects = _counting_reconnects(monkeypatch, broker)
    handlers = ScriptedHandlers()
    threads = ThreadPoolManager(1)
    pool = WorkerPool(job_queue, handlers, concurrency=1, poll_interval=0.01, thread_pool=threads)
    pool.start()
    try:
        deadline = time.monotonic() + 5
        # the queue is only read once the worker is past its reconnect
        while not handlers.seen and time.monotonic() < deadline:
            time.sleep(0.01)
        while job_queue.get(job.id).status is not JobStatus.COMPLETED and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        pool.stop(timeout=5)
        threads.shutdown(wait=True)
    assert job_queue.get(job.id).status is JobStatus.COMPLETED
    assert len(claims) >= 2
    assert reconnects


# ---------------------------------------------------------------------------
# Real handlers
# ---------------------------------------------------------------------------
def test_bulk_schedule_enqueues_active_sources(job_queue: JobQueue, registry, sample_source, clock) -> None:
    registry.create(sample_source(id="one"))
    registry.create(sample_source(id="two"))
    registry.create(sample_source(id="off", is_active=False))
    registry.create(sample_source(id="hand", source_type="manual"))
    handlers = JobHandlers(orchestrator=None, registry=registry, queue=job_queue, monitor=None)  # type: ignore[arg-type]

    job_queue.enqueue(BulkSchedule(delay_minutes=10))
    finished = _pool(job_queue, handlers).run_once()

    assert finished.status is JobStatus.COMPLETED
    assert finished.result["scheduled"] == 2
    scheduled = [job_queue.get(job_id) for job_id in finished.result["job_ids"]]
    assert {job.payload.source_id for job in scheduled} == {"one", "two"}
    assert all((job.run_at - clock.now).total_seconds() == pytest.approx(600) for job in scheduled)


def test_scrape_handlers_use_orchestrator(
    job_queue: JobQueue, registry, sample_source, make_orchestrator, stub_strategy, make_event
) -> None:
    registry.create(sample_source(id="good"))
    registry.create(sample_source(id="bad", scrape_config={"selectors": None, "freshness_check": False}))
    orchestrator = make_orchestrator([stub_strategy("http", events=[make_event()])])
    handlers = JobHandlers(orchestrator, registry, job_queue, monitor=None)  # type: ignore[arg-type]
    pool = _pool(job_queue, handlers)

    job_queue.enqueue(ScrapeSource("good"))
    good = pool.run_once()
    assert good.status is JobStatus.COMPLETED
    assert good.result["events_created"] == 1

    job_queue.enqueue(ScrapeSource("bad"))
    bad = pool.run_once()
    assert bad.status is JobStatus.FAILED
    assert "no selectors" in bad.error

    # Only the failing source is still due; the batch itself completes
    job_queue.enqueue(ScrapeAll())
    batch = pool.run_once()
    assert batch.status is JobStatus.COMPLETED
    assert batch.result["summary"]["sources"] == 1
    assert batch.result["summary"]["failed"] == 1
    assert batch.result["results"][0]["source_id"] == "bad"
