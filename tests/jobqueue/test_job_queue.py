from __future__ import annotations

import pytest

from event_harvester.queue import HealthCheck, JobQueue, Priority, ScrapeAll, ScrapeSource
from event_harvester.records import JobStatus


def test_claims_by_priority_then_fifo(job_queue: JobQueue, clock) -> None:
    low = job_queue.enqueue(HealthCheck(), priority=Priority.LOW)
    first = job_queue.enqueue(ScrapeSource("a"))
    second = job_queue.enqueue(ScrapeSource("b"))
    urgent = job_queue.enqueue(ScrapeSource("c"), priority=Priority.HIGH)

    claimed = [job_queue.claim_next().id for _ in range(4)]
    assert claimed == [urgent.id, first.id, second.id, low.id]
    assert job_queue.claim_next() is None


def test_claim_marks_active_and_counts_attempt(job_queue: JobQueue) -> None:
    job_queue.enqueue(ScrapeSource("a"))
    job = job_queue.claim_next()
    assert job.status is JobStatus.ACTIVE
    assert job.attempts == 1
    assert job.started_at is not None
    assert job.payload == ScrapeSource("a")


def test_delayed_jobs_wait_for_run_at(job_queue: JobQueue, clock) -> None:
    job_queue.enqueue(ScrapeAll(), delay_seconds=60)
    assert job_queue.claim_next() is None
    assert job_queue.stats()["delayed"] == 1

    clock.advance(seconds=61)
    assert job_queue.stats()["waiting"] == 1
    assert job_queue.claim_next() is not None


def test_complete_stores_result(job_queue: JobQueue, clock) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))
    job_queue.claim_next()
    clock.advance(seconds=5)
    job_queue.complete(job.id, {"events_created": 3})

    done = job_queue.get(job.id)
    assert done.status is JobStatus.COMPLETED
    assert done.result == {"events_created": 3}
    assert done.progress == 100
    assert done.duration_seconds == pytest.approx(5.0)


def test_failures_back_off_exponentially_until_exhausted(job_queue: JobQueue, clock) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))

    job_queue.claim_next()
    retried = job_queue.fail(job.id, "HTTP 500")
    assert retried.status is JobStatus.QUEUED
    assert (retried.run_at - clock.now).total_seconds() == pytest.approx(2.0)

    clock.advance(seconds=2)
    job_queue.claim_next()
    retried = job_queue.fail(job.id, "HTTP 500")
    assert (retried.run_at - clock.now).total_seconds() == pytest.approx(4.0)

    clock.advance(seconds=4)
    assert job_queue.claim_next().attempts == 3
    failed = job_queue.fail(job.id, "HTTP 500")
    assert failed.status is JobStatus.FAILED
    assert failed.error == "HTTP 500"
    assert failed.finished_at == clock.now


def test_non_retryable_failure_is_final(job_queue: JobQueue) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))
    job_queue.claim_next()
    assert job_queue.fail(job.id, "bad config", retryable=False).status is JobStatus.FAILED
    assert job_queue.fail("missing", "x") is None


def test_backoff_delay(job_queue: JobQueue) -> None:
    assert [job_queue.backoff_delay(attempt) for attempt in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]


def test_defer_returns_the_attempt(job_queue: JobQueue, clock) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))
    job_queue.claim_next()
    job_queue.defer(job.id, 30, "rate limited")

    deferred = job_queue.get(job.id)
    assert deferred.status is JobStatus.QUEUED
    assert deferred.attempts == 0
    assert deferred.error == "rate limited"
    assert job_queue.claim_next() is None

    clock.advance(seconds=30)
    assert job_queue.claim_next().attempts == 1


def test_progress_updates(job_queue: JobQueue) -> None:
    job = job_queue.enqueue(ScrapeSource("a"))
    job_queue.claim_next()
    job_queue.update_progress(job.id, 40)
    assert job_queue.get(job.id).progress == 40


def test_stats_and_pending_count(job_queue: JobQueue) -> None:
    done = job_queue.enqueue(ScrapeSource("a"))
    broken = job_queue.enqueue(ScrapeSource("b"), max_attempts=1)
    job_queue.enqueue(ScrapeSource("c"))
    job_queue.enqueue(ScrapeSource("d"), delay_seconds=600)

    job_queue.claim_next()
    job_queue.complete(done.id)
    job_queue.claim_next()
    job_queue.fail(broken.id, "boom")
    job_queue.claim_next()

    assert job_queue.stats() == {
        "waiting": 0,
        "delayed": 1,
        "active": 1,
        "completed": 1,
        "failed": 1,
        "total": 4,
    }
    assert job_queue.pending_count() == 2


def test_list_jobs_filters_and_pages(job_queue: JobQueue, clock) -> None:
    ids = []
    for name in "abc":
        ids.append(job_queue.enqueue(ScrapeSource(name)).id)
        clock.advance(seconds=1)
    assert [job.id for job in job_queue.list_jobs()] == list(reversed(ids))
    assert [job.id for job in job_queue.list_jobs(limit=1, offset=1)] == [ids[1]]
    assert job_queue.list_jobs(status="completed") == []
    assert len(job_queue.list_jobs(status=JobStatus.QUEUED)) == 3


def test_clean_removes_old_finished_jobs(job_queue: JobQueue, clock) -> None:
    old = job_queue.enqueue(ScrapeSource("a"))
    job_queue.claim_next()
    job_queue.complete(old.id)
    clock.advance(hours=2)
    recent = job_queue.enqueue(ScrapeSource("b"))
    job_queue.claim_next()
    job_queue.complete(recent.id)

    assert job_queue.clean(grace_seconds=3600) == 1
    assert job_queue.get(old.id) is None
    assert job_queue.get(recent.id) is not None
    assert job_queue.clean(grace_seconds=0, status="failed") == 0
    with pytest.raises(ValueError):
        job_queue.clean(grace_seconds=0, status="queued")


def test_retry_failed_and_remove(job_queue: JobQueue) -> None:
    job = job_queue.enqueue(ScrapeSource("a"), max_attempts=1)
    job_queue.claim_next()
    job_queue.fail(job.id, "boom")

    assert job_queue.retry_failed() == 1
    requeued = job_queue.get(job.id)
    assert requeued.status is JobStatus.QUEUED
    assert requeued.attempts == 0
    assert requeued.finished_at is None

    assert job_queue.remove(job.id)
    assert not job_queue.remove(job.id)


def test_recover_stalled_jobs(job_queue: JobQueue) -> None:
    retriable = job_queue.enqueue(ScrapeSource("a"))
    exhausted = job_queue.enqueue(ScrapeSource("b"), max_attempts=1)
    job_queue.claim_next()
    job_queue.claim_next()

    assert job_queue.recover_stalled() == 1
    assert job_queue.get(retriable.id).status is JobStatus.QUEUED
    stalled = job_queue.get(exhausted.id)
    assert stalled.status is JobStatus.FAILED
    assert stalled.error == "stalled"


def test_finished_since(job_queue: JobQueue, clock) -> None:
    early = job_queue.enqueue(ScrapeSource("a"))
    job_queue.claim_next()
    job_queue.complete(early.id)
    clock.advance(hours=1)
    marker = clock.now
    late = job_queue.enqueue(ScrapeSource("b"), max_attempts=1)
    job_queue.claim_next()
    job_queue.fail(late.id, "boom")

    assert [job.id for job in job_queue.finished_since(marker)] == [late.id]


def test_jobs_survive_reopening(broker, clock) -> None:
    queue = JobQueue(broker, clock=clock)
    job = queue.enqueue(ScrapeSource("a"), priority=Priority.HIGH)
    broker.reconnect()
    reopened = JobQueue(broker, clock=clock)
    assert reopened.get(job.id).priority == Priority.HIGH
