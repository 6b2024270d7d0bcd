from __future__ import annotations

from datetime import timedelta

import pytest

from event_harvester.config import MonitoringConfig
from event_harvester.monitoring import Monitor
from event_harvester.queue import JobQueue, ScrapeSource


@pytest.fixture
def monitor(job_queue: JobQueue, memory_store, registry, clock) -> Monitor:
    return Monitor(
        job_queue,
        memory_store,
        registry,
        MonitoringConfig(error_rate_threshold=0.5, failed_jobs_per_hour=2, max_waiting_jobs=3),
        clock=clock,
    )


def _finish(queue: JobQueue, clock, result=None, error: str | None = None, seconds: float = 4.0) -> None:  # noqa: ANN001
    job = queue.enqueue(ScrapeSource("a"), max_attempts=1)
    queue.claim_next()
    clock.advance(seconds=seconds)
    if error is None:
        queue.complete(job.id, result)
    else:
        queue.fail(job.id, error)


def test_metrics_aggregate_todays_jobs(monitor: Monitor, job_queue: JobQueue, clock, registry, sample_source) -> None:
    clock.now = clock.now.replace(hour=12, minute=0)
    registry.create(sample_source(id="city-events"))
    _finish(job_queue, clock, result={"events_found": 5}, seconds=2)
    _finish(job_queue, clock, result={"summary": {"events_found": 7}}, seconds=6)
    _finish(job_queue, clock, error="boom", seconds=4)

    metrics = monitor.collect_metrics()

    assert metrics.jobs_today == 3
    assert metrics.jobs_failed_today == 1
    assert metrics.events_scraped_today == 12
    assert metrics.error_rate == pytest.approx(0.3333)
    assert metrics.failed_jobs_last_hour == 1
    assert metrics.average_duration_seconds == pytest.approx(4.0)
    assert metrics.sources["total"] == 1
    assert metrics.queue["completed"] == 2
    assert metrics.healthy


def test_yesterdays_jobs_are_ignored(monitor: Monitor, job_queue: JobQueue, clock) -> None:
    clock.now = clock.now.replace(hour=23, minute=0)
    _finish(job_queue, clock, error="boom")
    clock.advance(hours=2)
    metrics = monitor.collect_metrics()
    assert metrics.jobs_today == 0
    assert metrics.error_rate == 0.0


def test_health_check_flags_each_threshold_inclusively(monitor: Monitor, job_queue: JobQueue, clock) -> None:
    clock.now = clock.now.replace(hour=12, minute=0)
    _finish(job_queue, clock, result={})
    _finish(job_queue, clock, error="boom")
    _finish(job_queue, clock, error="boom")
    _finish(job_queue, clock, result={})
    for name in "xyz":
        job_queue.enqueue(ScrapeSource(name))

    report = monitor.health_check()

    assert not report.healthy
    assert len(report.issues) == 3
    assert any("waiting" in issue for issue in report.issues)
    assert any("last hour" in issue for issue in report.issues)
    assert any("Error rate 50%" in issue for issue in report.issues)
    payload = report.to_dict()
    assert payload["healthy"] is False
    assert payload["metrics"]["queue"]["waiting"] == 3


def test_failures_age_out_of_the_hourly_window(monitor: Monitor, job_queue: JobQueue, clock) -> None:
    clock.now = clock.now.replace(hour=8, minute=0)
    _finish(job_queue, clock, error="boom")
    _finish(job_queue, clock, error="boom")
    for _ in range(6):
        _finish(job_queue, clock, result={})
    assert monitor.health_check().healthy is False

    clock.advance(hours=1, minutes=1)
    report = monitor.health_check()
    assert report.healthy
    assert report.metrics.failed_jobs_last_hour == 0
    assert report.metrics.jobs_failed_today == 2


def test_store_counts_feed_event_metrics(monitor: Monitor, memory_store, make_event, clock) -> None:
    memory_store.create(make_event(scrape_hash="h1"), "music")
    metrics = monitor.collect_metrics(now=clock.now + timedelta(minutes=1))
    assert metrics.events_created_today == 1
