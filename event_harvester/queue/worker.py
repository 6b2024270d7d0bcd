"""Bounded pool of worker threads draining the job queue."""

from __future__ import annotations

from concurrent.futures import Future, wait
from functools import partial
from threading import Event, Lock
from typing import Any, Callable, Optional

import structlog

from ..context import JobContext
from ..engine.thread_pool import ThreadPoolManager
from ..errors import BrokerUnavailable, DeferredError, HarvesterError
from ..infra.broker import BrokerConnection
from .handlers import JobHandlers
from .job_queue import JobQueue
from .jobs import Job


class WorkerPool:
    """Run ``concurrency`` claim-execute loops on the ``workers`` thread pool.

    Each claimed job runs with a :class:`JobContext` whose deadline is the
    configured job timeout. Outcomes map onto the queue as follows: a
    :class:`DeferredError` defers, any other :class:`HarvesterError` fails
    with its ``retryable`` flag, an unexpected exception fails retryably and
    anything returned completes the job.

    Outcome writes that hit a lost broker are retried after a reconnect, up
    to ``outcome_attempts`` times, before the job is left for
    :meth:`JobQueue.recover_stalled`.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: JobHandlers,
        concurrency: int = 3,
        job_timeout: float | None = 600.0,
        poll_interval: float = 1.0,
        thread_pool: ThreadPoolManager | None = None,
        broker: BrokerConnection | None = None,
        outcome_attempts: int = 3,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.queue = queue
        self.handlers = handlers
        self.concurrency = max(1, concurrency)
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval
        self.thread_pool = thread_pool or ThreadPoolManager()
        self.broker = broker or queue.broker
        self.outcome_attempts = max(1, outcome_attempts)
        self.logger = logger or structlog.get_logger("event_harvester.worker")
        self._stop = Event()
        self._loops: list[Future] = []
        self._active: dict[str, JobContext] = {}
        self._active_lock = Lock()
        self._reconnect_lock = Lock()

    @property
    def running(self) -> bool:
        return any(not loop.done() for loop in self._loops)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        recovered = self.queue.recover_stalled()
        pool = self.thread_pool.get("workers", self.concurrency)
        self._loops = [pool.submit(self._loop, index) for index in range(self.concurrency)]
        self.logger.info("workers_started", concurrency=self.concurrency, recovered=recovered)

    def stop(self, wait_for_jobs: bool = True, timeout: float | None = None) -> None:
        self._stop.set()
        if not wait_for_jobs:
            with self._active_lock:
                for context in self._active.values():
                    context.cancelled.set()
        if self._loops:
            wait(self._loops, timeout=timeout)
            self.logger.info("workers_stopped")
        self._loops = []

    def wait_stopped(self, timeout: float | None = None) -> bool:
        return self._stop.wait(timeout)

    def active_jobs(self) -> list[str]:
        with self._active_lock:
            return sorted(self._active)

    # ------------------------------------------------------------------
    def run_once(self) -> Optional[Job]:
        """Claim and execute a single job; return it in its final state."""

        job = self.queue.claim_next()
        if job is None:
            return None
        self._execute(job)
        return self.queue.get(job.id)

    def _loop(self, index: int) -> None:
        log = self.logger.bind(worker=index)
        while not self._stop.is_set():
            try:
                job = self.run_once()
            except BrokerUnavailable as exc:
                log.error("broker_unavailable", error=str(exc))
                self._reconnect(log)
                continue
            except Exception:  # noqa: BLE001
                log.exception("worker_loop_error")
                self._stop.wait(self.poll_interval)
                continue
            if job is None:
                self._stop.wait(self.poll_interval)

    def _reconnect(self, log: structlog.BoundLogger) -> None:
        try:
            with self._reconnect_lock:
                self.broker.reconnect()
        except BrokerUnavailable as exc:
            log.error("broker_reconnect_failed", error=str(exc))
            self._stop.wait(self.poll_interval)
        else:
            log.info("broker_reconnected")

    def _execute(self, job: Job) -> None:
        context = JobContext(
            job_id=job.id,
            timeout=self.job_timeout,
            on_progress=lambda percent: self.queue.update_progress(job.id, percent),
        )
        log = self.logger.bind(job=job.id, kind=job.kind, attempt=job.attempts)
        log.info("job_started")
        with self._active_lock:
            self._active[job.id] = context
        outcome: Callable[[], Any]
        try:
            result: Any = self.handlers.dispatch(job.payload, context)
        except DeferredError as exc:
            outcome = partial(self.queue.defer, job.id, exc.retry_after, str(exc))
        except HarvesterError as exc:
            log.warning("job_error", error=str(exc), retryable=exc.retryable)
            outcome = partial(self.queue.fail, job.id, str(exc), retryable=exc.retryable)
        except Exception as exc:  # noqa: BLE001
            log.exception("job_crashed")
            outcome = partial(self.queue.fail, job.id, f"Unexpected error: {exc}", retryable=True)
        else:
            outcome = partial(self.queue.complete, job.id, result)
        finally:
            with self._active_lock:
                self._active.pop(job.id, None)
        self._record_outcome(outcome, log)

    def _record_outcome(self, outcome: Callable[[], Any], log: structlog.BoundLogger) -> None:
        for attempt in range(1, self.outcome_attempts + 1):
            try:
                outcome()
                return
            except BrokerUnavailable as exc:
                log.error("outcome_not_recorded", attempt=attempt, error=str(exc))
                if attempt == self.outcome_attempts:
                    raise
                self._reconnect(log)


__all__ = ["WorkerPool"]
