"""Typer CLI entrypoint for Event Harvester."""

from __future__ import annotations

import json
import signal
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import (
    ConfigRepository,
    EventSelectors,
    EventSource,
    GlobalConfig,
    ScrapeConfig,
    SourceType,
)
from .engine import Fetcher, ThreadPoolManager
from .engine.extractors import FallbackChain, build_strategies
from .errors import HarvesterError
from .infra import BrokerConnection, RateLimiter, SQLiteManager, UserAgentPool
from .logging_conf import configure_logging, source_log_path, tail_log
from .monitoring import Monitor
from .orchestrator import ScrapeOrchestrator
from .queue import Job, JobHandlers, JobQueue, WorkerPool
from .records import JobStatus, ScrapeJobResult
from .registry import SourceRegistry
from .scheduler import ScrapeScheduler
from .store import EventStore, SQLiteEventStore

app = typer.Typer(
    help="Event Harvester command line",
    no_args_is_help=True,
    rich_markup_mode=None,
)
source_app = typer.Typer(name="source", help="Manage event sources", no_args_is_help=True, rich_markup_mode=None)
scrape_app = typer.Typer(name="scrape", help="Trigger scrapes", no_args_is_help=True, rich_markup_mode=None)
job_app = typer.Typer(name="job", help="Inspect and manage queued jobs", no_args_is_help=True, rich_markup_mode=None)
worker_app = typer.Typer(name="worker", help="Run the job workers", no_args_is_help=True, rich_markup_mode=None)

console = Console()


@dataclass
class AppState:
    config: GlobalConfig
    repository: ConfigRepository
    registry: SourceRegistry
    store: EventStore
    broker: BrokerConnection
    queue: JobQueue
    orchestrator: ScrapeOrchestrator
    monitor: Monitor
    scheduler: ScrapeScheduler
    workers: WorkerPool
    thread_pool: ThreadPoolManager

    def close(self) -> None:
        self.scheduler.shutdown()
        self.workers.stop(wait_for_jobs=False, timeout=5)
        self.orchestrator.close()
        self.thread_pool.shutdown(wait=False)
        self.store.close()
        self.broker.close()


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    config = repository.load_global_config()
    locator = repository.locator

    manager = SQLiteManager(busy_timeout=config.queue.busy_timeout_seconds)
    broker = BrokerConnection(
        locator.resolve(config.queue.path),
        manager,
        retries=config.queue.connect_retries,
        backoff=config.queue.connect_backoff_seconds,
    ).open()
    queue = JobQueue(
        broker,
        default_attempts=config.queue.attempts,
        backoff_base=config.queue.backoff_base_seconds,
    )
    store = SQLiteEventStore(locator.resolve(config.events_db), manager)
    registry = SourceRegistry(repository, error_threshold=config.source_error_threshold)
    thread_pool = ThreadPoolManager(config.thread_pool_workers)

    fetcher = Fetcher(config, ua_pool=UserAgentPool.from_config(config), rate_limiter=RateLimiter())
    chain = FallbackChain(
        build_strategies(config, fetcher),
        thread_pool.get("extraction", config.extraction.extraction_workers),
        default_timeout=config.extraction.default_timeout_seconds,
    )
    orchestrator = ScrapeOrchestrator(
        registry,
        store,
        chain,
        config.deduplication,
        thread_pool,
        fetcher=fetcher,
        batch_workers=config.queue.concurrency,
    )
    monitor = Monitor(queue, store, registry, config.monitoring)
    scheduler = ScrapeScheduler(queue, registry, config.scheduler)
    workers = WorkerPool(
        queue,
        JobHandlers(orchestrator, registry, queue, monitor),
        concurrency=config.queue.concurrency,
        job_timeout=config.queue.job_timeout_seconds,
        poll_interval=config.queue.poll_interval_seconds,
        thread_pool=thread_pool,
        broker=broker,
    )
    return AppState(
        config=config,
        repository=repository,
        registry=registry,
        store=store,
        broker=broker,
        queue=queue,
        orchestrator=orchestrator,
        monitor=monitor,
        scheduler=scheduler,
        workers=workers,
        thread_pool=thread_pool,
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except HarvesterError as exc:
        console.print(f"Error: {exc}", style="red")
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------
def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%d %H:%M")
    return str(value)


def _render_sources_table(sources: Sequence[EventSource]) -> Table:
    table = Table(title=f"Sources ({len(sources)})", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Type", style="magenta")
    table.add_column("Category")
    table.add_column("Active")
    table.add_column("Errors", justify="right")
    table.add_column("Last scraped", style="green")
    table.add_column("Next scrape", style="yellow")
    for source in sources:
        table.add_row(
            source.id,
            source.name,
            source.source_type.value,
            _fmt(source.category),
            "yes" if source.is_active else "no",
            str(source.error_count),
            _fmt(source.last_scraped_at),
            _fmt(source.next_scrape_at),
        )
    return table


def _render_jobs_table(jobs: Iterable[Job]) -> Table:
    table = Table(title="Jobs", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind", style="magenta")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Run at", style="yellow")
    table.add_column("Error", style="red", overflow="fold")
    for job in jobs:
        table.add_row(
            job.id,
            job.kind,
            job.status.value,
            str(job.priority),
            f"{job.attempts}/{job.max_attempts}",
            f"{job.progress}%",
            _fmt(job.run_at),
            job.error or "",
        )
    return table


def _render_results_table(results: Sequence[ScrapeJobResult]) -> Table:
    table = Table(title="Scrape results", box=box.SIMPLE_HEAD)
    table.add_column("Source", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Strategy", style="magenta")
    table.add_column("Found", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Updated", justify="right", style="yellow")
    table.add_column("Skipped", justify="right")
    table.add_column("Error", style="red", overflow="fold")
    for result in results:
        status = "unchanged" if result.unchanged else result.status.value
        table.add_row(
            result.source_id,
            status,
            result.strategy or "-",
            str(result.events_found),
            str(result.events_created),
            str(result.events_updated),
            str(result.events_skipped),
            result.error_message or "",
        )
    return table


def _render_mapping(title: str, values: dict[str, Any]) -> Table:
    table = Table(title=title, box=box.MINIMAL_DOUBLE_HEAD, show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value", style="cyan")
    for key, value in values.items():
        rendered = json.dumps(value, default=str) if isinstance(value, (dict, list)) else _fmt(value)
        table.add_row(key, rendered)
    return table


app.add_typer(source_app, name="source")
app.add_typer(scrape_app, name="scrape")
app.add_typer(job_app, name="job")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    state = build_state(verbose)
    ctx.obj = state
    ctx.call_on_close(state.close)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------
@source_app.command("list", help="List configured sources.")
def source_list(
    ctx: typer.Context,
    active: Optional[bool] = typer.Option(None, "--active/--inactive", help="Filter by activation state."),
    source_type: Optional[SourceType] = typer.Option(None, "--type", help="Filter by source type."),
) -> None:
    state = _get_state(ctx)
    sources = state.registry.list_sources(active=active, source_type=source_type)
    if not sources:
        console.print("No sources configured. Use `event-harvester source add` to create one.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_sources_table(sources))


@source_app.command("add", help="Register a new source.")
def source_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name."),
    url: str = typer.Argument(..., help="Listing page or API endpoint."),
    source_type: SourceType = typer.Option(SourceType.WEBSITE, "--type", help="website, api or manual."),
    category: Optional[str] = typer.Option(None, "--category", help="Category used for duplicate matching."),
    title_selector: Optional[str] = typer.Option(None, "--title", help="CSS selector of the event title."),
    container: Optional[str] = typer.Option(None, "--container", help="CSS selector of one event card."),
    start_selector: Optional[str] = typer.Option(None, "--start-time", help="CSS selector of the start time."),
    location_selector: Optional[str] = typer.Option(None, "--location", help="CSS selector of the venue."),
    frequency_hours: float = typer.Option(24.0, "--frequency", help="Hours between scheduled scrapes."),
) -> None:
    state = _get_state(ctx)
    selectors = None
    if title_selector:
        selectors = EventSelectors(
            title=title_selector,
            container=container,
            start_time=start_selector,
            location=location_selector,
        )
    with _cli_errors():
        try:
            source = EventSource(
                name=name,
                url=url,
                source_type=source_type,
                category=category,
                scrape_config=ScrapeConfig(selectors=selectors),
                scrape_frequency_hours=frequency_hours,
            )
        except ValueError as exc:
            console.print(f"Invalid source: {exc}", style="red")
            raise typer.Exit(code=1)
        created = state.registry.create(source)
    console.print(f"Source `{created.name}` created with id {created.id}.", style="green")


@source_app.command("import", help="Create or update sources from a YAML/JSON file.")
def source_import(ctx: typer.Context, path: Path = typer.Argument(..., exists=True, dir_okay=False)) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        sources = state.registry.import_file(path)
    console.print(f"Imported {len(sources)} source(s) from {path}.", style="green")


@source_app.command("remove", help="Delete a source configuration.")
def source_remove(
    ctx: typer.Context,
    source_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        source = state.registry.get(source_id)
        if not yes and not typer.confirm(f"Delete source `{source.name}`?", default=False):
            console.print("Cancelled.", style="yellow")
            raise typer.Exit(code=0)
        state.registry.delete(source_id)
    console.print(f"Source `{source.name}` deleted.", style="green")


@source_app.command("activate", help="Re-enable a source.")
def source_activate(ctx: typer.Context, source_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        source = state.registry.activate(source_id)
    console.print(f"Source `{source.name}` activated.", style="green")


@source_app.command("deactivate", help="Disable a source.")
def source_deactivate(
    ctx: typer.Context,
    source_id: str = typer.Argument(...),
    reason: Optional[str] = typer.Option(None, "--reason"),
) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        source = state.registry.deactivate(source_id, reason)
    console.print(f"Source `{source.name}` deactivated.", style="green")


@source_app.command("reset-errors", help="Clear the error counter of a source.")
def source_reset_errors(ctx: typer.Context, source_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        source = state.registry.reset_error_count(source_id)
    console.print(f"Error count of `{source.name}` reset.", style="green")


@source_app.command("test", help="Dry-run extraction for a source without storing anything.")
def source_test(ctx: typer.Context, source_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        report = state.orchestrator.test_source(source_id)
    sample = report.pop("sample", [])
    console.print(_render_mapping("Extraction test", report))
    for event in sample:
        console.print_json(json.dumps(event, default=str, ensure_ascii=False))


@source_app.command("logs", help="Show the latest log lines of a source.")
def source_logs(
    ctx: typer.Context,
    source_id: str = typer.Argument(...),
    lines: int = typer.Option(50, "--lines", min=1, help="Number of lines to show."),
) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        state.registry.get(source_id)
    entries = tail_log(source_log_path(source_id), lines)
    if not entries:
        console.print(f"No log entries for {source_id}.", style="dim")
        raise typer.Exit(code=0)
    for entry in entries:
        console.print(entry, markup=False, highlight=False, soft_wrap=True)


# ---------------------------------------------------------------------------
# Scraping
# ---------------------------------------------------------------------------
@scrape_app.command("now", help="Queue a high-priority scrape of one source.")
def scrape_now(ctx: typer.Context, source_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        job = state.scheduler.scrape_now(source_id)
    console.print(f"Queued job {job.id} for source {source_id}.", style="green")


@scrape_app.command("run", help="Scrape in the foreground, bypassing the queue.")
def scrape_run(
    ctx: typer.Context,
    source_id: Optional[str] = typer.Argument(None, help="Source id; omit to scrape every due source."),
) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        if source_id:
            results = [state.orchestrator.scrape_source(source_id)]
        else:
            results = state.orchestrator.scrape_all().results
    if not results:
        console.print("No sources are due.", style="dim")
        raise typer.Exit(code=0)
    console.print(_render_results_table(results))
    if any(not result.succeeded for result in results):
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------
@job_app.command("list", help="List queued and finished jobs.")
def job_list(
    ctx: typer.Context,
    status: Optional[JobStatus] = typer.Option(None, "--status"),
    limit: int = typer.Option(20, "--limit"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        jobs = state.queue.list_jobs(status, limit=limit, offset=offset)
    if not jobs:
        console.print("No jobs.", style="dim")
        raise typer.Exit(code=0)
    console.print(_render_jobs_table(jobs))


@job_app.command("show", help="Show one job in detail.")
def job_show(ctx: typer.Context, job_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        job = state.queue.get(job_id)
    if job is None:
        console.print(f"Job {job_id} not found.", style="red")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(job.to_dict(), default=str, ensure_ascii=False))


@job_app.command("scrape-all", help="Queue a scrape of every due source.")
def job_scrape_all(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        job = state.scheduler.enqueue_scrape_all()
    if job is None:
        console.print("Queue is full; scrape-all not queued.", style="yellow")
        raise typer.Exit(code=1)
    console.print(f"Queued job {job.id}.", style="green")


@job_app.command("health", help="Queue a health check.")
def job_health(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        job = state.scheduler.enqueue_health_check()
    console.print(f"Queued job {job.id}.", style="green")


@job_app.command("bulk", help="Queue a scrape of every active source after a delay.")
def job_bulk(ctx: typer.Context, delay_minutes: float = typer.Option(0.0, "--delay", min=0.0)) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        job = state.scheduler.schedule_bulk(delay_minutes)
    console.print(f"Queued job {job.id}.", style="green")


@job_app.command("retry-failed", help="Requeue every failed job.")
def job_retry_failed(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        count = state.queue.retry_failed()
    console.print(f"Requeued {count} job(s).", style="green")


@job_app.command("clean", help="Remove finished jobs older than a grace period.")
def job_clean(
    ctx: typer.Context,
    status: JobStatus = typer.Option(JobStatus.COMPLETED, "--status"),
    grace_hours: float = typer.Option(24.0, "--grace-hours", min=0.0),
) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        try:
            removed = state.queue.clean(grace_hours * 3600, status)
        except ValueError as exc:
            console.print(str(exc), style="red")
            raise typer.Exit(code=1)
    console.print(f"Removed {removed} {status.value} job(s).", style="green")


# ---------------------------------------------------------------------------
# Workers and status
# ---------------------------------------------------------------------------
@worker_app.command("start", help="Run workers (and the scheduler) until interrupted.")
def worker_start(
    ctx: typer.Context,
    with_scheduler: bool = typer.Option(True, "--scheduler/--no-scheduler"),
) -> None:
    state = _get_state(ctx)

    def _stop(signum, frame) -> None:  # noqa: ANN001, ARG001
        state.workers.stop(wait_for_jobs=False)

    signal.signal(signal.SIGTERM, _stop)
    with _cli_errors():
        state.workers.start()
        if with_scheduler and state.config.scheduler.enabled:
            state.scheduler.start()
        console.print(
            f"Workers running (concurrency {state.workers.concurrency}). Press Ctrl+C to stop.", style="green"
        )
        try:
            while state.workers.running:
                state.workers.wait_stopped(1.0)
        except KeyboardInterrupt:
            console.print("Stopping workers...", style="yellow")
        finally:
            state.workers.stop(wait_for_jobs=True, timeout=state.config.queue.job_timeout_seconds)


@app.command("status", help="Show queue, source and scrape metrics.")
def status(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    with _cli_errors():
        report = state.monitor.health_check()
    metrics = report.metrics.to_dict()
    queue_stats = metrics.pop("queue")
    source_stats = metrics.pop("sources")
    console.print(_render_mapping("Scrape metrics", metrics))
    console.print(_render_mapping("Queue", queue_stats))
    console.print(_render_mapping("Sources", source_stats))
    if report.healthy:
        console.print("Healthy", style="green")
    else:
        for issue in report.issues:
            console.print(f"- {issue}", style="red")
        raise typer.Exit(code=1)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
