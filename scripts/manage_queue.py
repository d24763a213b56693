#!/usr/bin/env python3
"""
Command-line interface for the extraction job queue.

Operates on the SQLite job store (storage.db_path, default outs/vitae.db) so
that submitters, workers and operators in separate processes share one queue.

Commands:
    submit   - Submit a résumé text file for extraction
    status   - Show a job's status, live position and result
    cancel   - Cancel a queued job
    list     - List an owner's recent jobs
    stats    - Show queue statistics
    work     - Run the worker (drain once, or poll until interrupted)
    requeue  - Requeue jobs stuck in processing
    cleanup  - Delete old finished jobs
    events   - Show recent job events
    check    - Validate LLM provider configuration and connectivity
"""

import json
import time
from pathlib import Path
from typing import List, Optional

import typer
from omegaconf import DictConfig

from vitae.contexts.extraction.pipeline import ExtractionPipeline
from vitae.contexts.queueing.exceptions import JobNotFoundError
from vitae.contexts.queueing.logger import setup_queue_logger
from vitae.contexts.queueing.queue import ExtractionQueue
from vitae.service import build_stores
from vitae.utils.config import load_config
from vitae.utils.event_logging import configure_event_log, get_recent_events
from vitae.utils.exceptions import ConfigurationError, GenerationError
from vitae.utils.llm import get_provider, provider_requirements
from vitae.utils.timestamp import format_timestamp, now_exact, to_iso

app = typer.Typer(
    add_completion=False,
    help="Manage the extraction job queue (SQLite store)",
    invoke_without_command=True,
)

STATUS_COLORS = {
    "queued": typer.colors.BLUE,
    "processing": typer.colors.CYAN,
    "completed": typer.colors.GREEN,
    "failed": typer.colors.RED,
    "cancelled": typer.colors.YELLOW,
}


@app.callback()
def main(ctx: typer.Context):
    """Show help by default when no command is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _load(config_path: Optional[Path], overrides: Optional[List[str]] = None) -> DictConfig:
    config = load_config(config_path, overrides=["storage.backend=sqlite", *(overrides or [])])
    if config.logging.events_file:
        configure_event_log(Path(config.logging.events_file))
    return config


def _open_queue(config: DictConfig, with_pipeline: bool = False) -> ExtractionQueue:
    """Queue over the SQLite stores. Only the worker needs a pipeline (and LLM credentials)."""
    job_store, session_store, text_provider = build_stores(config)
    pipeline = None
    if with_pipeline:
        try:
            provider = get_provider(config=config)
        except ConfigurationError as e:
            typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        pipeline = ExtractionPipeline(provider, session_store, config=config)
    return ExtractionQueue(job_store, pipeline, text_provider, config=config)


ConfigOption = typer.Option(None, "--config", "-c", help="YAML config file (default: VITAE_CONFIG)")


@app.command("submit")
def submit_command(
    text_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Extracted résumé text (.txt)"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner (user) identifier"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Submit a résumé text file for extraction.

    Examples:\n

        $ manage_queue.py submit data/cv.txt --owner user-42
    """
    config = _load(config_path)
    queue = _open_queue(config)

    text = text_file.read_text(encoding="utf-8")
    if not text.strip():
        typer.secho(f"{text_file} is empty", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    input_ref = queue.text_provider.put(text)
    receipt = queue.enqueue(owner, input_ref)

    typer.secho(f"\nJob {receipt.job_id} queued", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  Position:       {receipt.position}")
    typer.echo(f"  Estimated wait: ~{receipt.estimated_wait_minutes} min")


@app.command("status")
def status_command(
    job_id: str = typer.Argument(..., help="Job identifier"),
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Require the job to belong to this owner"),
    show_result: bool = typer.Option(False, "--result", "-r", help="Print the extracted profile as JSON"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Show a job's status with its live queue position.

    Examples:\n

        $ manage_queue.py status 3f2a9c... --result
    """
    queue = _open_queue(_load(config_path))
    try:
        job = queue.get_status(job_id, owner_id=owner)
    except JobNotFoundError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    typer.secho(f"\n{job.id}", fg=typer.colors.BLUE, bold=True)
    typer.echo(f"  Owner:     {job.owner_id}")
    typer.secho(f"  Status:    {job.status.value}", fg=STATUS_COLORS.get(job.status.value))
    if job.position:
        typer.echo(f"  Position:  {job.position} (~{job.estimated_wait_minutes} min)")
    typer.echo(f"  Created:   {format_timestamp(to_iso(job.created_at), relative=True)}")
    if job.processing_seconds is not None:
        typer.echo(f"  Duration:  {job.processing_seconds:.1f}s")
    if job.error_message:
        typer.secho(f"  Error:     {job.error_message}", fg=typer.colors.RED)
    if show_result and job.result is not None:
        typer.echo(json.dumps(job.result, indent=2, ensure_ascii=False))


@app.command("cancel")
def cancel_command(
    job_id: str = typer.Argument(..., help="Job identifier"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner (user) identifier"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Cancel a queued job. Jobs already processing cannot be cancelled.

    Examples:\n

        $ manage_queue.py cancel 3f2a9c... --owner user-42
    """
    queue = _open_queue(_load(config_path))
    try:
        cancelled = queue.cancel(job_id, owner)
    except JobNotFoundError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if cancelled:
        typer.secho(f"Cancelled {job_id}", fg=typer.colors.GREEN)
    else:
        typer.secho(f"{job_id} is no longer queued; not cancelled", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=2)


@app.command("list")
def list_command(
    owner: str = typer.Option(..., "--owner", "-o", help="Owner (user) identifier"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum number of jobs"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    List an owner's most recent jobs.

    Examples:\n

        $ manage_queue.py list --owner user-42
    """
    queue = _open_queue(_load(config_path))
    jobs = queue.list_jobs(owner, limit=limit)
    if not jobs:
        typer.echo(f"No jobs for {owner}")
        return

    typer.secho(f"\nJobs for {owner}", fg=typer.colors.BLUE, bold=True)
    typer.echo("=" * 80)
    for job in jobs:
        position = f"#{job.position}" if job.position else ""
        created = format_timestamp(to_iso(job.created_at), relative=True)
        typer.secho(f"  {job.id}  {job.status.value:11} {position:4} {created}", fg=STATUS_COLORS.get(job.status.value))


@app.command("stats")
def stats_command(config_path: Optional[Path] = ConfigOption):
    """
    Show queue statistics.

    Examples:\n

        $ manage_queue.py stats
    """
    queue = _open_queue(_load(config_path))
    stats = queue.get_stats()

    typer.secho("\nQueue Statistics", fg=typer.colors.BLUE, bold=True)
    typer.echo("=" * 80)
    typer.echo(f"Queued:      {stats.queue_length}")
    typer.echo(f"Processing:  {stats.processing}")
    typer.echo(f"\nLast {queue.stats_window_hours:g}h:")
    typer.echo(f"  {'completed':20} {stats.completed}")
    typer.echo(f"  {'failed':20} {stats.failed}")
    typer.echo(f"  {'cancelled':20} {stats.cancelled}")
    typer.echo(f"  {'avg wait (min)':20} {stats.average_wait_minutes:.1f}")
    typer.echo(f"  {'avg processing (s)':20} {stats.average_processing_seconds:.1f}")


@app.command("work")
def work_command(
    once: bool = typer.Option(False, "--once", help="Drain the queue and exit instead of polling"),
    max_jobs: Optional[int] = typer.Option(None, "--max-jobs", help="Stop after this many jobs (with --once)"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Write a DEBUG log file here"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Run the single queue worker.

    Run only one worker per database; a second worker never claims a job while
    another job is processing, so it would only idle.

    Examples:\n

        $ manage_queue.py work --once

        $ manage_queue.py work --log-dir outs/logs/worker
    """
    config = _load(config_path)
    queue = _open_queue(config, with_pipeline=True)
    setup_queue_logger(
        log_dir or config.logging.log_dir,
        provider_name=queue.pipeline.provider.name,
        storage=str(config.storage.db_path),
    )

    if once:
        processed = queue.run_until_empty(max_jobs=max_jobs)
        typer.secho(f"Processed {processed} job(s)", fg=typer.colors.GREEN)
        return

    queue.start()
    typer.echo("Worker running. Press Ctrl+C to stop.")
    try:
        while queue.is_running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        typer.echo("\nStopping worker after the current job...")
    finally:
        queue.stop()


@app.command("requeue")
def requeue_command(
    older_than: Optional[float] = typer.Option(
        None, "--older-than", help="Minutes in processing before a job counts as stale (default: config)"
    ),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Requeue jobs stuck in processing (e.g. after a worker crash).

    Examples:\n

        $ manage_queue.py requeue --older-than 30
    """
    queue = _open_queue(_load(config_path))
    job_ids = queue.requeue_stale(older_than_minutes=older_than)
    if not job_ids:
        typer.echo("No stale jobs")
        return
    typer.secho(f"Requeued {len(job_ids)} job(s):", fg=typer.colors.YELLOW)
    for job_id in job_ids:
        typer.echo(f"  {job_id}")


@app.command("cleanup")
def cleanup_command(
    older_than: Optional[float] = typer.Option(
        None, "--older-than", help="Hours since completion (default: config retention_hours)"
    ),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Delete completed, failed and cancelled jobs older than the retention window.

    Examples:\n

        $ manage_queue.py cleanup --older-than 24
    """
    queue = _open_queue(_load(config_path))
    removed = queue.cleanup_finished(older_than_hours=older_than)
    typer.echo(f"Removed {removed} finished job(s)")


@app.command("events")
def events_command(
    n: int = typer.Option(10, "-n", help="Number of events"),
    job_id: Optional[str] = typer.Option(None, "--job", help="Only events for this job"),
    event_type: Optional[str] = typer.Option(None, "--type", help="Only events of this type"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Show recent job events from the events file (logging.events_file).

    Examples:\n

        $ manage_queue.py events -n 20 --type status_change
    """
    config = _load(config_path)
    if not config.logging.events_file:
        typer.secho("Event logging is disabled (set VITAE_EVENTS_FILE)", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)

    for event in get_recent_events(n, job_id=job_id, event_type=event_type):
        when = format_timestamp(event.get("timestamp", ""))
        detail = {k: v for k, v in event.items() if k not in ("timestamp", "event_type", "job_id", "source")}
        typer.echo(f"{when}  {event['event_type']:15} {event['job_id']}  {detail}")


@app.command("check")
def check_command(
    provider_name: Optional[str] = typer.Option(None, "--provider", "-p", help="Provider to check (default: config)"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Validate LLM provider configuration and send a test request.

    Examples:\n

        $ manage_queue.py check --provider ollama
    """
    config = _load(config_path)
    name = provider_name or config.llm.provider
    requirements = provider_requirements().get(name)
    if requirements:
        typer.secho(f"\n{name}: {requirements['description']}", fg=typer.colors.BLUE, bold=True)
        for var in requirements["required_env"]:
            typer.echo(f"  requires {var}")
        for var, default in requirements["optional_env"].items():
            typer.echo(f"  optional {var} (default: {default})")

    try:
        provider = get_provider(provider_name=name, config=config)
        reply = provider.check_connection()
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except GenerationError as e:
        typer.secho(f"Connection failed ({e.kind}): {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    typer.secho(f"{provider.name} OK at {now_exact()}: {reply}", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
