"""Command line interface for the RealGreen / GoHighLevel sync service."""

import sys
import signal
import logging
import threading
from contextlib import contextmanager
from typing import List, Optional

import click

from .config import (
    create_orchestrator_from_env, load_environment, parse_sync_mode, setup_logging_from_env
)
from ..exceptions import ConfigurationError, SyncError
from ..models.sync import SyncCycleResult

logger = logging.getLogger(__name__)

MODE_CHOICES = ['hybrid', 'a_led', 'b_led', 'realgreen-led', 'ghl-led']


@click.group()
@click.option('--log-level', default=None, type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              help='Set the logging level (default: LOG_LEVEL or INFO)')
@click.option('--env-file', type=click.Path(exists=True), help='Path to .env file')
def cli(log_level: Optional[str], env_file: Optional[str]) -> None:
    """RealGreen <-> GoHighLevel Hybrid Sync."""
    load_environment(env_file)
    setup_logging_from_env(log_level)


@contextmanager
def _handle_errors():
    try:
        yield
    except (ConfigurationError, ValueError) as e:
        click.echo(f"Configuration Error: {e}", err=True)
        sys.exit(1)
    except SyncError as e:
        click.echo(f"Sync Error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logging.exception("Unexpected error occurred")
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--no-immediate', is_flag=True, help='Wait one interval before the first cycle')
def run(no_immediate: bool) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    with _handle_errors():
        orchestrator = create_orchestrator_from_env()
        stop = threading.Event()

        def _handle_shutdown_signal(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown...")
            stop.set()

        signal.signal(signal.SIGINT, _handle_shutdown_signal)
        signal.signal(signal.SIGTERM, _handle_shutdown_signal)

        orchestrator.start(run_immediately=not no_immediate)
        click.echo(f"Sync running in {orchestrator.settings.mode.value} mode. Press Ctrl+C to stop.")
        while not stop.wait(1.0):
            pass

        clean = orchestrator.shutdown()
        click.echo("Stopped." if clean else "Stopped; some jobs will be redelivered after their lease expires.")


@cli.command('sync-once')
@click.option('--mode', type=click.Choice(MODE_CHOICES), help='Override SYNC_MODE for this cycle')
def sync_once(mode: Optional[str]) -> None:
    """Run a single sync cycle now."""
    with _handle_errors():
        orchestrator = create_orchestrator_from_env(persistent=True)
        results = orchestrator.trigger_cycle(parse_sync_mode(mode) if mode else None)
        _display_results_table(results)

        if any(r.error for r in results):
            sys.exit(1)


@cli.command()
def status() -> None:
    """Show queue depth, dead letters and the latest cycle."""
    with _handle_errors():
        orchestrator = create_orchestrator_from_env(persistent=True)
        report = orchestrator.get_status()
        if not report.last_results:
            report.last_results = orchestrator.store.recent_cycles(limit=len(orchestrator.settings.entity_types) * 2)
        click.echo(report.model_dump_json(indent=2))


@cli.command('dead-letters')
@click.option('--limit', type=int, default=50, help='Maximum number of jobs to list')
def dead_letters(limit: int) -> None:
    """List dead-lettered jobs."""
    with _handle_errors():
        orchestrator = create_orchestrator_from_env(persistent=True)
        jobs = orchestrator.list_dead_letters(limit=limit)
        if not jobs:
            click.echo("No dead-lettered jobs.")
            return

        click.echo(f"{'Job ID':<38} {'Entity':<12} {'Direction':<8} {'Attempts':<9} {'Error'}")
        click.echo("-" * 100)
        for job in jobs:
            click.echo(f"{job.id:<38} {job.entity_type:<12} {job.direction.value:<8} "
                       f"{job.attempt:<9} {(job.last_error or '')[:60]}")


@cli.command('retry-dead-letter')
@click.argument('job_id')
def retry_dead_letter(job_id: str) -> None:
    """Requeue a dead-lettered job."""
    with _handle_errors():
        orchestrator = create_orchestrator_from_env(persistent=True)
        new_id = orchestrator.retry_dead_letter(job_id)
        click.echo(f"Requeued {job_id} as {new_id}")


@cli.command('test-connection')
def test_connection() -> None:
    """Test connections to RealGreen and GoHighLevel."""
    with _handle_errors():
        orchestrator = create_orchestrator_from_env()
        results = orchestrator.test_connections()
        for name, ok in results.items():
            click.echo(f"{name}: {'connected' if ok else 'FAILED'}")
        if not all(results.values()):
            sys.exit(1)


def _display_results_table(results: List[SyncCycleResult]) -> None:
    """Display cycle results in a table format."""
    if not results:
        click.echo("Cycle deferred: another cycle is running or one ran too recently.")
        return

    click.echo(f"{'Direction':<8} {'Entity':<12} {'Scanned':<8} {'Created':<8} {'Updated':<8} "
               f"{'Skipped':<8} {'Failed':<7} {'Conflicts':<9}")
    click.echo("-" * 80)
    for r in results:
        click.echo(f"{r.direction.value:<8} {r.entity_type:<12} {r.scanned:<8} {r.created:<8} {r.updated:<8} "
                   f"{r.skipped:<8} {r.failed:<7} {r.conflicts:<9}")
        if r.error:
            click.echo(f"  error: {r.error}")


if __name__ == '__main__':
    cli()
