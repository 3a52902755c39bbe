import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from .database import TrackingDatabase
from .providers import provider_for_path
from .sync.client import RemoteSyncClient
from .sync.config import RemoteSystemConfig, SyncConfig
from .sync.logging_config import default_log_path, setup_sync_logging
from .sync.pipeline import run_sync_pipeline
from .sync.reconciler import ReconcileOptions
from .sync.run_tracker import RunDatabase

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def _load_config(env_file: Optional[str]) -> SyncConfig:
    try:
        if env_file:
            return SyncConfig.from_file(env_file)
        return SyncConfig.from_env()
    except (ValueError, FileNotFoundError) as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--env-file', type=click.Path(exists=True, dir_okay=False), envvar='MEMBER_SYNC_ENV_FILE',
              help='Load settings from this .env file.')
@click.pass_context
def main(ctx: click.Context, env_file: Optional[str]):
    """Synchronize member records to downstream systems."""
    ctx.ensure_object(dict)
    config = _load_config(env_file)
    ctx.obj['config'] = config
    setup_sync_logging(config.log_level)


@main.command()
@click.argument('system')
@click.option('--snapshot', 'snapshot_path', required=True, envvar='MEMBER_SYNC_SNAPSHOT',
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='JSON or CSV file with the current source snapshot.')
@click.option('--force', is_flag=True, help='Push every record, even unchanged ones.')
@click.option('--dry-run', is_flag=True, help='Log what would be done without changing anything.')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging and a progress bar.')
@click.option('--allow-empty-snapshot', is_flag=True,
              help='Run the orphan sweep even if the snapshot is empty or suspiciously small.')
@click.option('--no-sweep', is_flag=True, help='Do not delete orphaned records.')
@click.pass_context
def sync(ctx: click.Context, system: str, snapshot_path: Path, force: bool, dry_run: bool,
         verbose: bool, allow_empty_snapshot: bool, no_sweep: bool):
    """Sync SYSTEM with the records in the snapshot file."""
    config: SyncConfig = ctx.obj['config']
    log_level = "DEBUG" if verbose else config.log_level
    setup_sync_logging(log_level, default_log_path(config.log_dir, system))
    sync_logger = logging.getLogger(f"member_sync.{system}")

    try:
        provider = provider_for_path(snapshot_path)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--snapshot')

    options = ReconcileOptions(
        force=force,
        dry_run=dry_run,
        sweep_orphans=not no_sweep,
        allow_empty_snapshot=allow_empty_snapshot,
        min_snapshot_ratio=config.min_snapshot_ratio,
    )
    result = run_sync_pipeline(
        provider,
        RemoteSystemConfig.from_env(system),
        config,
        options=options,
        logger=sync_logger,
        show_progress=verbose,
    )

    if not result.success:
        click.echo(f"Sync of {system} finished with outcome '{result.outcome.value}'", err=True)
        for error in result.errors:
            click.echo(f"  {error}", err=True)
        sys.exit(1)

    click.echo(f"Sync of {system} finished successfully")


@main.command('test-connection')
@click.argument('system')
@click.pass_context
def test_connection(ctx: click.Context, system: str):
    """Check credentials and connectivity for SYSTEM."""
    config: SyncConfig = ctx.obj['config']
    client = RemoteSyncClient(
        RemoteSystemConfig.from_env(system),
        timeout=config.request_timeout_seconds,
        max_retries=0,
    )
    check = client.test_connection()
    if not check.success:
        click.echo(f"Connection to {system} failed: {check.error}", err=True)
        sys.exit(1)
    click.echo(f"Connection to {system} OK")


@main.command()
@click.argument('system')
@click.argument('external_id')
@click.pass_context
def show(ctx: click.Context, system: str, external_id: str):
    """Print the tracked state of one record as JSON."""
    config: SyncConfig = ctx.obj['config']
    if not config.tracking_db_path.exists():
        raise click.ClickException(f"No tracking database at {config.tracking_db_path}")

    system_config = RemoteSystemConfig.from_env(system)
    with TrackingDatabase(config.tracking_db_path, system_config.tracking_table) as db:
        record = db.get_record(external_id)

    if record is None:
        click.echo(f"No tracked record {external_id} for {system}", err=True)
        sys.exit(1)

    data = asdict(record)
    data['needs_sync'] = record.needs_sync
    click.echo(json.dumps(data, indent=2, default=str, ensure_ascii=False))


@main.command()
@click.argument('system')
@click.option('--force', is_flag=True, help='Include records without pending changes.')
@click.pass_context
def changes(ctx: click.Context, system: str, force: bool):
    """Print the per-field changes waiting to be pushed to SYSTEM as JSON."""
    config: SyncConfig = ctx.obj['config']
    if not config.tracking_db_path.exists():
        raise click.ClickException(f"No tracking database at {config.tracking_db_path}")

    system_config = RemoteSystemConfig.from_env(system)
    with TrackingDatabase(config.tracking_db_path, system_config.tracking_table) as db:
        pending = db.get_needing_sync(force)

    if not pending:
        click.echo("No records pending sync.")
        return

    output = [
        {
            'external_id': record.external_id,
            'secondary_key': record.secondary_key,
            'remote_id': record.remote_id,
            'payload': record.payload,
            'diff': record.field_changes(),
        }
        for record in pending
    ]
    click.echo(json.dumps(output, indent=2, default=str, ensure_ascii=False))


@main.command()
@click.option('--limit', default=20, show_default=True, type=click.IntRange(min=1), help='Number of runs to list.')
@click.option('--system', 'pipeline', default=None, help='Only list runs of this system.')
@click.option('--run-id', type=int, default=None, help='Show the steps and errors of one run.')
@click.pass_context
def runs(ctx: click.Context, limit: int, pipeline: Optional[str], run_id: Optional[int]):
    """List recent sync runs."""
    config: SyncConfig = ctx.obj['config']
    if not config.runs_db_path.exists():
        click.echo("No runs recorded yet")
        return

    with RunDatabase(config.runs_db_path) as db:
        if run_id is None:
            for run in db.list_runs(limit, pipeline):
                click.echo(
                    f"#{run.id} {run.pipeline:<12} {run.started_at:%Y-%m-%d %H:%M:%S} {run.outcome:<8} "
                    f"created={run.total_created} updated={run.total_updated} "
                    f"skipped={run.total_skipped} failed={run.total_failed}"
                )
            return

        run = db.get_run(run_id)
        if run is None:
            click.echo(f"Run {run_id} not found", err=True)
            sys.exit(1)

        click.echo(f"Run #{run.id} ({run.pipeline}): {run.outcome}, {run.duration_ms or 0} ms")
        for step in db.get_steps(run_id):
            click.echo(
                f"  step {step.step_name}: {step.outcome} "
                f"created={step.created_count} updated={step.updated_count} "
                f"skipped={step.skipped_count} failed={step.failed_count}"
            )
        for error in db.get_errors(run_id):
            who = f" [{error.member_identifier}]" if error.member_identifier else ""
            click.echo(f"  error in {error.step_name}{who}: {error.error_message}")


if __name__ == '__main__':
    main()
