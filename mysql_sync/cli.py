from datetime import datetime, timezone
from typing import Optional

import click

from .bootstrap import Bootstrapper
from .config import load_config
from .errors import SyncError
from .history import list_runs
from .job import SyncJob
from .logger import get_logger, setup_logging
from .retention import enforce_retention
from .scheduler import run_scheduler

logger = get_logger(__name__)


def _fail(error: SyncError):
    click.echo(f"[ERROR] {error.step}: {error}", err=True)
    click.get_current_context().exit(error.exit_code)


def _local_time(moment: Optional[datetime]) -> str:
    # history stores UTC; SQLite hands the values back without tzinfo
    if moment is None:
        return "-"
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _load(ctx: click.Context):
    try:
        config = load_config(ctx.obj["config_path"], ctx.obj["env_file"])
    except SyncError as e:
        _fail(e)
    setup_logging("DEBUG" if ctx.obj["verbose"] else config.log_level)
    return config


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="YAML file with a flat mapping of settings")
@click.option("--env-file", "-e", type=click.Path(dir_okay=False),
              help="Path to the .env file (default: ./.env when present)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config_path, env_file, verbose):
    """Copy a remote MySQL database into a local replica by dump and restore."""
    ctx.ensure_object(dict)
    ctx.obj.update(config_path=config_path, env_file=env_file, verbose=verbose)


@cli.command()
@click.pass_context
def run(ctx):
    """Run one sync pass now."""
    config = _load(ctx)
    try:
        outcome = SyncJob().run(config)
    except SyncError as e:
        _fail(e)
    click.echo(f"Dump : {outcome.artifact_path}")
    click.echo(f"Log  : {outcome.log_path}")


@cli.command()
@click.option("--now", is_flag=True, help="Run one sync immediately before waiting for the schedule")
@click.pass_context
def schedule(ctx, now):
    """Keep running, syncing on SYNC_CRON_OVERRIDE or every SYNC_INTERVAL_HOURS."""
    config = _load(ctx)
    run_scheduler(config, run_now=now)


@cli.command()
@click.option("--no-start", is_flag=True, help="Do not start the target container with docker compose")
@click.option("--no-sync", is_flag=True, help="Do not run the first sync after provisioning")
@click.pass_context
def bootstrap(ctx, no_start, no_sync):
    """Start the local MySQL, create users from MYSQL_USERS_JSON, run a first sync."""
    config = _load(ctx)
    try:
        count = Bootstrapper(config).run(start=not no_start)
        click.echo(f"Provisioned {count} user(s) on the local MySQL.")
        if not no_sync:
            logger.info("Running initial sync …")
            outcome = SyncJob().run(config)
            click.echo(f"Dump : {outcome.artifact_path}")
    except SyncError as e:
        _fail(e)
    click.echo(f"Sync schedule : {config.schedule} ({config.timezone})")
    click.echo(f"Logs          : {config.log_dir}")


@cli.command()
@click.pass_context
def prune(ctx):
    """Apply the retention policy to the backup directory only."""
    config = _load(ctx)
    result = enforce_retention(config.backup_dir, config.retention_count, config.all_databases)
    for path in result.deleted:
        click.echo(f"deleted {path}")
    for warning in result.warnings:
        click.echo(f"[WARN] {warning}", err=True)


@cli.command()
@click.option("--limit", "-n", default=10, show_default=True, type=click.IntRange(min=1))
@click.pass_context
def history(ctx, limit):
    """Show the most recent sync runs."""
    config = _load(ctx)
    runs = list_runs(config.history_db, limit=limit)
    if not runs:
        click.echo("No runs recorded yet.")
        return
    for entry in runs:
        started, finished = _local_time(entry.started_at), _local_time(entry.finished_at)
        line = f"{entry.id:>5}  {started}  {finished:19}  {entry.mode:6}  {entry.status:9}"
        if entry.status == "completed":
            line += f"  {entry.artifact_path}"
        else:
            line += f"  [{entry.failed_step}] {entry.error_summary or ''}"
        click.echo(line)


def main():
    cli(obj={})
