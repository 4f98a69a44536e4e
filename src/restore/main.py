"""CLI entry point for restoring a site from a backup."""

import sys
from pathlib import Path

import click
import structlog

from vault.backup_file import parse_segment_name
from vault.config import load_config
from vault.context import VaultContext
from vault.exceptions import ConfigurationError, TransportError
from vault.main import common_options, echo_json, run_with_context
from vault.scheduler import OperationScheduler
from vault.transport import create_transport
from utils.logging import configure_logging


@click.group()
def cli() -> None:
    """Restore a site from a backup in remote storage."""


@cli.command("schedule-restore")
@common_options
@click.argument("backupkey")
@click.option("--run", "run_now", is_flag=True, default=False, help="Run the queue right after scheduling")
def schedule_restore(config: Path, log_level: str, log_format: str, backupkey: str, run_now: bool) -> None:
    """Schedule restoring BACKUPKEY over this site.

    \b
    # Schedule and let cron pick it up
    restore schedule-restore --config config.yaml 20240101120000-1a2b3c4d
    """

    async def command(context: VaultContext, logger: structlog.BoundLogger) -> None:
        scheduler = OperationScheduler(context, logger=logger)
        model = await scheduler.schedule_restore(backupkey)
        echo_json({"id": model.id, "backupkey": model.backupkey, "accesskey": model.accesskey})
        if run_now:
            await scheduler.tick()

    run_with_context(config, log_level, log_format, command, with_metrics=run_now)


@cli.command("schedule-dryrun")
@common_options
@click.argument("backupkey")
@click.option("--run", "run_now", is_flag=True, default=False, help="Run the queue right after scheduling")
def schedule_dryrun(config: Path, log_level: str, log_format: str, backupkey: str, run_now: bool) -> None:
    """Schedule the restore prechecks of BACKUPKEY without changing the site."""

    async def command(context: VaultContext, logger: structlog.BoundLogger) -> None:
        scheduler = OperationScheduler(context, logger=logger)
        model = await scheduler.schedule_dryrun(backupkey)
        echo_json({"id": model.id, "backupkey": model.backupkey, "accesskey": model.accesskey})
        if run_now:
            await scheduler.tick()
            model = await context.operations.get_by_id(model.id)
            echo_json({"status": str(model.status), "report": model.details.get("report")})

    run_with_context(config, log_level, log_format, command)


@cli.command("list-segments")
@common_options
@click.argument("backupkey")
def list_segments(config: Path, log_level: str, log_format: str, backupkey: str) -> None:
    """List the archive segments of BACKUPKEY by stream."""
    logger = configure_logging(log_level=log_level, log_format=log_format).bind(component="main")
    try:
        vault_config = load_config(config)
        files = create_transport(vault_config.storage, logger).list_files(backupkey)
    except (ConfigurationError, TransportError) as e:
        logger.error("Failed to list segments", error=e.message, context=e.context)
        sys.exit(1)

    if not files:
        click.echo(click.style(f"No segments found for backup {backupkey}", fg="yellow"))
        return

    click.echo(click.style(f"Backup {backupkey}: {len(files)} file(s)", fg="cyan", bold=True))
    for entry in sorted(files, key=lambda f: parse_segment_name(f["name"]) or ("~", 0)):
        parsed = parse_segment_name(entry["name"])
        stream = parsed[0] if parsed else "unknown"
        click.echo(f"  {entry['name']:<24} {stream:<12} {entry['size']:>14,} bytes")


if __name__ == "__main__":
    cli()
