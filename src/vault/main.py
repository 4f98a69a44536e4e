"""Main entry point for the vault CLI."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional, TypeVar

import click
import structlog

from vault.config import VaultConfig, load_config
from vault.context import VaultContext
from vault.exceptions import ConfigurationError, VaultError
from vault.metrics import VaultMetrics
from utils.logging import configure_logging

T = TypeVar("T")


_COMMON_OPTIONS = [
    click.option(
        "--config",
        "-c",
        required=True,
        type=click.Path(exists=True, path_type=Path),
        help="Path to configuration file (YAML)",
    ),
    click.option(
        "--log-level",
        default="INFO",
        type=click.Choice(["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]),
        help="Log level",
    ),
    click.option(
        "--log-format",
        default="console",
        type=click.Choice(["console", "json"], case_sensitive=False),
        help="Log format: 'console' for human-readable output, 'json' for structured logs (default: console)",
    ),
]


def common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command: config file and logging."""
    for option in reversed(_COMMON_OPTIONS):
        func = option(func)
    return func


def run_with_context(
    config_path: Path,
    log_level: str,
    log_format: str,
    command: Callable[[VaultContext, structlog.BoundLogger], Awaitable[T]],
    with_metrics: bool = False,
) -> T:
    """Load the configuration, open a context, run the command and exit(1) on failure."""
    logger = configure_logging(log_level=log_level, log_format=log_format).bind(component="main")
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e), correlation_id=e.correlation_id)
        sys.exit(1)

    metrics = build_metrics(config, logger) if with_metrics else None

    async def _run() -> T:
        context = VaultContext.from_config(config, metrics=metrics, logger=logger)
        await context.open()
        try:
            return await command(context, logger)
        finally:
            await context.close()

    try:
        return asyncio.run(_run())
    except VaultError as e:
        logger.error("Command failed", error=e.message, correlation_id=e.correlation_id, context=e.context)
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error", error=str(e))
        sys.exit(1)


def build_metrics(config: VaultConfig, logger: structlog.BoundLogger) -> Optional[VaultMetrics]:
    if not config.monitoring.metrics_enabled:
        return None
    metrics = VaultMetrics(logger=logger)
    metrics.start_metrics_server(config.monitoring.metrics_port)
    return metrics


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli() -> None:
    """Full-site backup of database, dataroot and content store to remote storage."""


@cli.command("schedule-backup")
@common_options
@click.option("--run", "run_now", is_flag=True, default=False, help="Run the queue right after scheduling")
def schedule_backup(config: Path, log_level: str, log_format: str, run_now: bool) -> None:
    """Schedule a site backup (the existing scheduled backup is reused)."""
    from vault.scheduler import OperationScheduler

    async def command(context: VaultContext, logger: structlog.BoundLogger) -> None:
        scheduler = OperationScheduler(context, logger=logger)
        model = await scheduler.schedule_backup()
        echo_json({"id": model.id, "backupkey": model.backupkey, "accesskey": model.accesskey})
        if run_now:
            await scheduler.tick()

    run_with_context(config, log_level, log_format, command, with_metrics=run_now)


@cli.command("cron")
@common_options
@click.option("--loop", is_flag=True, default=False, help="Keep sweeping the queue")
@click.option("--interval", default=60, show_default=True, type=click.IntRange(min=1), help="Seconds between sweeps")
def cron(config: Path, log_level: str, log_format: str, loop: bool, interval: int) -> None:
    """Sweep the operation queue: handle stuck operations and start scheduled ones."""
    from vault.scheduler import OperationScheduler

    async def command(context: VaultContext, logger: structlog.BoundLogger) -> None:
        scheduler = OperationScheduler(context, logger=logger)
        while True:
            started = await scheduler.tick()
            logger.info("Queue processed", started=started)
            if not loop:
                return
            await asyncio.sleep(interval)

    run_with_context(config, log_level, log_format, command, with_metrics=True)


@cli.command("status")
@common_options
@click.option("--id", "operation_id", type=int, default=None, help="Show one operation with its log")
def status(config: Path, log_level: str, log_format: str, operation_id: Optional[int]) -> None:
    """Show the operation queue, or one operation and its log."""
    from vault.scheduler import OperationScheduler

    async def command(context: VaultContext, logger: structlog.BoundLogger) -> None:
        if operation_id is None:
            queue = await OperationScheduler(context, registry={}, logger=logger).get_queue()
            echo_json({name: [m.to_dict() for m in models] for name, models in queue.items()})
            return
        model = await context.operations.get_by_id(operation_id)
        if model is None:
            raise VaultError(f"Operation {operation_id} not found")
        echo_json(model.to_dict())
        for entry in await context.operations.get_logs(operation_id):
            click.echo(entry.format())

    run_with_context(config, log_level, log_format, command)


@cli.command("check-db")
@common_options
def check_db(config: Path, log_level: str, log_format: str) -> None:
    """Compare live tables with their definitions without scheduling anything."""
    from vault.checks import DbStatus, DbStatusCheck
    from vault.dbstructure import SchemaStructure

    async def command(context: VaultContext, logger: structlog.BoundLogger) -> bool:
        structure = await SchemaStructure.load(context.db, context.config.backup.schema_dirs, logger=logger)
        report = DbStatusCheck.compare(structure)
        db_status = DbStatusCheck.evaluate(report)
        echo_json({"status": str(db_status), "tables": structure.describe(), "report": report})
        return db_status != DbStatus.INVALID

    if not run_with_context(config, log_level, log_format, command):
        sys.exit(1)


@cli.command("dump-structure")
@common_options
@click.option("--definitions", is_flag=True, default=False, help="Dump definitions instead of live tables")
@click.option("--table", "tables", multiple=True, help="Only these tables (repeatable)")
def dump_structure(config: Path, log_level: str, log_format: str, definitions: bool, tables: tuple[str, ...]) -> None:
    """Print tables as an XMLDB document."""
    from vault.dbstructure import SchemaStructure

    async def command(context: VaultContext, logger: structlog.BoundLogger) -> None:
        structure = await SchemaStructure.load(context.db, context.config.backup.schema_dirs, logger=logger)
        click.echo(structure.output(only_tables=list(tables) or None, show_definitions=definitions))

    run_with_context(config, log_level, log_format, command)


@cli.command("serve-progress")
@common_options
def serve_progress(config: Path, log_level: str, log_format: str) -> None:
    """Serve GET /progress/{accesskey} until interrupted."""
    from vault.progress_server import ProgressServer

    async def command(context: VaultContext, logger: structlog.BoundLogger) -> None:
        server = ProgressServer(context.operations, port=context.config.monitoring.progress_port, logger=logger)
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()

    try:
        run_with_context(config, log_level, log_format, command, with_metrics=True)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
