"""Unit tests for the vault CLI."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from vault.exceptions import DatabaseError
from vault.main import cli
from vault.operation import OperationLog, OperationModel, OperationStatus, OperationType


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Create a temporary config file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"""
version: "1.0"
database:
  name: "site"
  user: "vault"
  password: "secret"
  table_prefix: "mdl_"
storage:
  type: "local"
  local_dir: "{tmp_path / 'remote'}"
"""
    )
    return config_file


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def context():
    """Patch the context so no database is opened."""
    context = MagicMock()
    context.open = AsyncMock()
    context.close = AsyncMock()
    with patch("vault.main.VaultContext") as mock_context_class:
        mock_context_class.from_config.return_value = context
        yield context


def _backup_model() -> OperationModel:
    return OperationModel(
        id=3,
        type=OperationType.BACKUP,
        status=OperationStatus.SCHEDULED,
        backupkey="20240101120000-abcdef01",
        accesskey="k" * 32,
    )


def test_schedule_backup(runner: CliRunner, config_file: Path, context) -> None:
    """Test scheduling prints the operation keys."""
    with patch("vault.scheduler.OperationScheduler") as mock_scheduler_class:
        scheduler = mock_scheduler_class.return_value
        scheduler.schedule_backup = AsyncMock(return_value=_backup_model())
        scheduler.tick = AsyncMock()

        result = runner.invoke(cli, ["schedule-backup", "--config", str(config_file)])

    assert result.exit_code == 0
    assert '"backupkey": "20240101120000-abcdef01"' in result.output
    scheduler.tick.assert_not_awaited()
    context.open.assert_awaited_once()
    context.close.assert_awaited_once()


def test_schedule_backup_and_run(runner: CliRunner, config_file: Path, context) -> None:
    """Test --run processes the queue after scheduling."""
    with patch("vault.scheduler.OperationScheduler") as mock_scheduler_class:
        scheduler = mock_scheduler_class.return_value
        scheduler.schedule_backup = AsyncMock(return_value=_backup_model())
        scheduler.tick = AsyncMock(return_value=1)

        result = runner.invoke(cli, ["schedule-backup", "--config", str(config_file), "--run"])

    assert result.exit_code == 0
    scheduler.tick.assert_awaited_once()


def test_cron_single_sweep(runner: CliRunner, config_file: Path, context) -> None:
    """Test cron without --loop sweeps once."""
    with patch("vault.scheduler.OperationScheduler") as mock_scheduler_class:
        mock_scheduler_class.return_value.tick = AsyncMock(return_value=0)

        result = runner.invoke(cli, ["cron", "--config", str(config_file)])

    assert result.exit_code == 0
    mock_scheduler_class.return_value.tick.assert_awaited_once()


def test_status_of_operation(runner: CliRunner, config_file: Path, context) -> None:
    """Test one operation is printed with its log."""
    context.operations.get_by_id = AsyncMock(return_value=_backup_model())
    context.operations.get_logs = AsyncMock(
        return_value=[OperationLog(operationid=3, message="Backup started", id=1)]
    )

    result = runner.invoke(cli, ["status", "--config", str(config_file), "--id", "3"])

    assert result.exit_code == 0
    assert "Backup started" in result.output


def test_status_unknown_operation(runner: CliRunner, config_file: Path, context) -> None:
    """Test an unknown id exits with an error."""
    context.operations.get_by_id = AsyncMock(return_value=None)

    result = runner.invoke(cli, ["status", "--config", str(config_file), "--id", "99"])

    assert result.exit_code == 1
    context.close.assert_awaited_once()


def test_database_error_exits(runner: CliRunner, config_file: Path, context) -> None:
    """Test vault errors are logged and exit with status 1."""
    context.open = AsyncMock(side_effect=DatabaseError("Failed to connect"))

    result = runner.invoke(cli, ["cron", "--config", str(config_file)])

    assert result.exit_code == 1


def test_invalid_config(runner: CliRunner, tmp_path: Path) -> None:
    """Test an invalid configuration exits with status 1."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text('version: "9.9"\n')

    result = runner.invoke(cli, ["cron", "--config", str(config_file)])

    assert result.exit_code == 1


def test_missing_config(runner: CliRunner) -> None:
    """Test --config must exist."""
    result = runner.invoke(cli, ["cron", "--config", "/nonexistent.yaml"])
    assert result.exit_code == 2
