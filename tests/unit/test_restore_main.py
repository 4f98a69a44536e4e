"""Unit tests for restore CLI entry point."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from restore.main import cli
from vault.exceptions import OperationConflictError
from vault.operation import OperationModel, OperationStatus, OperationType

BACKUP_KEY = "20240101120000-abcdef01"


@pytest.fixture
def remote_dir(tmp_path: Path) -> Path:
    return tmp_path / "remote"


@pytest.fixture
def config_file(tmp_path: Path, remote_dir: Path) -> Path:
    """Create a temporary config file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"""
version: "1.0"
database:
  name: "site"
  user: "vault"
  password: "secret"
storage:
  type: "local"
  local_dir: "{remote_dir}"
"""
    )
    return config_file


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def context():
    context = MagicMock()
    context.open = AsyncMock()
    context.close = AsyncMock()
    with patch("vault.main.VaultContext") as mock_context_class:
        mock_context_class.from_config.return_value = context
        yield context


def _model(type: OperationType) -> OperationModel:
    return OperationModel(id=5, type=type, backupkey=BACKUP_KEY, accesskey="a" * 32)


def test_schedule_restore(runner: CliRunner, config_file: Path, context) -> None:
    """Test scheduling a restore prints its keys."""
    with patch("restore.main.OperationScheduler") as mock_scheduler_class:
        mock_scheduler_class.return_value.schedule_restore = AsyncMock(return_value=_model(OperationType.RESTORE))

        result = runner.invoke(cli, ["schedule-restore", "--config", str(config_file), BACKUP_KEY])

    assert result.exit_code == 0
    assert f'"backupkey": "{BACKUP_KEY}"' in result.output
    mock_scheduler_class.return_value.schedule_restore.assert_awaited_once_with(BACKUP_KEY)


def test_schedule_restore_conflict(runner: CliRunner, config_file: Path, context) -> None:
    """Test a running operation blocks scheduling."""
    with patch("restore.main.OperationScheduler") as mock_scheduler_class:
        mock_scheduler_class.return_value.schedule_restore = AsyncMock(
            side_effect=OperationConflictError("Another operation is in progress")
        )

        result = runner.invoke(cli, ["schedule-restore", "--config", str(config_file), BACKUP_KEY])

    assert result.exit_code == 1


def test_schedule_dryrun_and_run(runner: CliRunner, config_file: Path, context) -> None:
    """Test --run prints the dry run report."""
    finished = _model(OperationType.DRYRUN).set_status(OperationStatus.FINISHED)
    finished.details["report"] = {"status": "valid"}
    context.operations.get_by_id = AsyncMock(return_value=finished)
    with patch("restore.main.OperationScheduler") as mock_scheduler_class:
        scheduler = mock_scheduler_class.return_value
        scheduler.schedule_dryrun = AsyncMock(return_value=_model(OperationType.DRYRUN))
        scheduler.tick = AsyncMock(return_value=1)

        result = runner.invoke(cli, ["schedule-dryrun", "--config", str(config_file), BACKUP_KEY, "--run"])

    assert result.exit_code == 0
    assert '"status": "finished"' in result.output
    assert '"status": "valid"' in result.output


class TestListSegments:
    """Tests for the list-segments command."""

    def test_lists_segments(self, runner, config_file, remote_dir):
        backup_dir = remote_dir / BACKUP_KEY
        backup_dir.mkdir(parents=True)
        (backup_dir / "dbdump-1.zip").write_bytes(b"xx")
        (backup_dir / "dbstructure.zip").write_bytes(b"x")

        result = runner.invoke(cli, ["list-segments", "--config", str(config_file), BACKUP_KEY])

        assert result.exit_code == 0
        assert "2 file(s)" in result.output
        assert result.output.index("dbdump-1.zip") < result.output.index("dbstructure.zip")

    def test_no_segments(self, runner, config_file):
        result = runner.invoke(cli, ["list-segments", "--config", str(config_file), "missing"])

        assert result.exit_code == 0
        assert "No segments found" in result.output
