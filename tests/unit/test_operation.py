"""Unit tests for operation records, their persistence and lifecycle."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from vault.exceptions import OperationConflictError, OperationError, SchemaError
from vault.operation import (
    ACCESS_KEY_LENGTH,
    EXCLUSIVE_TYPES,
    LogLevel,
    OperationLog,
    OperationModel,
    OperationStatus,
    OperationType,
    generate_access_key,
)
from vault.operation_store import CLAIM_LOCK_KEY, OperationStore
from vault.operations import OperationBase

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingOperation(OperationBase):
    """Operation that records its execution and optionally fails."""

    operation_type = OperationType.CHECK

    def __init__(self, *args, error=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.error = error
        self.executed = False

    async def execute(self):
        self.executed = True
        if self.error:
            raise self.error


class RecordingRestore(RecordingOperation):
    operation_type = OperationType.RESTORE


@asynccontextmanager
async def _yielding(value):
    yield value


def _claim_connection(claimed_id):
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetchval = AsyncMock(return_value=claimed_id)
    conn.transaction = MagicMock(side_effect=lambda: _yielding(None))
    return conn


class TestOperationModel:
    """Tests for OperationModel."""

    def test_is_stuck(self):
        """Test only in-progress operations idle past the timeout are stuck."""
        model = OperationModel(OperationType.BACKUP, OperationStatus.INPROGRESS)

        assert model.is_stuck(NOW - timedelta(seconds=601), 600, now=NOW)
        assert not model.is_stuck(NOW - timedelta(seconds=599), 600, now=NOW)

        model.set_status(OperationStatus.SCHEDULED)
        assert not model.is_stuck(NOW - timedelta(days=1), 600, now=NOW)

    def test_access_key(self):
        """Test the access key is generated once."""
        model = OperationModel(OperationType.RESTORE)
        key = model.ensure_access_key()

        assert len(key) == ACCESS_KEY_LENGTH
        assert key.isalnum()
        assert model.ensure_access_key() == key
        assert generate_access_key() != key

    def test_dict_conversion(self):
        """Test to_dict and from_dict agree."""
        model = OperationModel(
            OperationType.BACKUP,
            OperationStatus.FINISHED,
            backupkey="20240501120000-abc",
            details={"totalsize": 10},
            timecreated=NOW,
            id=3,
        )

        restored = OperationModel.from_dict(model.to_dict())

        assert restored.to_dict() == model.to_dict()
        assert restored.timecreated == NOW

    def test_set_details_merges(self):
        """Test details are merged, not replaced."""
        model = OperationModel(OperationType.RESTORE, details={"stages": ["before"]})
        model.set_details({"report": {}})
        assert set(model.get_details()) == {"stages", "report"}


class TestOperationLog:
    """Tests for OperationLog.format."""

    def test_format_info(self):
        """Test info entries carry no level marker."""
        entry = OperationLog(1, "Started", timecreated=NOW)
        assert entry.format() == "[2024-05-01 12:00:00] Started"

    def test_format_warning(self):
        """Test other levels are marked."""
        entry = OperationLog(1, "Skipped file", LogLevel.WARNING, timecreated=NOW)
        assert entry.format(with_time=False) == "[warning] Skipped file"


class TestOperationStore:
    """Tests for OperationStore against a mocked database."""

    @pytest.mark.asyncio
    async def test_insert_then_update(self, mock_db):
        """Test the first save inserts and later saves update."""
        mock_db.fetchval = AsyncMock(return_value=7)
        store = OperationStore(mock_db)
        model = OperationModel(OperationType.BACKUP, details={"a": 1})

        await store.save(model)
        assert model.id == 7
        assert "INSERT INTO vault_operation" in mock_db.fetchval.await_args.args[0]

        await store.save(model)
        sql, *params = mock_db.execute.await_args.args
        assert "UPDATE vault_operation" in sql
        assert params[-1] == 7
        assert params[3] == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_log_truncated(self, mock_db):
        """Test long log messages are truncated."""
        mock_db.fetchval = AsyncMock(return_value=1)
        store = OperationStore(mock_db, log_max_length=10)
        model = OperationModel(OperationType.BACKUP, id=1)

        entry = await store.add_log(model, "x" * 50, LogLevel.ERROR)

        assert entry.message == "x" * 10
        assert entry.loglevel == LogLevel.ERROR

    @pytest.mark.asyncio
    async def test_last_modified_includes_logs(self, mock_db):
        """Test log entries count as activity."""
        mock_db.fetchval = AsyncMock(return_value=NOW + timedelta(minutes=5))
        store = OperationStore(mock_db)
        model = OperationModel(OperationType.BACKUP, timecreated=NOW, id=1)

        assert await store.get_last_modified(model) == NOW + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_details_parsed_from_json(self, mock_db):
        """Test JSON columns returned as text are decoded."""
        mock_db.fetchone = AsyncMock(
            return_value={"id": 2, "type": "restore", "status": "scheduled", "details": '{"stages": ["before"]}'}
        )
        store = OperationStore(mock_db)

        model = await store.get_by_id(2)

        assert model.type == OperationType.RESTORE
        assert model.details == {"stages": ["before"]}

    @pytest.mark.asyncio
    async def test_claim_is_conditional_update(self, mock_db):
        """Test a claim locks, then updates only the row as it was read."""
        conn = _claim_connection(4)
        mock_db.acquire_connection = MagicMock(side_effect=lambda: _yielding(conn))
        store = OperationStore(mock_db)
        model = OperationModel(OperationType.BACKUP, timecreated=NOW, id=4)

        assert await store.claim(model, 321, EXCLUSIVE_TYPES)

        conn.execute.assert_awaited_once_with("SELECT pg_advisory_xact_lock($1)", CLAIM_LOCK_KEY)
        sql, *params = conn.fetchval.await_args.args
        assert "UPDATE vault_operation" in sql
        assert "NOT EXISTS" in sql
        assert params == [4, "inprogress", 321, model.timemodified, "scheduled", NOW, ["backup", "restore"]]
        assert model.status == OperationStatus.INPROGRESS
        assert model.pid == 321

    @pytest.mark.asyncio
    async def test_claim_lost(self, mock_db):
        """Test a row changed by another process is not claimed."""
        conn = _claim_connection(None)
        mock_db.acquire_connection = MagicMock(side_effect=lambda: _yielding(conn))
        store = OperationStore(mock_db)
        model = OperationModel(OperationType.CHECK, timecreated=NOW, id=5)

        assert not await store.claim(model, 321)

        assert conn.fetchval.await_args.args[-1] is None
        assert model.status == OperationStatus.SCHEDULED
        assert model.pid is None
        assert model.timemodified == NOW


class TestOperationBase:
    """Tests for the operation lifecycle."""

    @pytest.mark.asyncio
    async def test_successful_run(self, vault_context, operation_store):
        """Test a scheduled operation ends finished."""
        model = await RecordingOperation.schedule(vault_context)
        operation = RecordingOperation(model, vault_context)

        assert await operation.safe_start_and_execute(pid=123)

        assert operation.executed
        assert model.status == OperationStatus.FINISHED
        assert model.pid == 123
        assert model.accesskey

    @pytest.mark.asyncio
    async def test_failure_during_execute(self, vault_context, operation_store):
        """Test an error while running fails the operation with details."""
        model = await RecordingOperation.schedule(vault_context)
        error = SchemaError("Broken table", context={"table": "config"})
        operation = RecordingOperation(model, vault_context, error=error)

        assert not await operation.safe_start_and_execute()

        assert model.status == OperationStatus.FAILED
        payload = model.details["error"]
        assert payload["message"] == "Broken table"
        assert payload["class"] == "SchemaError"
        assert payload["details"] == {"table": "config"}
        assert payload["environment"]["dbfamily"] == "postgres"
        assert "Traceback" in payload["traceback"]
        assert operation_store.messages(model.id) == ["Broken table"]

    @pytest.mark.asyncio
    async def test_failure_before_start(self, vault_context):
        """Test failing a scheduled operation marks it failed to start."""
        model = await RecordingOperation.schedule(vault_context)
        operation = RecordingOperation(model, vault_context)

        await operation.mark_as_failed(RuntimeError("no disk"))

        assert model.status == OperationStatus.FAILEDTOSTART

    @pytest.mark.asyncio
    async def test_restore_waits_for_running_backup(self, vault_context, operation_store):
        """Test a restore is not started while a backup is in progress and stays scheduled."""
        await operation_store.save(OperationModel(OperationType.BACKUP, OperationStatus.INPROGRESS))
        model = await RecordingRestore.schedule(vault_context)
        operation = RecordingRestore(model, vault_context)

        with pytest.raises(OperationConflictError):
            await operation.start(pid=1)
        assert not await operation.safe_start_and_execute(pid=1)

        assert not operation.executed
        assert not operation.started
        assert model.status == OperationStatus.SCHEDULED
        assert "error" not in model.details
        assert operation_store.messages(model.id) == []

    @pytest.mark.asyncio
    async def test_check_runs_while_backup_runs(self, vault_context, operation_store):
        """Test checks are not exclusive with backups."""
        await operation_store.save(OperationModel(OperationType.BACKUP, OperationStatus.INPROGRESS))
        model = await RecordingOperation.schedule(vault_context)

        assert await RecordingOperation(model, vault_context).safe_start_and_execute(pid=1)
        assert model.status == OperationStatus.FINISHED

    @pytest.mark.asyncio
    async def test_finished_operation_can_not_restart(self, vault_context):
        """Test ended operations are not started again."""
        model = await RecordingOperation.schedule(vault_context)
        model.set_status(OperationStatus.FINISHED)

        with pytest.raises(OperationError):
            await RecordingOperation(model, vault_context).start()

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, vault_context):
        """Test the final status is reported to metrics."""
        vault_context.metrics = MagicMock()
        model = await RecordingOperation.schedule(vault_context)

        await RecordingOperation(model, vault_context).safe_start_and_execute()

        vault_context.metrics.start_stage_timer.assert_called_once_with("total", key=f"check:{model.id}")
        vault_context.metrics.record_operation_status.assert_called_once_with("check", "finished")
