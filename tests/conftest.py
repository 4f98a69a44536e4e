"""Pytest configuration and shared fixtures."""

import asyncio
import copy
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from vault.backup_file import BackupFile, BackupFileStore
from vault.config import VaultConfig
from vault.context import VaultContext
from vault.database import DatabaseManager
from vault.operation import LogLevel, OperationLog, OperationModel, OperationStatus, OperationType, utcnow
from vault.operation_store import OperationStore
from vault.transport import LocalTransport


class InMemoryOperationStore(OperationStore):
    """Operation store keeping records in memory."""

    def __init__(self, log_max_length: int = 1333, fresh_rows: bool = False) -> None:
        """With fresh_rows, reads return copies and yield to the event loop like a database."""
        super().__init__(None, log_max_length)
        self.fresh_rows = fresh_rows
        self.records: dict[int, OperationModel] = {}
        self.logs: list[OperationLog] = []

    def _row(self, model: OperationModel) -> OperationModel:
        return copy.deepcopy(model) if self.fresh_rows else model

    async def ensure_schema(self) -> None:
        return None

    async def save(self, model: OperationModel) -> OperationModel:
        model.timemodified = utcnow()
        if model.id is None:
            model.id = max(self.records, default=0) + 1
        self.records[model.id] = model
        return model

    async def get_by_id(self, operation_id: int) -> Optional[OperationModel]:
        record = self.records.get(operation_id)
        return self._row(record) if record else None

    async def get_by_access_key(self, accesskey: str) -> Optional[OperationModel]:
        record = next((m for m in self.records.values() if accesskey and m.accesskey == accesskey), None)
        return self._row(record) if record else None

    async def get_records(
        self,
        statuses: Optional[list[OperationStatus]] = None,
        types: Optional[list[OperationType]] = None,
    ) -> list[OperationModel]:
        if self.fresh_rows:
            await asyncio.sleep(0)
        return [
            self._row(m)
            for _, m in sorted(self.records.items())
            if (not statuses or m.status in statuses) and (not types or m.type in types)
        ]

    async def claim(
        self,
        model: OperationModel,
        pid: int,
        exclusive_types: Optional[tuple[OperationType, ...]] = None,
    ) -> bool:
        stored = self.records.get(model.id)
        if stored is None or (stored.status, stored.timemodified) != (model.status, model.timemodified):
            return False
        if exclusive_types and any(
            other.id != model.id and other.status == OperationStatus.INPROGRESS and other.type in exclusive_types
            for other in self.records.values()
        ):
            return False
        model.set_status(OperationStatus.INPROGRESS)
        model.pid = pid
        await self.save(model)
        return True

    async def add_log(
        self,
        model: OperationModel,
        message: str,
        level: LogLevel = LogLevel.INFO,
        pid: Optional[int] = None,
    ) -> OperationLog:
        entry = OperationLog(
            operationid=model.id,
            message=message[: self.log_max_length],
            loglevel=LogLevel(level),
            pid=pid,
            id=len(self.logs) + 1,
        )
        self.logs.append(entry)
        return entry

    async def get_logs(self, operation_id: int, since_id: int = 0) -> list[OperationLog]:
        return [e for e in self.logs if e.operationid == operation_id and e.id > since_id]

    async def get_last_log_time(self, operation_id: int) -> Optional[datetime]:
        times = [e.timecreated for e in self.logs if e.operationid == operation_id]
        return max(times) if times else None

    def messages(self, operation_id: int) -> list[str]:
        return [e.message for e in self.logs if e.operationid == operation_id]


class InMemoryBackupFileStore(BackupFileStore):
    """Backup file store keeping records in memory."""

    def __init__(self) -> None:
        super().__init__(None)
        self.records: dict[tuple[int, str, int], BackupFile] = {}
        self.saves = 0

    async def ensure_schema(self) -> None:
        return None

    async def save(self, record: BackupFile) -> BackupFile:
        key = (record.operationid, record.filetype, record.seq)
        if key not in self.records:
            record.id = len(self.records) + 1
        self.records[key] = record
        self.saves += 1
        return record

    async def get_files(self, operationid: int, filetype: Optional[str] = None) -> list[BackupFile]:
        return [
            BackupFile.from_dict(r.to_dict() | {"timecreated": r.timecreated, "timemodified": r.timemodified})
            for key, r in sorted(self.records.items())
            if key[0] == operationid and (filetype is None or key[1] == filetype)
        ]


def make_config(tmp_path: Path, **sections: Any) -> VaultConfig:
    data: dict[str, Any] = {
        "version": "1.0",
        "database": {"name": "site", "user": "vault", "password": "secret", "table_prefix": "mdl_"},
        "storage": {"type": "local", "local_dir": str(tmp_path / "remote")},
        "backup": {"work_dir": str(tmp_path / "work")},
        "restore": {"work_dir": str(tmp_path / "restore-work")},
    }
    for name, values in sections.items():
        data[name] = {**data.get(name, {}), **values}
    return VaultConfig.model_validate(data)


@pytest.fixture
def vault_config(tmp_path: Path) -> VaultConfig:
    return make_config(tmp_path)


@pytest.fixture
def mock_db() -> MagicMock:
    db = MagicMock(spec=DatabaseManager)
    db.family = "postgres"
    db.prefix = "mdl_"
    db.execute = AsyncMock(return_value="OK")
    db.fetch = AsyncMock(return_value=[])
    db.fetchone = AsyncMock(return_value=None)
    db.fetchval = AsyncMock(return_value=None)
    db.get_server_version = AsyncMock(return_value="16.2")
    return db


@pytest.fixture
def operation_store() -> InMemoryOperationStore:
    return InMemoryOperationStore()


@pytest.fixture
def shared_operation_store() -> InMemoryOperationStore:
    """Store as seen by several worker processes, each reading its own rows."""
    return InMemoryOperationStore(fresh_rows=True)


@pytest.fixture
def backup_file_store() -> InMemoryBackupFileStore:
    return InMemoryBackupFileStore()


@pytest.fixture
def vault_context(
    vault_config: VaultConfig,
    mock_db: MagicMock,
    operation_store: InMemoryOperationStore,
    backup_file_store: InMemoryBackupFileStore,
) -> VaultContext:
    return VaultContext(
        config=vault_config,
        db=mock_db,
        transport=LocalTransport(vault_config.storage),
        operations=operation_store,
        backup_files=backup_file_store,
    )


@pytest.fixture
def config_factory(tmp_path: Path):
    """Build a configuration with some sections overridden."""

    def factory(**sections: Any) -> VaultConfig:
        return make_config(tmp_path, **sections)

    return factory
