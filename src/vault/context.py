"""Shared services handed to every operation."""

import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from vault.backup_file import BackupFileStore
from vault.config import VaultConfig
from vault.database import DatabaseManager
from vault.metrics import VaultMetrics
from vault.operation_store import OperationStore
from vault.sql_generator import SqlGenerator, get_generator
from vault.transport import ArchiveTransport, create_transport
from utils.logging import get_logger


@dataclass
class VaultContext:
    """Dependencies of backup, restore and check operations."""

    config: VaultConfig
    db: DatabaseManager
    transport: ArchiveTransport
    operations: OperationStore
    backup_files: BackupFileStore
    metrics: Optional[VaultMetrics] = None
    error_reporter: Optional[Callable[[BaseException], None]] = None
    logger: Optional[structlog.BoundLogger] = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger("vault")

    @property
    def generator(self) -> SqlGenerator:
        return get_generator(self.config.database.family, self.config.database.table_prefix)

    def backup_work_dir(self) -> Path:
        return Path(self.config.backup.work_dir or tempfile.gettempdir())

    def restore_work_dir(self) -> Path:
        return Path(self.config.restore.work_dir or tempfile.gettempdir())

    @classmethod
    def from_config(
        cls,
        config: VaultConfig,
        metrics: Optional[VaultMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> "VaultContext":
        """Build the context for a configuration; the database still has to be connected."""
        logger = logger or get_logger("vault")
        db = DatabaseManager(config.database, logger=logger)
        return cls(
            config=config,
            db=db,
            transport=create_transport(config.storage, logger),
            operations=OperationStore(db, config.operations.log_max_length, logger),
            backup_files=BackupFileStore(db, logger),
            metrics=metrics,
            logger=logger,
        )

    async def open(self) -> None:
        """Connect to the database and create the vault tables."""
        await self.db.connect()
        await self.operations.ensure_schema()
        await self.backup_files.ensure_schema()

    async def close(self) -> None:
        await self.db.disconnect()
