"""Persistence of operations and their logs."""

import json
import zlib
from datetime import datetime
from typing import Any, Optional

import structlog

from vault.database import DatabaseManager
from vault.exceptions import DatabaseError
from vault.operation import LogLevel, OperationLog, OperationModel, OperationStatus, OperationType, utcnow
from utils.logging import get_logger

OPERATION_TABLE = "vault_operation"
LOG_TABLE = "vault_log"

# Advisory lock serializing operation claims across processes.
CLAIM_LOCK_KEY = zlib.crc32(OPERATION_TABLE.encode("ascii"))


class OperationStore:
    """Stores operations in the site database."""

    def __init__(
        self,
        db_manager: Optional[DatabaseManager],
        log_max_length: int = 1333,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize operation store.

        Args:
            db_manager: Database manager
            log_max_length: Log messages are truncated to this length
            logger: Optional logger instance
        """
        self.db = db_manager
        self.log_max_length = log_max_length
        self.logger = logger or get_logger("operation_store")

    async def ensure_schema(self) -> None:
        """Create the operation and log tables if they don't exist."""
        await self.db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {OPERATION_TABLE} (
                id BIGSERIAL PRIMARY KEY,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                backupkey TEXT,
                details JSONB NOT NULL DEFAULT '{{}}',
                remotedetails JSONB NOT NULL DEFAULT '{{}}',
                accesskey TEXT,
                parentid BIGINT,
                pid INTEGER,
                timecreated TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                timemodified TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        await self.db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {LOG_TABLE} (
                id BIGSERIAL PRIMARY KEY,
                operationid BIGINT NOT NULL,
                loglevel TEXT NOT NULL,
                message TEXT NOT NULL,
                pid INTEGER,
                timecreated TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )

    def _from_row(self, row: dict[str, Any]) -> OperationModel:
        data = dict(row)
        for key in ("details", "remotedetails"):
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key])
        return OperationModel.from_dict(data)

    async def save(self, model: OperationModel) -> OperationModel:
        """Insert or update an operation; every save is a heartbeat.

        Args:
            model: Operation to save

        Returns:
            The same model, with id set after insert

        Raises:
            DatabaseError: If the operation can not be saved
        """
        model.timemodified = utcnow()
        values = (
            str(model.type),
            str(model.status),
            model.backupkey,
            json.dumps(model.details, default=str),
            json.dumps(model.remotedetails, default=str),
            model.accesskey,
            model.parentid,
            model.pid,
            model.timemodified,
        )
        try:
            if model.id is None:
                model.id = await self.db.fetchval(
                    f"""
                    INSERT INTO {OPERATION_TABLE} (
                        type, status, backupkey, details, remotedetails,
                        accesskey, parentid, pid, timecreated, timemodified
                    )
                    VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7, $8, $10, $9)
                    RETURNING id
                    """,
                    *values,
                    model.timecreated,
                )
            else:
                await self.db.execute(
                    f"""
                    UPDATE {OPERATION_TABLE}
                    SET type = $1, status = $2, backupkey = $3, details = $4::jsonb,
                        remotedetails = $5::jsonb, accesskey = $6, parentid = $7,
                        pid = $8, timemodified = $9
                    WHERE id = $10
                    """,
                    *values,
                    model.id,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to save operation: {e}",
                context={"operation": model.id, "type": str(model.type)},
            ) from e
        return model

    async def claim(
        self,
        model: OperationModel,
        pid: int,
        exclusive_types: Optional[tuple[OperationType, ...]] = None,
    ) -> bool:
        """Atomically move an operation to in progress for one process.

        The row is only updated if its status and last heartbeat still match the model, so
        of several processes that read the same scheduled (or stuck) operation exactly one
        claims it. With exclusive_types, the claim also fails while another operation of
        one of these types is in progress. Claims are serialized with a transaction-level
        advisory lock.

        Args:
            model: Operation as last read by this process
            pid: Process claiming the operation
            exclusive_types: Operation types that must not run concurrently

        Returns:
            True if this process now owns the operation

        Raises:
            DatabaseError: If the claim query fails
        """
        now = utcnow()
        try:
            async with self.db.acquire_connection() as conn:
                async with conn.transaction():
                    await conn.execute("SELECT pg_advisory_xact_lock($1)", CLAIM_LOCK_KEY)
                    claimed = await conn.fetchval(
                        f"""
                        UPDATE {OPERATION_TABLE}
                        SET status = $2, pid = $3, timemodified = $4
                        WHERE id = $1 AND status = $5 AND timemodified = $6
                          AND ($7::text[] IS NULL OR NOT EXISTS (
                              SELECT 1 FROM {OPERATION_TABLE} other
                              WHERE other.id <> $1
                                AND other.status = $2
                                AND other.type = ANY($7::text[])
                          ))
                        RETURNING id
                        """,
                        model.id,
                        str(OperationStatus.INPROGRESS),
                        pid,
                        now,
                        str(model.status),
                        model.timemodified,
                        [str(t) for t in exclusive_types] if exclusive_types else None,
                    )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to claim operation: {e}",
                context={"operation": model.id, "type": str(model.type)},
            ) from e

        if claimed is None:
            self.logger.info("Operation not claimed", operation_id=model.id, status=str(model.status))
            return False
        model.set_status(OperationStatus.INPROGRESS)
        model.pid = pid
        model.timemodified = now
        return True

    async def get_by_id(self, operation_id: int) -> Optional[OperationModel]:
        row = await self.db.fetchone(f"SELECT * FROM {OPERATION_TABLE} WHERE id = $1", operation_id)
        return self._from_row(row) if row else None

    async def get_by_access_key(self, accesskey: str) -> Optional[OperationModel]:
        if not accesskey:
            return None
        row = await self.db.fetchone(f"SELECT * FROM {OPERATION_TABLE} WHERE accesskey = $1", accesskey)
        return self._from_row(row) if row else None

    async def get_records(
        self,
        statuses: Optional[list[OperationStatus]] = None,
        types: Optional[list[OperationType]] = None,
    ) -> list[OperationModel]:
        """Operations filtered by status and type, oldest first."""
        rows = await self.db.fetch(
            f"""
            SELECT * FROM {OPERATION_TABLE}
            WHERE ($1::text[] IS NULL OR status = ANY($1::text[]))
              AND ($2::text[] IS NULL OR type = ANY($2::text[]))
            ORDER BY id
            """,
            [str(s) for s in statuses] if statuses else None,
            [str(t) for t in types] if types else None,
        )
        return [self._from_row(dict(row)) for row in rows]

    async def add_log(
        self,
        model: OperationModel,
        message: str,
        level: LogLevel = LogLevel.INFO,
        pid: Optional[int] = None,
    ) -> OperationLog:
        """Append a log entry, truncating overly long messages."""
        entry = OperationLog(
            operationid=model.id,
            message=message[: self.log_max_length],
            loglevel=LogLevel(level),
            pid=pid,
        )
        entry.id = await self.db.fetchval(
            f"""
            INSERT INTO {LOG_TABLE} (operationid, loglevel, message, pid, timecreated)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING id
            """,
            entry.operationid,
            str(entry.loglevel),
            entry.message,
            entry.pid,
            entry.timecreated,
        )
        return entry

    async def get_logs(self, operation_id: int, since_id: int = 0) -> list[OperationLog]:
        rows = await self.db.fetch(
            f"SELECT * FROM {LOG_TABLE} WHERE operationid = $1 AND id > $2 ORDER BY id",
            operation_id,
            since_id,
        )
        return [
            OperationLog(
                id=row["id"],
                operationid=row["operationid"],
                loglevel=LogLevel(row["loglevel"]),
                message=row["message"],
                pid=row["pid"],
                timecreated=row["timecreated"],
            )
            for row in rows
        ]

    async def get_last_log_time(self, operation_id: int) -> Optional[datetime]:
        return await self.db.fetchval(
            f"SELECT MAX(timecreated) FROM {LOG_TABLE} WHERE operationid = $1",
            operation_id,
        )

    async def get_last_modified(self, model: OperationModel) -> datetime:
        """Latest activity of an operation: creation, last save or last log entry."""
        candidates = [model.timecreated, model.timemodified]
        if model.id is not None:
            last_log = await self.get_last_log_time(model.id)
            if last_log is not None:
                candidates.append(last_log)
        return max(candidates)
