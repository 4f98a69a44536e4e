"""Backup file records: one row per archive segment of an operation."""

import json
import re
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

import structlog

from vault.database import DatabaseManager
from vault.exceptions import DatabaseError
from vault.operation import utcnow
from utils.logging import get_logger

BACKUP_FILE_TABLE = "vault_backup_file"

STREAM_DBSTRUCTURE = "dbstructure"
STREAM_DBDUMP = "dbdump"
STREAM_DATAROOT = "dataroot"
STREAM_FILEDIR = "filedir"
STREAMS = (STREAM_DBSTRUCTURE, STREAM_DBDUMP, STREAM_DATAROOT, STREAM_FILEDIR)

# Uploaded after all segments; a backup without it did not finish.
FINISHED_MARKER = "__finished__.json"

_SEGMENT_NAME = re.compile(r"^(?P<filetype>[a-z]+)(?:-(?P<seq>\d+))?\.zip$")


class BackupFileStatus(StrEnum):
    """Status of a segment."""

    SCHEDULED = "scheduled"
    INPROGRESS = "inprogress"
    FINISHED = "finished"
    FAILED = "failed"


def segment_name(filetype: str, seq: int) -> str:
    """Name of a segment: ``dbdump.zip`` for seq 0, ``dbdump-3.zip`` afterwards."""
    return f"{filetype}.zip" if seq == 0 else f"{filetype}-{seq}.zip"


def parse_segment_name(name: str) -> Optional[tuple[str, int]]:
    """Inverse of segment_name; None for names that are not segments."""
    match = _SEGMENT_NAME.match(name.rsplit("/", 1)[-1])
    if not match or match.group("filetype") not in STREAMS:
        return None
    return match.group("filetype"), int(match.group("seq") or 0)


class BackupFile:
    """One archive segment of a backup (written) or of a restore (read)."""

    def __init__(
        self,
        operationid: int,
        filetype: str,
        seq: int,
        status: BackupFileStatus = BackupFileStatus.INPROGRESS,
        filesize: int = 0,
        origsize: int = 0,
        etag: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        timecreated: Optional[datetime] = None,
        timemodified: Optional[datetime] = None,
        id: Optional[int] = None,
    ) -> None:
        self.id = id
        self.operationid = operationid
        self.filetype = filetype
        self.seq = seq
        self.status = BackupFileStatus(status)
        self.filesize = filesize
        self.origsize = origsize
        self.etag = etag
        self.details: dict[str, Any] = dict(details or {})
        self.timecreated = timecreated or utcnow()
        self.timemodified = timemodified or self.timecreated

    @property
    def name(self) -> str:
        return segment_name(self.filetype, self.seq)

    @property
    def position(self) -> int:
        """First unconsumed unit of the segment (restore cursor)."""
        return int(self.details.get("position", 0))

    def to_dict(self) -> dict[str, Any]:
        """Convert backup file to dictionary."""
        return {
            "id": self.id,
            "operationid": self.operationid,
            "filetype": self.filetype,
            "seq": self.seq,
            "status": str(self.status),
            "filesize": self.filesize,
            "origsize": self.origsize,
            "etag": self.etag,
            "details": self.details,
            "timecreated": self.timecreated.isoformat(),
            "timemodified": self.timemodified.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupFile":
        details = data.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return cls(
            id=data.get("id"),
            operationid=data["operationid"],
            filetype=data["filetype"],
            seq=int(data["seq"]),
            status=data.get("status", BackupFileStatus.INPROGRESS),
            filesize=int(data.get("filesize") or 0),
            origsize=int(data.get("origsize") or 0),
            etag=data.get("etag"),
            details=details,
            timecreated=data.get("timecreated"),
            timemodified=data.get("timemodified"),
        )


class BackupFileStore:
    """Stores backup file records in the site database."""

    def __init__(
        self,
        db_manager: Optional[DatabaseManager],
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.db = db_manager
        self.logger = logger or get_logger("backup_file_store")

    async def ensure_schema(self) -> None:
        """Create the backup file table if it doesn't exist."""
        await self.db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {BACKUP_FILE_TABLE} (
                id BIGSERIAL PRIMARY KEY,
                operationid BIGINT NOT NULL,
                filetype TEXT NOT NULL,
                seq INTEGER NOT NULL,
                status TEXT NOT NULL,
                filesize BIGINT NOT NULL DEFAULT 0,
                origsize BIGINT NOT NULL DEFAULT 0,
                etag TEXT,
                details JSONB NOT NULL DEFAULT '{{}}',
                timecreated TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                timemodified TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                UNIQUE (operationid, filetype, seq)
            )
            """
        )

    async def save(self, record: BackupFile) -> BackupFile:
        """Insert or update a record.

        Raises:
            DatabaseError: If the record can not be saved
        """
        record.timemodified = utcnow()
        try:
            record.id = await self.db.fetchval(
                f"""
                INSERT INTO {BACKUP_FILE_TABLE} (
                    operationid, filetype, seq, status, filesize, origsize,
                    etag, details, timecreated, timemodified
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10)
                ON CONFLICT (operationid, filetype, seq)
                DO UPDATE SET
                    status = EXCLUDED.status,
                    filesize = EXCLUDED.filesize,
                    origsize = EXCLUDED.origsize,
                    etag = EXCLUDED.etag,
                    details = EXCLUDED.details,
                    timemodified = EXCLUDED.timemodified
                RETURNING id
                """,
                record.operationid,
                record.filetype,
                record.seq,
                str(record.status),
                record.filesize,
                record.origsize,
                record.etag,
                json.dumps(record.details, default=str),
                record.timecreated,
                record.timemodified,
            )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to save backup file record: {e}",
                context={"operation": record.operationid, "segment": record.name},
            ) from e
        return record

    async def get_files(self, operationid: int, filetype: Optional[str] = None) -> list[BackupFile]:
        """Records of an operation ordered by filetype and seq."""
        rows = await self.db.fetch(
            f"""
            SELECT * FROM {BACKUP_FILE_TABLE}
            WHERE operationid = $1 AND ($2::text IS NULL OR filetype = $2)
            ORDER BY filetype, seq
            """,
            operationid,
            filetype,
        )
        return [BackupFile.from_dict(dict(row)) for row in rows]

    async def get_last_seq(self, operationid: int, filetype: str) -> int:
        """Highest seq recorded for the stream, -1 when there is none."""
        files = await self.get_files(operationid, filetype)
        return max((f.seq for f in files), default=-1)

    async def populate_backup_files(self, operationid: int, remote_files: list[dict[str, Any]]) -> list[BackupFile]:
        """Create scheduled records for the segments of a remote backup.

        Args:
            operationid: Restore operation id
            remote_files: Listing entries with name, size and etag

        Returns:
            Newly created records
        """
        existing = {(f.filetype, f.seq) for f in await self.get_files(operationid)}
        created = []
        for entry in remote_files:
            parsed = parse_segment_name(entry.get("name", ""))
            if parsed is None or parsed in existing:
                continue
            filetype, seq = parsed
            record = BackupFile(
                operationid=operationid,
                filetype=filetype,
                seq=seq,
                status=BackupFileStatus.SCHEDULED,
                filesize=int(entry.get("size") or 0),
                etag=entry.get("etag"),
            )
            await self.save(record)
            existing.add(parsed)
            created.append(record)
        self.logger.debug("Backup files populated", operation=operationid, created=len(created))
        return created
