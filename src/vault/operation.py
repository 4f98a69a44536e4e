"""Operation records: status, details, access key and log entries."""

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Optional, Protocol

ACCESS_KEY_LENGTH = 32


class OperationType(StrEnum):
    """Kinds of operations."""

    BACKUP = "backup"
    RESTORE = "restore"
    DRYRUN = "dryrun"
    CHECK = "check"


# At most one operation of these types may be in progress at a time.
EXCLUSIVE_TYPES = (OperationType.BACKUP, OperationType.RESTORE)


class OperationStatus(StrEnum):
    """Lifecycle states of an operation."""

    SCHEDULED = "scheduled"
    INPROGRESS = "inprogress"
    FINISHED = "finished"
    FAILED = "failed"
    FAILEDTOSTART = "failedtostart"


class LogLevel(StrEnum):
    """Levels of operation log entries."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    PROGRESS = "progress"
    VERBOSE = "verbose"


class OperationLogger(Protocol):
    """Anything that can append to an operation log."""

    async def add_to_log(self, message: str, level: LogLevel = LogLevel.INFO) -> Any: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_access_key() -> str:
    """Random key (letters and digits) granting read access to an operation's progress."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(ACCESS_KEY_LENGTH))


@dataclass
class OperationLog:
    """One entry of an operation log."""

    operationid: int
    message: str
    loglevel: LogLevel = LogLevel.INFO
    pid: Optional[int] = None
    timecreated: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def format(self, with_time: bool = True) -> str:
        """Human readable line, e.g. ``[2024-01-01 10:00:00] [error] Message``."""
        prefix = f"[{self.timecreated.strftime('%Y-%m-%d %H:%M:%S')}] " if with_time else ""
        level = "" if self.loglevel == LogLevel.INFO else f"[{self.loglevel}] "
        return f"{prefix}{level}{self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operationid": self.operationid,
            "loglevel": str(self.loglevel),
            "message": self.message,
            "pid": self.pid,
            "timecreated": self.timecreated.isoformat(),
        }


class OperationModel:
    """Persisted state of one backup, restore, dry run or check."""

    def __init__(
        self,
        type: OperationType,
        status: OperationStatus = OperationStatus.SCHEDULED,
        backupkey: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        remotedetails: Optional[dict[str, Any]] = None,
        accesskey: Optional[str] = None,
        parentid: Optional[int] = None,
        pid: Optional[int] = None,
        timecreated: Optional[datetime] = None,
        timemodified: Optional[datetime] = None,
        id: Optional[int] = None,
    ) -> None:
        """Initialize operation model.

        Args:
            type: Operation type
            status: Current status
            backupkey: Key of the backup this operation creates or restores
            details: Free-form details (error payload, stage, dedupe key, ...)
            remotedetails: Details about the backup as reported by the remote storage
            accesskey: Key for the progress endpoint
            parentid: Parent operation of a check
            pid: Process running the operation
            timecreated: Creation time
            timemodified: Last heartbeat
            id: Record id, None until saved
        """
        self.id = id
        self.type = OperationType(type)
        self.status = OperationStatus(status)
        self.backupkey = backupkey
        self.details: dict[str, Any] = dict(details or {})
        self.remotedetails: dict[str, Any] = dict(remotedetails or {})
        self.accesskey = accesskey
        self.parentid = parentid
        self.pid = pid
        self.timecreated = timecreated or utcnow()
        self.timemodified = timemodified or self.timecreated

    def set_status(self, status: OperationStatus) -> "OperationModel":
        self.status = OperationStatus(status)
        return self

    def set_details(self, details: dict[str, Any]) -> "OperationModel":
        """Merge keys into details."""
        self.details.update(details)
        return self

    def get_details(self) -> dict[str, Any]:
        return self.details

    def set_error(self, error: dict[str, Any]) -> "OperationModel":
        self.details["error"] = error
        return self

    def ensure_access_key(self) -> str:
        if not self.accesskey:
            self.accesskey = generate_access_key()
        return self.accesskey

    def is_in_progress(self) -> bool:
        return self.status == OperationStatus.INPROGRESS

    def is_stuck(self, last_modified: datetime, lock_timeout: int, now: Optional[datetime] = None) -> bool:
        """Whether an in-progress operation has shown no activity for longer than lock_timeout.

        Args:
            last_modified: Latest activity (see OperationStore.get_last_modified)
            lock_timeout: Seconds of inactivity allowed
            now: Current time
        """
        if self.status != OperationStatus.INPROGRESS:
            return False
        now = now or utcnow()
        return now - last_modified > timedelta(seconds=lock_timeout)

    def to_dict(self) -> dict[str, Any]:
        """Convert operation to dictionary."""
        return {
            "id": self.id,
            "type": str(self.type),
            "status": str(self.status),
            "backupkey": self.backupkey,
            "details": self.details,
            "remotedetails": self.remotedetails,
            "accesskey": self.accesskey,
            "parentid": self.parentid,
            "pid": self.pid,
            "timecreated": self.timecreated.isoformat(),
            "timemodified": self.timemodified.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationModel":
        """Create operation from dictionary.

        Args:
            data: Dictionary as produced by to_dict or a database row

        Returns:
            OperationModel object
        """

        def _time(value: Any) -> Optional[datetime]:
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(str(value).replace("Z", "+00:00"))

        return cls(
            id=data.get("id"),
            type=data["type"],
            status=data.get("status", OperationStatus.SCHEDULED),
            backupkey=data.get("backupkey"),
            details=data.get("details") or {},
            remotedetails=data.get("remotedetails") or {},
            accesskey=data.get("accesskey"),
            parentid=data.get("parentid"),
            pid=data.get("pid"),
            timecreated=_time(data.get("timecreated")),
            timemodified=_time(data.get("timemodified")),
        )

    def __repr__(self) -> str:
        return f"OperationModel(id={self.id}, type={self.type}, status={self.status})"
