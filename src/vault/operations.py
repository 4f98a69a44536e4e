"""Base class for operations: lifecycle, heartbeat, operation log and failure recording."""

import os
import platform
import traceback
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

from vault import __version__
from vault.context import VaultContext
from vault.exceptions import OperationConflictError, OperationError, VaultError
from vault.operation import EXCLUSIVE_TYPES, LogLevel, OperationLog, OperationModel, OperationStatus, OperationType
from utils.logging import get_logger


def environment_fingerprint(family: str) -> dict[str, Any]:
    """Runtime environment recorded with failures."""
    return {
        "python": platform.python_version(),
        "platform": platform.release(),
        "dbfamily": family,
        "version": __version__,
    }


class OperationBase(ABC):
    """One running operation bound to its persisted model."""

    operation_type: OperationType

    def __init__(
        self,
        model: OperationModel,
        context: VaultContext,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize operation.

        Args:
            model: Persisted operation record
            context: Shared services
            logger: Optional logger instance
        """
        self.model = model
        self.context = context
        self.logger = (logger or get_logger(f"operation.{model.type}")).bind(operation_id=model.id)
        self.started = False

    @classmethod
    async def schedule(
        cls,
        context: VaultContext,
        backupkey: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        parentid: Optional[int] = None,
    ) -> OperationModel:
        """Create a scheduled record for this operation type."""
        model = OperationModel(
            type=cls.operation_type,
            status=OperationStatus.SCHEDULED,
            backupkey=backupkey,
            details=details,
            parentid=parentid,
        )
        model.ensure_access_key()
        return await context.operations.save(model)

    async def save(self) -> None:
        await self.context.operations.save(self.model)

    async def heartbeat(self) -> None:
        """Record activity so the operation is not considered stuck."""
        await self.save()

    async def add_to_log(self, message: str, level: LogLevel = LogLevel.INFO) -> OperationLog:
        """Append to the persisted operation log and mirror the message to the process log."""
        log_method = self.logger.warning if level in (LogLevel.WARNING, LogLevel.ERROR) else self.logger.info
        log_method(message, level=str(level))
        return await self.context.operations.add_log(self.model, message, level, os.getpid())

    async def start(self, pid: Optional[int] = None) -> None:
        """Claim a scheduled (or stuck in-progress) operation and move it to in progress.

        Raises:
            OperationError: If the operation already ended
            OperationConflictError: If another process claimed the operation first, or
                another backup or restore is in progress
        """
        if self.model.status not in (OperationStatus.SCHEDULED, OperationStatus.INPROGRESS):
            raise OperationError(
                f"Operation can not be started from status {self.model.status}",
                context={"operation": self.model.id},
            )
        exclusive = EXCLUSIVE_TYPES if self.model.type in EXCLUSIVE_TYPES else None
        if not await self.context.operations.claim(self.model, pid or os.getpid(), exclusive):
            raise OperationConflictError(
                "Operation was started by another process or another backup or restore is in progress",
                context={"operation": self.model.id, "status": str(self.model.status)},
            )
        self.started = True
        self.model.ensure_access_key()
        await self.save()
        if self.context.metrics:
            self.context.metrics.start_stage_timer("total", key=f"{self.model.type}:{self.model.id}")

    @abstractmethod
    async def execute(self) -> None:
        """Run the operation; raise to fail it."""

    async def mark_as_finished(self) -> None:
        self.model.set_status(OperationStatus.FINISHED)
        await self.save()
        self._record_final_status()

    async def mark_as_failed(self, error: BaseException) -> None:
        """Record a failure.

        An operation that was in progress becomes failed, anything else failedtostart. The
        error message, traceback and runtime environment are stored in the details.
        """
        was_in_progress = self.model.status == OperationStatus.INPROGRESS
        self.model.set_status(OperationStatus.FAILED if was_in_progress else OperationStatus.FAILEDTOSTART)

        message = error.message if isinstance(error, VaultError) else str(error)
        payload: dict[str, Any] = {
            "message": message or type(error).__name__,
            "class": type(error).__name__,
            "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            "environment": environment_fingerprint(self.context.config.database.family),
        }
        if isinstance(error, VaultError) and error.context:
            payload["details"] = error.context
        self.model.set_error(payload)
        await self.save()
        await self.add_to_log(payload["message"], LogLevel.ERROR)
        if self.context.metrics:
            self.context.metrics.record_error(type(error).__name__)
        self._record_final_status()

    def _record_final_status(self) -> None:
        if self.context.metrics:
            self.context.metrics.stop_stage_timer(
                str(self.model.type), "total", key=f"{self.model.type}:{self.model.id}"
            )
            self.context.metrics.record_operation_status(str(self.model.type), str(self.model.status))

    async def safe_start_and_execute(self, pid: Optional[int] = None) -> bool:
        """Start and execute, recording any failure on the operation.

        An operation that could not be claimed is left untouched for its owner.

        Returns:
            True if the operation finished
        """
        try:
            await self.start(pid)
            await self.execute()
        except Exception as e:
            if isinstance(e, OperationConflictError) and not self.started:
                self.logger.warning("Operation not started", error=e.message)
                return False
            self.logger.error("Operation failed", error=str(e), exc_info=True)
            await self.mark_as_failed(e)
            return False
        if self.model.status == OperationStatus.INPROGRESS:
            await self.mark_as_finished()
        return self.model.status == OperationStatus.FINISHED
