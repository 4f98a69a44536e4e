"""Operation queue: scheduling, stuck detection and the periodic sweep."""

import os
from collections.abc import Callable
from typing import Any, Optional

import structlog

from vault.context import VaultContext
from vault.exceptions import OperationConflictError, OperationError
from vault.operation import EXCLUSIVE_TYPES, LogLevel, OperationModel, OperationStatus, OperationType
from vault.operations import OperationBase
from utils.logging import get_logger

QUEUE_INPROGRESS = "inprogress"
QUEUE_STUCK = "inprogress-stuck"
QUEUE_BACKUPS = "scheduled-backups"
QUEUE_RESTORES = "scheduled-restores"
QUEUE_OTHER = "scheduled-other"

OperationFactory = Callable[[OperationModel, VaultContext], OperationBase]


def build_default_registry() -> dict[OperationType, OperationFactory]:
    """Operation classes for every operation type."""
    from restore.site_restore import SiteRestore, SiteRestoreDryRun
    from vault.checks import check_for_model
    from vault.site_backup import SiteBackup

    return {
        OperationType.BACKUP: SiteBackup,
        OperationType.RESTORE: SiteRestore,
        OperationType.DRYRUN: SiteRestoreDryRun,
        OperationType.CHECK: check_for_model,
    }


class OperationScheduler:
    """Schedules operations and runs them one at a time from the sweep."""

    def __init__(
        self,
        context: VaultContext,
        registry: Optional[dict[OperationType, OperationFactory]] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize scheduler.

        Args:
            context: Shared services
            registry: Factory per operation type (defaults to build_default_registry())
            logger: Optional logger instance
        """
        self.context = context
        self.registry = registry if registry is not None else build_default_registry()
        self.logger = logger or get_logger("scheduler")

    def build_operation(self, model: OperationModel) -> OperationBase:
        factory = self.registry.get(model.type)
        if factory is None:
            raise OperationError(f"No operation registered for type {model.type}", context={"operation": model.id})
        return factory(model, self.context)

    async def enqueue(
        self,
        op_type: OperationType,
        payload: Optional[dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        backupkey: Optional[str] = None,
        parentid: Optional[int] = None,
    ) -> OperationModel:
        """Create a scheduled operation.

        If dedupe_key is given and a scheduled operation with the same key exists, that
        operation is returned instead of creating a new one.
        """
        if dedupe_key:
            for model in await self.context.operations.get_records([OperationStatus.SCHEDULED], [op_type]):
                if model.details.get("dedupe_key") == dedupe_key:
                    self.logger.debug("Operation already scheduled", operation_id=model.id, dedupe_key=dedupe_key)
                    return model
        details = dict(payload or {})
        if dedupe_key:
            details["dedupe_key"] = dedupe_key
        model = OperationModel(
            type=op_type,
            status=OperationStatus.SCHEDULED,
            backupkey=backupkey,
            details=details,
            parentid=parentid,
        )
        model.ensure_access_key()
        await self.context.operations.save(model)
        self.logger.info("Operation scheduled", operation_id=model.id, type=str(op_type), backupkey=backupkey)
        return model

    async def schedule_backup(self, details: Optional[dict[str, Any]] = None) -> OperationModel:
        """Schedule a backup unless one is already scheduled.

        Raises:
            OperationConflictError: If a backup is in progress
        """
        from vault.site_backup import generate_backup_key

        records = await self.context.operations.get_records(
            [OperationStatus.SCHEDULED, OperationStatus.INPROGRESS], [OperationType.BACKUP]
        )
        for model in records:
            if model.status == OperationStatus.INPROGRESS:
                raise OperationConflictError(
                    "Another backup is in progress",
                    context={"operation": model.id, "backupkey": model.backupkey},
                )
        if records:
            return records[0]
        return await self.enqueue(OperationType.BACKUP, details, backupkey=generate_backup_key())

    async def schedule_restore(self, backupkey: str, details: Optional[dict[str, Any]] = None) -> OperationModel:
        return await self.enqueue(
            OperationType.RESTORE, details, dedupe_key=f"restore:{backupkey}", backupkey=backupkey
        )

    async def schedule_dryrun(self, backupkey: str, details: Optional[dict[str, Any]] = None) -> OperationModel:
        return await self.enqueue(OperationType.DRYRUN, details, dedupe_key=f"dryrun:{backupkey}", backupkey=backupkey)

    async def get_queue(self) -> dict[str, list[OperationModel]]:
        """Scheduled and in-progress operations partitioned into queues, each ordered by id.

        The in-progress queue only holds backups and restores; a stuck backup or restore is
        in both the in-progress and the stuck queue.
        """
        queue: dict[str, list[OperationModel]] = {
            QUEUE_INPROGRESS: [],
            QUEUE_STUCK: [],
            QUEUE_BACKUPS: [],
            QUEUE_RESTORES: [],
            QUEUE_OTHER: [],
        }
        lock_timeout = self.context.config.operations.lock_timeout
        records = await self.context.operations.get_records([OperationStatus.SCHEDULED, OperationStatus.INPROGRESS])
        for model in records:
            if model.status == OperationStatus.INPROGRESS:
                if model.type in EXCLUSIVE_TYPES:
                    queue[QUEUE_INPROGRESS].append(model)
                last_modified = await self.context.operations.get_last_modified(model)
                if model.is_stuck(last_modified, lock_timeout):
                    queue[QUEUE_STUCK].append(model)
            elif model.type == OperationType.BACKUP:
                queue[QUEUE_BACKUPS].append(model)
            elif model.type == OperationType.RESTORE:
                queue[QUEUE_RESTORES].append(model)
            else:
                queue[QUEUE_OTHER].append(model)
        return queue

    async def _build_or_fail(self, model: OperationModel) -> Optional[OperationBase]:
        """Operation for a model; a model that can not be built is failed right away."""
        try:
            return self.build_operation(model)
        except OperationError as e:
            self.logger.error("Can not build operation", operation_id=model.id, error=str(e))
            failed = OperationStatus.FAILED if model.is_in_progress() else OperationStatus.FAILEDTOSTART
            model.set_status(failed).set_error({"message": e.message, "class": type(e).__name__})
            await self.context.operations.save(model)
            return None

    async def _fail(self, model: OperationModel, message: str) -> None:
        operation = await self._build_or_fail(model)
        if operation is not None:
            await operation.mark_as_failed(OperationError(message, context={"operation": model.id}))

    async def _run(self, model: OperationModel, pid: int) -> bool:
        """Run an operation; False if it could not be built or was claimed by another process."""
        operation = await self._build_or_fail(model)
        if operation is None:
            return False
        await operation.safe_start_and_execute(pid)
        return operation.started

    async def handle_stuck(self, model: OperationModel, pid: int) -> bool:
        """Resume or fail an operation without recent activity.

        Returns:
            True if the operation was resumed by this process
        """
        self.logger.warning("Operation is stuck", operation_id=model.id, type=str(model.type))
        if model.type == OperationType.RESTORE:
            if model.details.get("resumed"):
                await self._fail(model, "Restore was stuck again after being resumed")
                return False
            model.set_details({"resumed": True})
            operation = await self._build_or_fail(model)
            if operation is None:
                return False
            await operation.add_to_log("Restore appears to be stuck, resuming", LogLevel.WARNING)
            await operation.safe_start_and_execute(pid)
            return operation.started
        if model.type == OperationType.BACKUP:
            await self._fail(
                model,
                "Backup has not reported any activity and can not be resumed; the process was "
                "probably terminated. Schedule a new backup.",
            )
            return False
        if model.type == OperationType.CHECK and model.parentid:
            parent = await self.context.operations.get_by_id(model.parentid)
            if parent is not None and parent.status == OperationStatus.INPROGRESS:
                return False
            if parent is not None:
                model.set_status(parent.status)
                await self.context.operations.save(model)
                return False
        await self._fail(model, "Operation timed out")
        return False

    async def tick(self, pid: Optional[int] = None) -> int:
        """Run one sweep of the queue.

        Returns:
            Number of operations started or resumed
        """
        pid = pid or os.getpid()
        started = 0
        queue = await self.get_queue()
        for model in queue[QUEUE_STUCK]:
            if await self.handle_stuck(model, pid):
                started += 1

        processed: set[int] = set()
        while True:
            queue = await self.get_queue()
            pending = [m for m in queue[QUEUE_OTHER] if m.id not in processed]
            if not pending:
                break
            model = min(pending, key=lambda m: m.id)
            processed.add(model.id)
            if await self._run(model, pid):
                started += 1

        for name in (QUEUE_BACKUPS, QUEUE_RESTORES):
            queue = await self.get_queue()
            if queue[QUEUE_INPROGRESS] or not queue[name]:
                continue
            model = queue[name][0]
            self.logger.info("Starting operation", operation_id=model.id, type=str(model.type))
            if await self._run(model, pid):
                started += 1
        return started
