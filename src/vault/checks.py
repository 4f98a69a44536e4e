"""Prechecks run as child operations of backups and restores."""

import os
import shutil
from abc import abstractmethod
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional

from vault.context import VaultContext
from vault.dbstructure import SchemaStructure
from vault.dbtable import (
    DIFF_CHANGEDTABLES,
    DIFF_EXTRATABLES,
    DIFF_INVALIDTABLES,
    DIFF_MISSINGTABLES,
)
from vault.exceptions import OperationError
from vault.operation import OperationModel, OperationType
from vault.operations import OperationBase

VAULT_TABLE_PREFIX = "vault_"


class DbStatus(StrEnum):
    """Overall result of the database status check."""

    CLEAN = "clean"
    NO_MODIFICATIONS = "nomodifications"
    MODIFIED = "modified"
    INVALID = "invalid"


class CheckBase(OperationBase):
    """A check stores its result in its details and reports success."""

    operation_type = OperationType.CHECK
    name: str = ""

    async def execute(self) -> None:
        result = await self.perform()
        self.model.set_details({"checkname": self.name, "result": result, "success": self.success()})
        await self.save()
        level_message = "passed" if self.success() else "failed"
        await self.add_to_log(f"Check {self.name} {level_message}")

    @abstractmethod
    async def perform(self) -> dict[str, Any]:
        """Run the check and return its result."""

    @abstractmethod
    def success(self) -> bool:
        """Whether the last perform passed."""

    def get_result(self) -> dict[str, Any]:
        return self.model.details.get("result", {})

    @classmethod
    async def create_and_run(cls, context: VaultContext, parent: Optional[OperationModel] = None) -> "CheckBase":
        """Schedule and run the check immediately; failures are recorded on the check."""
        model = await cls.schedule(
            context,
            backupkey=parent.backupkey if parent else None,
            details={"checkname": cls.name},
            parentid=parent.id if parent else None,
        )
        check = cls(model, context)
        await check.safe_start_and_execute()
        return check


class DbStatusCheck(CheckBase):
    """Compares live tables with their definitions."""

    name = "dbstatus"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.status: Optional[DbStatus] = None
        self.report: dict[str, Any] = {}

    async def perform(self) -> dict[str, Any]:
        structure = await SchemaStructure.load(
            self.context.db,
            self.context.config.backup.schema_dirs,
            logger=self.logger,
        )
        self.report = self.compare(structure)
        self.status = self.evaluate(self.report)
        return {"status": str(self.status), "report": self.report}

    @staticmethod
    def compare(structure: SchemaStructure) -> dict[str, Any]:
        """Differences between definitions and actual tables, by table name."""
        report: dict[str, Any] = {
            DIFF_EXTRATABLES: [],
            DIFF_MISSINGTABLES: [],
            DIFF_CHANGEDTABLES: {},
            DIFF_INVALIDTABLES: {},
        }
        actual = structure.get_tables_actual()
        for name, definition in sorted(structure.get_tables_definitions().items()):
            errors = definition.validate_definition()
            if errors:
                report[DIFF_INVALIDTABLES][name] = errors
            if name not in actual:
                report[DIFF_MISSINGTABLES].append(name)
                continue
            diff = actual[name].compare_with_other_table(definition, autofix=False).diff
            if diff:
                report[DIFF_CHANGEDTABLES][name] = {
                    category: [getattr(obj, "name", str(obj)) for obj in objects] for category, objects in diff.items()
                }
        for name in sorted(actual):
            if name not in structure.get_tables_definitions() and not name.startswith(VAULT_TABLE_PREFIX):
                report[DIFF_EXTRATABLES].append(name)
        return report

    @staticmethod
    def evaluate(report: dict[str, Any]) -> DbStatus:
        if report[DIFF_INVALIDTABLES]:
            return DbStatus.INVALID
        if report[DIFF_MISSINGTABLES] or report[DIFF_CHANGEDTABLES]:
            return DbStatus.MODIFIED
        if report[DIFF_EXTRATABLES]:
            return DbStatus.NO_MODIFICATIONS
        return DbStatus.CLEAN

    def success(self) -> bool:
        status = self.status or self.get_result().get("status")
        return status is not None and status != DbStatus.INVALID


class DiskSpaceCheck(CheckBase):
    """Makes sure the work directory can hold a segment, a table chunk and the largest stored file."""

    name = "diskspace"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.free = 0
        self.required = 0
        self.maxfilesize = 0

    def get_max_file_size(self) -> int:
        """Size of the largest file in the content store; it may end up alone in a segment."""
        filedir = self.context.config.backup.filedir
        if not filedir or not Path(filedir).is_dir():
            return 0
        largest = 0
        for dirpath, _, filenames in os.walk(filedir):
            for filename in filenames:
                try:
                    largest = max(largest, os.path.getsize(os.path.join(dirpath, filename)))
                except OSError:
                    self.logger.debug("Can not stat file", path=os.path.join(dirpath, filename))
        return largest

    def required_space(self) -> int:
        backup = self.context.config.backup
        return backup.upload_size + backup.dbfile_size + self.maxfilesize

    async def perform(self) -> dict[str, Any]:
        work_dir = self.context.backup_work_dir()
        Path(work_dir).mkdir(parents=True, exist_ok=True)
        self.free = shutil.disk_usage(work_dir).free
        self.maxfilesize = self.get_max_file_size()
        self.required = self.required_space()
        return {
            "free": self.free,
            "required": self.required,
            "maxfilesize": self.maxfilesize,
            "work_dir": str(work_dir),
        }

    def success(self) -> bool:
        return self.free >= self.required


CHECKS: dict[str, type[CheckBase]] = {
    DbStatusCheck.name: DbStatusCheck,
    DiskSpaceCheck.name: DiskSpaceCheck,
}


def check_for_model(model: OperationModel, context: VaultContext) -> CheckBase:
    """Check instance for a persisted check operation."""
    name = model.details.get("checkname")
    if name not in CHECKS:
        raise OperationError(f"Unknown check '{name}'", context={"operation": model.id})
    return CHECKS[name](model, context)
