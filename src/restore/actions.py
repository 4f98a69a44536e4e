"""Restore actions executed at fixed stages of a restore."""

import json
import os
import shutil
from abc import ABC, abstractmethod
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional

import structlog

from vault.operation import LogLevel
from utils.checksum import is_content_hash
from utils.logging import get_logger


class RestoreStage(StrEnum):
    """Points of a restore where actions run."""

    BEFORE = "before"
    AFTER_DB = "afterdb"
    AFTER_DATA = "afterdata"
    AFTER_ALL = "afterall"


class RestoreAction(ABC):
    """One action; the restore passes itself so the action can log and reach the context."""

    name: str = ""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.logger = logger or get_logger(f"restore_action.{self.name}")

    @abstractmethod
    async def execute(self, restore: Any, stage: RestoreStage) -> None:
        """Run the action for a stage."""


class ClearCaches(RestoreAction):
    """Removes cache directories from the dataroot."""

    name = "clear_caches"

    async def execute(self, restore: Any, stage: RestoreStage) -> None:
        dataroot = restore.context.config.backup.dataroot
        if not dataroot:
            return
        removed = []
        for cache_dir in restore.context.config.restore.cache_dirs:
            path = Path(dataroot) / cache_dir
            if path.is_dir():
                shutil.rmtree(path)
                removed.append(cache_dir)
        await restore.add_to_log(f"Caches cleared: {', '.join(removed) or 'none found'}")


class CleanupExistingFiles(RestoreAction):
    """Deletes content-store files of the replaced site that the restored site does not reference.

    Before the restore, the hashes present in the content store are saved next to the restore
    work files. After the restore, saved hashes missing from the files table are removed.
    """

    name = "cleanup_existing_files"

    @staticmethod
    def snapshot_path(restore: Any) -> Path:
        return restore.work_dir / "existing-files.json"

    @staticmethod
    def list_content_files(filedir: Path) -> dict[str, str]:
        """Content hash to path relative to filedir."""
        files = {}
        for dirpath, _, filenames in os.walk(filedir):
            for filename in filenames:
                if is_content_hash(filename):
                    files[filename] = (Path(dirpath) / filename).relative_to(filedir).as_posix()
        return files

    async def execute(self, restore: Any, stage: RestoreStage) -> None:
        filedir = restore.context.config.backup.filedir
        if not filedir:
            return
        if stage == RestoreStage.BEFORE:
            await self.save_current_files_list(restore, Path(filedir))
        elif stage == RestoreStage.AFTER_ALL:
            await self.remove_old_files(restore, Path(filedir))

    async def save_current_files_list(self, restore: Any, filedir: Path) -> None:
        await restore.add_to_log("Making list of the old files...")
        files = self.list_content_files(filedir) if filedir.is_dir() else {}
        path = self.snapshot_path(restore)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(files), encoding="utf-8")
        await restore.add_to_log(f"...done, {len(files)} files")

    async def remove_old_files(self, restore: Any, filedir: Path) -> None:
        path = self.snapshot_path(restore)
        if not path.exists():
            await restore.add_to_log("No list of old files found, skipping cleanup", LogLevel.WARNING)
            return
        await restore.add_to_log("Removing old files...")
        old_files: dict[str, str] = json.loads(path.read_text(encoding="utf-8"))
        config = restore.context.config.restore
        generator = restore.context.generator
        rows = await restore.context.db.fetch(
            f"SELECT DISTINCT {generator.quote(config.contenthash_column)} AS contenthash "
            f"FROM {generator.table_name(config.files_table)}"
        )
        referenced = {row["contenthash"] for row in rows}
        removed = 0
        for contenthash, relative in old_files.items():
            if contenthash in referenced:
                continue
            (filedir / relative).unlink(missing_ok=True)
            removed += 1
        path.unlink()
        await restore.add_to_log(f"...done, {removed} files removed")


class KillSessions(RestoreAction):
    """Purges the sessions restored with the database."""

    name = "kill_sessions"

    async def execute(self, restore: Any, stage: RestoreStage) -> None:
        table = restore.context.config.restore.sessions_table
        if not table:
            return
        await restore.add_to_log("Killing all sessions...")
        await restore.context.db.execute(restore.context.generator.get_truncate_sql(table))
        await restore.add_to_log("...done")


def default_actions() -> dict[RestoreStage, list[RestoreAction]]:
    """Actions per stage, in execution order."""
    clear_caches = ClearCaches()
    cleanup = CleanupExistingFiles()
    return {
        RestoreStage.BEFORE: [clear_caches, cleanup],
        RestoreStage.AFTER_DB: [KillSessions(), clear_caches],
        RestoreStage.AFTER_DATA: [],
        RestoreStage.AFTER_ALL: [cleanup],
    }


async def execute_actions(
    restore: Any,
    stage: RestoreStage,
    actions: Optional[dict[RestoreStage, list[RestoreAction]]] = None,
) -> int:
    """Run the actions of a stage; a failing action is reported and the rest still run.

    Returns:
        Number of actions that failed
    """
    actions = actions if actions is not None else default_actions()
    failed = 0
    for action in actions.get(stage, []):
        try:
            await action.execute(restore, stage)
        except Exception as e:
            failed += 1
            action.logger.warning("Restore action failed", stage=str(stage), error=str(e), exc_info=True)
            await restore.add_to_log(f"Action {action.name} failed at stage {stage}: {e}", LogLevel.WARNING)
            if restore.context.error_reporter:
                restore.context.error_reporter(e)
            if restore.context.metrics:
                restore.context.metrics.record_error("action")
    return failed
