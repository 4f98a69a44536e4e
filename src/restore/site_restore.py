"""Full-site restore and restore dry run."""

import json
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional

from restore.actions import RestoreAction, RestoreStage, execute_actions
from restore.archive_reader import ChunkedArchiveReader
from vault.archive_writer import clean_directory
from vault.backup_file import (
    FINISHED_MARKER,
    STREAM_DATAROOT,
    STREAM_DBDUMP,
    STREAM_DBSTRUCTURE,
    STREAM_FILEDIR,
)
from vault.dbops import BulkRowWriter
from vault.dbstructure import METADATA_FILENAME, SEQUENCES_FILENAME, STRUCTURE_FILENAME, SchemaStructure
from vault.exceptions import ArchiveError, DatabaseError, OperationError
from vault.operation import LogLevel, OperationType
from vault.operations import OperationBase
from vault.serializer import RowSerializer, read_table_chunk

STAGE_DATABASE = "database"
STAGE_DATAROOT = "dataroot"
STAGE_FILEDIR = "filedir"


class RestoreBase(OperationBase):
    """Shared steps of restore and dry run: segment listing, backup structure and prechecks."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.sequences: dict[str, int] = {}
        self.metadata: dict[str, Any] = {}

    @property
    def work_dir(self) -> Path:
        return self.context.restore_work_dir() / f"vault-restore-{self.model.id}"

    def reader(self, filetype: str, backup_tables: Optional[set[str]] = None) -> ChunkedArchiveReader:
        return ChunkedArchiveReader(
            self.model,
            filetype,
            self.context.transport,
            self.context.backup_files,
            self.work_dir / "segments",
            backup_tables=backup_tables,
            metrics=self.context.metrics,
            logger=self.logger,
        )

    async def load_backup_files(self) -> None:
        """Record the remote segments of the backup for this operation.

        Only backups that uploaded their completion marker are accepted, and every segment
        listed in the marker must be present.

        Raises:
            OperationError: If the backup does not exist, did not finish or lost segments
        """
        if not self.model.backupkey:
            raise OperationError("No backup key given", context={"operation": self.model.id})
        remote = self.context.transport.list_files(self.model.backupkey)
        names = {entry.get("name") for entry in remote}
        if FINISHED_MARKER not in names:
            raise OperationError(
                f"Backup {self.model.backupkey} not found or incomplete",
                context={"backupkey": self.model.backupkey, "segments": len(remote)},
            )
        missing = sorted(set(self.read_completion_marker().get("segments", [])) - names)
        if missing:
            raise OperationError(
                f"Backup {self.model.backupkey} is incomplete, missing segments: {', '.join(missing)}",
                context={"backupkey": self.model.backupkey, "missing": missing},
            )
        await self.context.backup_files.populate_backup_files(self.model.id, remote)
        known = await self.context.backup_files.get_files(self.model.id)
        if not any(f.filetype == STREAM_DBSTRUCTURE for f in known):
            raise OperationError(
                f"Backup {self.model.backupkey} not found or incomplete",
                context={"backupkey": self.model.backupkey, "segments": len(known)},
            )
        self.model.remotedetails = {
            "segments": len(known),
            "size": sum(f.filesize for f in known),
            "maxsegment": max(f.filesize for f in known),
        }
        await self.save()

    def read_completion_marker(self) -> dict[str, Any]:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        path = self.context.transport.download(self.model.backupkey, FINISHED_MARKER, self.work_dir)
        try:
            return self._read_json(path)
        finally:
            path.unlink(missing_ok=True)

    async def load_backup_structure(self) -> SchemaStructure:
        """Fetch the dbstructure stream (once per operation) and load the backup structure."""
        structure_dir = self.work_dir / "structure"
        if not (structure_dir / STRUCTURE_FILENAME).exists():
            reader = self.reader(STREAM_DBSTRUCTURE)
            await reader.rescan_files_from_db()
            files = await reader.get_all_files()
            if STRUCTURE_FILENAME not in files:
                raise ArchiveError(
                    f"Backup {self.model.backupkey} has no {STRUCTURE_FILENAME}",
                    context={"backupkey": self.model.backupkey},
                )
            structure_dir.mkdir(parents=True, exist_ok=True)
            for name in (STRUCTURE_FILENAME, SEQUENCES_FILENAME, METADATA_FILENAME):
                if name in files:
                    shutil.copy2(files[name], structure_dir / name)
            await reader.finish()

        self.sequences = self._read_json(structure_dir / SEQUENCES_FILENAME)
        self.metadata = self._read_json(structure_dir / METADATA_FILENAME)
        return await SchemaStructure.load_from_backup(
            self.context.db,
            self.context.config.backup.schema_dirs,
            structure_dir / STRUCTURE_FILENAME,
            logger=self.logger,
        )

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ArchiveError(f"Invalid {path.name} in backup: {e}") from e

    def required_disk_space(self) -> int:
        """A segment is downloaded and extracted next to each other."""
        return 2 * int(self.model.remotedetails.get("maxsegment", 0))

    def build_report(self, structure: SchemaStructure) -> dict[str, Any]:
        """What a restore of this backup would change, and what prevents it."""
        actual = structure.get_tables_actual()
        report: dict[str, Any] = {
            "create": [],
            "alter": [],
            "recreate": [],
            "unchanged": [],
            "invalid": {},
            "problems": [],
        }
        for name, table in sorted(structure.get_backup_tables().items()):
            errors = table.validate_definition()
            if errors:
                report["invalid"][name] = errors
            statements = table.get_alter_sql(actual.get(name))
            if name not in actual:
                report["create"].append(name)
            elif not statements:
                report["unchanged"].append(name)
            elif statements[0] == self.context.generator.get_drop_table_sql(name):
                report["recreate"].append(name)
            else:
                report["alter"].append(name)

        if report["invalid"]:
            report["problems"].append(f"Backup contains invalid table definitions: {', '.join(report['invalid'])}")
        family = self.metadata.get("dbfamily")
        if family and family != self.context.config.database.family:
            report["problems"].append(
                f"Backup was made on {family}, this site uses {self.context.config.database.family}"
            )
        work_dir = self.context.restore_work_dir()
        work_dir.mkdir(parents=True, exist_ok=True)
        free = shutil.disk_usage(work_dir).free
        required = self.required_disk_space()
        report["diskspace"] = {"free": free, "required": required}
        if free < required:
            report["problems"].append(f"Not enough disk space in {work_dir}: {free} bytes free, {required} required")
        return report


class SiteRestoreDryRun(RestoreBase):
    """Runs the restore prechecks against a backup without changing the site."""

    operation_type = OperationType.DRYRUN

    async def execute(self) -> None:
        await self.add_to_log(f"Dry run of restoring backup {self.model.backupkey}")
        try:
            await self.load_backup_files()
            structure = await self.load_backup_structure()
            report = self.build_report(structure)
        finally:
            clean_directory(self.work_dir)
        self.model.set_details({"report": report})
        await self.save()
        for category in ("create", "alter", "recreate"):
            if report[category]:
                await self.add_to_log(f"Tables to {category}: {', '.join(report[category])}")
        if report["problems"]:
            raise OperationError("Restore prechecks failed: " + "; ".join(report["problems"]), context=report)
        await self.add_to_log("Restore prechecks passed")


class SiteRestore(RestoreBase):
    """Restores database, dataroot and content store from a backup.

    Completed stages are stored in the operation details so a resumed restore continues
    with the first stage that did not complete.
    """

    operation_type = OperationType.RESTORE

    def __init__(
        self,
        *args: Any,
        actions: Optional[dict[RestoreStage, list[RestoreAction]]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.actions = actions

    def completed_stages(self) -> list[str]:
        return list(self.model.details.get("stages", []))

    async def run_stage(self, name: str, step: Callable[[], Awaitable[Any]]) -> None:
        if name in self.completed_stages():
            await self.add_to_log(f"Stage {name} already completed, skipping")
            return
        await self.add_to_log(f"Stage {name} started", LogLevel.VERBOSE)
        if self.context.metrics:
            self.context.metrics.start_stage_timer(name, key=f"restore:{self.model.id}:{name}")
        await step()
        if self.context.metrics:
            self.context.metrics.stop_stage_timer(str(self.operation_type), name, key=f"restore:{self.model.id}:{name}")
        self.model.set_details({"stages": [*self.completed_stages(), name]})
        await self.save()

    async def run_actions(self, stage: RestoreStage) -> None:
        await execute_actions(self, stage, self.actions)

    async def execute(self) -> None:
        await self.add_to_log(f"Restore of backup {self.model.backupkey} started")
        await self.load_backup_files()
        structure = await self.load_backup_structure()
        if not self.completed_stages():
            report = self.build_report(structure)
            if report["problems"]:
                raise OperationError("Restore prechecks failed: " + "; ".join(report["problems"]), context=report)

        await self.run_stage(RestoreStage.BEFORE, lambda: self.run_actions(RestoreStage.BEFORE))
        await self.run_stage(STAGE_DATABASE, lambda: self.restore_db(structure))
        await self.run_stage(RestoreStage.AFTER_DB, lambda: self.run_actions(RestoreStage.AFTER_DB))
        await self.run_stage(STAGE_DATAROOT, self.restore_dataroot)
        await self.run_stage(RestoreStage.AFTER_DATA, lambda: self.run_actions(RestoreStage.AFTER_DATA))
        await self.run_stage(STAGE_FILEDIR, self.restore_filedir)
        await self.run_stage(RestoreStage.AFTER_ALL, lambda: self.run_actions(RestoreStage.AFTER_ALL))
        clean_directory(self.work_dir)
        await self.add_to_log("Restore finished")

    async def restore_db(self, structure: SchemaStructure) -> None:
        """Recreate or alter every backed up table, reload its rows and move sequences.

        Raises:
            ArchiveError: If the backup has no data for one of its tables
        """
        backup_tables = structure.get_backup_tables()
        actual = structure.get_tables_actual()
        db = self.context.db
        generator = self.context.generator
        writer = BulkRowWriter(db, generator, logger=self.logger)
        serializer = RowSerializer(self.logger)

        for name, table in sorted(backup_tables.items()):
            for sql in table.get_alter_sql(actual.get(name)):
                await db.execute(sql)
            await db.execute(generator.get_truncate_sql(name))
        await self.add_to_log(f"Structure of {len(backup_tables)} tables prepared", LogLevel.VERBOSE)

        reader = self.reader(STREAM_DBDUMP, set(backup_tables))
        await reader.rescan_files_from_db()
        restored: set[str] = set()
        while (unit := await reader.get_next_table()) is not None:
            name, chunks = unit
            table = backup_tables[name]
            rows = 0
            for chunk in chunks:
                header, data = read_table_chunk(chunk)
                fields = [table.find_field(column) for column in header]
                values = [serializer.deserialize_row(fields, row) for row in data]
                rows += await writer.insert_records(name, header, values, op_logger=self)
            restored.add(name)
            if self.context.metrics:
                self.context.metrics.record_rows_restored(name, rows)
            await self.add_to_log(
                f"Restored table {name} ({rows} rows) [{len(restored)}/{len(backup_tables)}]", LogLevel.PROGRESS
            )
        await reader.finish()

        missing = sorted(set(backup_tables) - restored)
        if missing:
            raise ArchiveError(
                f"Backup {self.model.backupkey} has no data for tables: {', '.join(missing)}",
                context={"backupkey": self.model.backupkey, "tables": missing},
            )

        for name, value in sorted(self.sequences.items()):
            table = backup_tables.get(name)
            if table is None:
                continue
            try:
                for sql in table.get_fix_sequence_sql(int(value)):
                    await db.execute(sql)
            except DatabaseError as e:
                await self.add_to_log(f"Failed to change sequence for table {name}: {e.message}", LogLevel.WARNING)
                if self.context.metrics:
                    self.context.metrics.record_error("sequence")
        await self.add_to_log(f"Database restored, sequences of {len(self.sequences)} tables updated")

    async def _extract_stream(self, filetype: str, root: Path) -> int:
        reader = self.reader(filetype)
        await reader.rescan_files_from_db()
        if not reader.has_known_archives():
            await self.add_to_log(f"Backup has no {filetype} segments", LogLevel.WARNING)
            return 0
        root.mkdir(parents=True, exist_ok=True)
        count = 0
        while (entry := await reader.get_next_file()) is not None:
            path, relative = entry
            target = root / relative
            if path.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.is_dir():
                shutil.rmtree(target)
            shutil.move(str(path), str(target))
            count += 1
        await reader.finish()
        return count

    async def restore_dataroot(self) -> None:
        dataroot = self.context.config.backup.dataroot
        if not dataroot:
            await self.add_to_log("No dataroot configured, skipping", LogLevel.WARNING)
            return
        count = await self._extract_stream(STREAM_DATAROOT, Path(dataroot))
        await self.add_to_log(f"Dataroot restored ({count} files)")

    async def restore_filedir(self) -> None:
        filedir = self.context.config.backup.filedir
        if not filedir:
            await self.add_to_log("No content store configured, skipping", LogLevel.WARNING)
            return
        count = await self._extract_stream(STREAM_FILEDIR, Path(filedir))
        await self.add_to_log(f"Content store restored ({count} files)")
