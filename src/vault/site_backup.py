"""Full-site backup: database structure, table data, dataroot and content store."""

import json
import os
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from vault.archive_writer import ChunkedArchiveWriter, clean_directory
from vault.backup_file import (
    FINISHED_MARKER,
    STREAM_DATAROOT,
    STREAM_DBDUMP,
    STREAM_DBSTRUCTURE,
    STREAM_FILEDIR,
    BackupFileStatus,
)
from vault.checks import VAULT_TABLE_PREFIX, CheckBase, DbStatusCheck, DiskSpaceCheck
from vault.dbstructure import METADATA_FILENAME, SEQUENCES_FILENAME, STRUCTURE_FILENAME, SchemaStructure
from vault.dbtable import DbTable
from vault.exceptions import OperationError
from vault.operation import LogLevel, OperationType, utcnow
from vault.operations import OperationBase
from vault.serializer import RowSerializer, TableChunkWriter
from utils.checksum import ChecksumCalculator

# Dataroot entries that are never backed up.
DATAROOT_SKIP = frozenset({"cache", "localcache", "lock", "sessions", "temp", "trashdir", "filedir"})


def generate_backup_key() -> str:
    """Unique key of a new backup, e.g. ``20240101120000-1a2b3c4d``."""
    return f"{utcnow():%Y%m%d%H%M%S}-{secrets.token_hex(4)}"


class SiteBackup(OperationBase):
    """Backs up the whole site into four streams of zip segments."""

    operation_type = OperationType.BACKUP
    prechecks: list[type[CheckBase]] = [DbStatusCheck, DiskSpaceCheck]

    @property
    def work_dir(self) -> Path:
        return self.context.backup_work_dir() / f"vault-backup-{self.model.id}"

    def _writer(self, filetype: str) -> ChunkedArchiveWriter:
        return ChunkedArchiveWriter(
            self.model,
            filetype,
            self.context.transport,
            self.context.backup_files,
            self.work_dir / "segments",
            self.context.config.backup.upload_size,
            metrics=self.context.metrics,
            logger=self.logger,
        )

    @asynccontextmanager
    async def open_stream(self, filetype: str) -> AsyncGenerator[ChunkedArchiveWriter, None]:
        """Started writer for one stream; the open segment is aborted if the block fails."""
        writer = self._writer(filetype)
        try:
            await writer.start()
            yield writer
        except Exception as e:
            await writer.abort(e)
            raise

    async def execute(self) -> None:
        await self.add_to_log(f"Backup {self.model.backupkey} started")
        try:
            await self.run_prechecks()
            structure = await SchemaStructure.load(
                self.context.db,
                self.context.config.backup.schema_dirs,
                logger=self.logger,
            )
            tables = self.get_tables_to_backup(structure)
            total = 0
            total += await self.export_db_structure(structure, tables)
            total += await self.export_db(structure, tables)
            total += await self.export_dataroot()
            total += await self.export_filedir()
            await self.upload_completion_marker(total)
        finally:
            clean_directory(self.work_dir)
        self.model.set_details({"totalsize": total})
        await self.add_to_log(f"Backup finished, total size of uploaded segments: {total} bytes")

    async def upload_completion_marker(self, total: int) -> None:
        """Upload the list of finished segments; restores only accept backups that have it."""
        files = await self.context.backup_files.get_files(self.model.id)
        marker = {
            "backupkey": self.model.backupkey,
            "timefinished": utcnow().isoformat(),
            "totalsize": total,
            "segments": sorted(f.name for f in files if f.status == BackupFileStatus.FINISHED),
        }
        path = self.work_dir / FINISHED_MARKER
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(marker, indent=2), encoding="utf-8")
        self.context.transport.upload(self.model.backupkey, path)

    async def run_prechecks(self) -> None:
        """Run prechecks as child operations; any unsuccessful one stops the backup."""
        failed = {}
        for check_cls in self.prechecks:
            check = await check_cls.create_and_run(self.context, self.model)
            if not check.success():
                failed[check.name] = check.get_result() or check.model.details.get("error", {})
        if failed:
            raise OperationError(
                f"Backup precheck failed: {', '.join(sorted(failed))}",
                context={"prechecks": failed},
            )
        await self.add_to_log("Prechecks passed")

    def get_tables_to_backup(self, structure: SchemaStructure) -> list[DbTable]:
        excluded = set(self.context.config.backup.exclude_tables)
        return [
            table
            for name, table in sorted(structure.get_tables_actual().items())
            if name not in excluded and not name.startswith(VAULT_TABLE_PREFIX)
        ]

    async def export_db_structure(self, structure: SchemaStructure, tables: list[DbTable]) -> int:
        """Upload structure, sequences and metadata of the backed up tables."""
        names = [t.name for t in tables]
        async with self.open_stream(STREAM_DBSTRUCTURE) as writer:
            sequences = await structure.retrieve_sequences()
            sizes = await structure.get_actual_tables_sizes()
            metadata = {
                "backupkey": self.model.backupkey,
                "dbfamily": self.context.config.database.family,
                "prefix": self.context.config.database.table_prefix,
                "dbversion": await self.context.db.get_server_version(),
                "timecreated": utcnow().isoformat(),
                "tables": {name: sizes.get(name, 0) for name in names},
            }
            await writer.add_file_from_string(STRUCTURE_FILENAME, structure.output(only_tables=names))
            await writer.add_file_from_string(
                SEQUENCES_FILENAME,
                json.dumps({n: v for n, v in sequences.items() if n in names}, indent=2),
            )
            await writer.add_file_from_string(METADATA_FILENAME, json.dumps(metadata, indent=2))
            await writer.finish()
        await self.add_to_log(f"Database structure exported ({len(names)} tables)")
        return writer.get_uploaded_size()

    async def export_db(self, structure: SchemaStructure, tables: list[DbTable]) -> int:
        chunk_dir = self.work_dir / "tables"
        chunk_dir.mkdir(parents=True, exist_ok=True)
        serializer = RowSerializer(self.logger)
        async with self.open_stream(STREAM_DBDUMP) as writer:
            for i, table in enumerate(tables, start=1):
                rows = await self.export_table_data(writer, table, chunk_dir, serializer)
                await self.add_to_log(
                    f"Exported table {table.name} ({rows} rows) [{i}/{len(tables)}]", LogLevel.PROGRESS
                )
            await writer.finish()
        return writer.get_uploaded_size()

    async def export_table_data(
        self,
        writer: ChunkedArchiveWriter,
        table: DbTable,
        chunk_dir: Path,
        serializer: RowSerializer,
    ) -> int:
        """Dump one table into ``<table>.<n>.json`` chunks of roughly dbfile_size each.

        Tables without rows still produce one chunk holding only the header.

        Returns:
            Number of rows exported
        """
        generator = self.context.generator
        fields = [f.name for f in table.fields]
        order = "id" if table.find_field("id") else fields[0]
        query = (
            f"SELECT {', '.join(generator.quote(f) for f in fields)} "
            f"FROM {generator.table_name(table.name)} ORDER BY {generator.quote(order)}"
        )
        dbfile_size = self.context.config.backup.dbfile_size

        seq = 0
        rows = 0
        chunk: Optional[TableChunkWriter] = None
        try:
            async for record in self.context.db.iterate(query):
                if chunk is None:
                    chunk = TableChunkWriter(chunk_dir / f"{table.name}.{seq}.json", fields, serializer).open()
                chunk.write_row(list(record.values()))
                rows += 1
                if chunk.size() >= dbfile_size:
                    await self._add_chunk(writer, table.name, chunk)
                    chunk = None
                    seq += 1
            if chunk is None and seq == 0:
                chunk = TableChunkWriter(chunk_dir / f"{table.name}.0.json", fields, serializer).open()
            if chunk is not None:
                await self._add_chunk(writer, table.name, chunk)
                chunk = None
        finally:
            if chunk is not None:
                chunk.close()
        return rows

    async def _add_chunk(self, writer: ChunkedArchiveWriter, table: str, chunk: TableChunkWriter) -> None:
        chunk.close()
        try:
            await writer.add_table_file(table, chunk.path)
        finally:
            chunk.path.unlink(missing_ok=True)

    async def export_dataroot(self) -> int:
        """Back up the top-level dataroot entries that are not caches or excluded."""
        dataroot = self.context.config.backup.dataroot
        if not dataroot:
            await self.add_to_log("No dataroot configured, skipping", LogLevel.WARNING)
            return 0
        root = Path(dataroot)
        excluded = DATAROOT_SKIP | set(self.context.config.backup.exclude_dataroot)
        async with self.open_stream(STREAM_DATAROOT) as writer:
            for entry in sorted(root.iterdir(), key=lambda p: p.name):
                if entry.name in excluded or entry.is_symlink():
                    continue
                if entry.is_dir():
                    await writer.add_folder(entry, entry.name)
                elif entry.is_file():
                    await writer.add_file(entry, entry.name)
            await writer.finish()
        await self.add_to_log(f"Dataroot exported, last file: {writer.get_last_backedup_file()}")
        return writer.get_uploaded_size()

    async def export_filedir(self) -> int:
        """Back up the content-hash addressed store, skipping files whose content is corrupted."""
        filedir = self.context.config.backup.filedir
        if not filedir:
            await self.add_to_log("No content store configured, skipping", LogLevel.WARNING)
            return 0
        root = Path(filedir)
        checksum = ChecksumCalculator(self.logger)
        count = 0
        async with self.open_stream(STREAM_FILEDIR) as writer:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames.sort()
                for filename in sorted(filenames):
                    path = Path(dirpath) / filename
                    if not checksum.verify_content_hash(path):
                        await self.add_to_log(f"Skipping corrupted file {filename}", LogLevel.WARNING)
                        continue
                    await writer.add_file(path, path.relative_to(root).as_posix())
                    count += 1
            await writer.finish()
        await self.add_to_log(f"Content store exported ({count} files)")
        return writer.get_uploaded_size()
