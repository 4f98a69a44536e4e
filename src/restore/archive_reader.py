"""Chunked archive reader: hands out the units of a backup stream segment by segment."""

import re
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

from vault.backup_file import STREAM_DBDUMP, STREAM_DATAROOT, BackupFile, BackupFileStatus, BackupFileStore
from vault.exceptions import ArchiveError
from vault.metrics import VaultMetrics
from vault.operation import OperationModel
from vault.transport import ArchiveTransport
from utils.logging import get_logger

_CHUNK_SUFFIX = re.compile(r"\.(\d+)$")


def table_chunk_name(filename: str) -> tuple[str, int]:
    """Split ``config.12.json`` into ``("config", 12)``."""
    stem = filename[:-5] if filename.endswith(".json") else filename
    match = _CHUNK_SUFFIX.search(stem)
    if not match:
        return stem, 0
    return stem[: match.start()], int(match.group(1))


def walk_tree(root: Path, include_dirs: bool) -> list[tuple[Path, str]]:
    """Entries under root as (path, relative path), siblings in lexicographic order.

    With include_dirs a directory is listed before its children.
    """
    entries: list[tuple[Path, str]] = []

    def visit(directory: Path, prefix: str) -> None:
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            relative = prefix + child.name
            if child.is_dir():
                if include_dirs:
                    entries.append((child, relative))
                visit(child, relative + "/")
            else:
                entries.append((child, relative))

    visit(root, "")
    return entries


@dataclass
class _Segment:
    """A downloaded and extracted segment with its units."""

    record: BackupFile
    directory: Path
    units: list[Any] = field(default_factory=list)
    index: int = 0

    @property
    def exhausted(self) -> bool:
        return self.index >= len(self.units)


class ChunkedArchiveReader:
    """Reads one stream of a backup for restore.

    Segments are downloaded one at a time in ascending seq. The position of the first
    unconsumed unit is stored in the segment record, and a segment is marked finished (and
    its temporary directory removed) once all of its units were consumed, so a restarted
    reader continues where the previous one stopped.

    A unit counts as consumed when the next unit is requested or when ``finish()`` is called.
    """

    def __init__(
        self,
        operation: OperationModel,
        filetype: str,
        transport: ArchiveTransport,
        backup_files: BackupFileStore,
        work_dir: Path,
        backup_tables: Optional[set[str]] = None,
        metrics: Optional[VaultMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize reader.

        Args:
            operation: Restore operation
            filetype: Stream name
            transport: Remote storage
            backup_files: Store for the segment records
            work_dir: Directory for downloaded segments
            backup_tables: Tables of the backup structure; other dbdump tables are skipped
            metrics: Optional metrics
            logger: Optional logger instance
        """
        self.operation = operation
        self.filetype = filetype
        self.transport = transport
        self.backup_files = backup_files
        self.work_dir = Path(work_dir)
        self.backup_tables = backup_tables
        self.metrics = metrics
        self.logger = (logger or get_logger("archive_reader")).bind(stream=filetype)

        self._known: list[BackupFile] = []
        self._pending: list[BackupFile] = []
        self._current: Optional[_Segment] = None
        self._prefetched: Optional[_Segment] = None
        self._retained: list[_Segment] = []
        self._handed_out: list[tuple[_Segment, int]] = []

    async def rescan_files_from_db(self) -> None:
        """Reload the segment records of this stream; finished segments are skipped."""
        self._known = sorted(await self.backup_files.get_files(self.operation.id, self.filetype), key=lambda f: f.seq)
        self._pending = [f for f in self._known if f.status != BackupFileStatus.FINISHED]
        self.logger.debug("Segments rescanned", known=len(self._known), pending=len(self._pending))

    def has_known_archives(self) -> bool:
        return bool(self._known)

    def _list_units(self, root: Path) -> list[Any]:
        if self.filetype == STREAM_DBDUMP:
            tables: dict[str, list[tuple[int, Path]]] = {}
            for path in sorted(p for p in root.iterdir() if p.is_file()):
                table, number = table_chunk_name(path.name)
                if self.backup_tables is not None and table not in self.backup_tables:
                    self.logger.warning("Skipping data of unknown table", table=table, file=path.name)
                    continue
                tables.setdefault(table, []).append((number, path))
            return [(table, [p for _, p in sorted(chunks)]) for table, chunks in sorted(tables.items())]
        return walk_tree(root, include_dirs=self.filetype == STREAM_DATAROOT)

    async def _open_segment(self, record: BackupFile) -> _Segment:
        """Download and extract a segment."""
        directory = self.work_dir / f"{record.filetype}-{record.seq}"
        shutil.rmtree(directory, ignore_errors=True)
        content = directory / "content"
        content.mkdir(parents=True)
        local_zip = self.transport.download(self.operation.backupkey, record.name, directory)
        try:
            with zipfile.ZipFile(local_zip) as zf:
                zf.extractall(content)
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveError(
                f"Failed to extract segment {record.name}: {e}",
                context={"segment": record.name, "operation": self.operation.id},
            ) from e
        finally:
            Path(local_zip).unlink(missing_ok=True)
        if self.metrics:
            self.metrics.record_segment_downloaded(self.filetype)

        segment = _Segment(record=record, directory=directory, units=self._list_units(content))
        segment.index = min(record.position, len(segment.units))
        if record.status != BackupFileStatus.INPROGRESS:
            record.status = BackupFileStatus.INPROGRESS
            await self.backup_files.save(record)
        self.logger.info("Segment opened", seq=record.seq, units=len(segment.units), position=segment.index)
        return segment

    async def _close_segment(self, segment: _Segment) -> None:
        segment.record.status = BackupFileStatus.FINISHED
        segment.record.details["position"] = len(segment.units)
        await self.backup_files.save(segment.record)
        shutil.rmtree(segment.directory, ignore_errors=True)
        self.logger.debug("Segment finished", seq=segment.record.seq)

    async def _open_next(self) -> Optional[_Segment]:
        if self._prefetched is not None:
            segment, self._prefetched = self._prefetched, None
            return segment
        if not self._pending:
            return None
        return await self._open_segment(self._pending.pop(0))

    async def _consume_handed_out(self) -> None:
        """Persist the position after the units handed out by the previous call."""
        for segment, index in self._handed_out:
            if index + 1 >= len(segment.units):
                await self._close_segment(segment)
            else:
                segment.record.details["position"] = index + 1
                await self.backup_files.save(segment.record)
        self._handed_out = []

    async def _next_unit(self) -> Optional[Any]:
        await self._consume_handed_out()
        while self._current is None or self._current.exhausted:
            if self._current is not None and self._current.record.status != BackupFileStatus.FINISHED:
                await self._close_segment(self._current)
            self._current = await self._open_next()
            if self._current is None:
                return None

        segment = self._current
        unit = segment.units[segment.index]
        self._handed_out = [(segment, segment.index)]
        segment.index += 1

        if self.filetype == STREAM_DBDUMP:
            table, chunks = unit[0], list(unit[1])
            # A table whose dump continues in the following segment is returned as one unit.
            while segment.exhausted:
                following = await self._open_next()
                if following is None:
                    break
                if following.exhausted or following.units[following.index][0] != table:
                    self._prefetched = following
                    break
                chunks.extend(following.units[following.index][1])
                self._handed_out.append((following, following.index))
                following.index += 1
                self._current = segment = following
            unit = (table, chunks)
        return unit

    async def get_next_file(self) -> Optional[tuple[Path, str]]:
        """Next file (or directory, for dataroot) as (local path, relative path); None when done."""
        return await self._next_unit()

    async def get_next_table(self) -> Optional[tuple[str, list[Path]]]:
        """Next table of a dbdump stream with its chunk files in order; None when done."""
        if self.filetype != STREAM_DBDUMP:
            raise ArchiveError(f"Stream {self.filetype} has no tables", context={"stream": self.filetype})
        return await self._next_unit()

    async def get_all_files(self) -> dict[str, Path]:
        """All files of the stream by relative path; they are kept until finish()."""
        files: dict[str, Path] = {}
        while True:
            segment = await self._open_next()
            if segment is None:
                break
            self._retained.append(segment)
            for path, relative in segment.units:
                files[relative] = path
        return files

    async def finish(self) -> None:
        """Mark the remaining consumed segments finished and remove downloaded data."""
        await self._consume_handed_out()
        for segment in self._retained:
            await self._close_segment(segment)
        self._retained = []
        if self._current is not None and self._current.exhausted and self._current.record.status != BackupFileStatus.FINISHED:
            await self._close_segment(self._current)
        for segment in (self._current, self._prefetched):
            if segment is not None:
                shutil.rmtree(segment.directory, ignore_errors=True)
        self._current = None
        self._prefetched = None
