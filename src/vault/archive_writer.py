"""Chunked archive writer: packs a stream into size-bounded zip segments and uploads them."""

import shutil
import zipfile
from pathlib import Path
from typing import Any, Optional

import structlog

from vault.backup_file import BackupFile, BackupFileStatus, BackupFileStore, segment_name
from vault.exceptions import ArchiveError, VaultError
from vault.metrics import VaultMetrics
from vault.operation import OperationModel
from vault.transport import ArchiveTransport
from utils.logging import get_logger


class ChunkedArchiveWriter:
    """Writes one stream (dbdump, dataroot, ...) of a backup.

    Units are added to the open segment. Once the uncompressed size of a segment exceeds
    ``upload_size`` the segment is uploaded and a new one with the next seq is opened.
    """

    def __init__(
        self,
        operation: OperationModel,
        filetype: str,
        transport: ArchiveTransport,
        backup_files: BackupFileStore,
        work_dir: Path,
        upload_size: int,
        metrics: Optional[VaultMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize writer.

        Args:
            operation: Backup operation
            filetype: Stream name
            transport: Remote storage
            backup_files: Store for the segment records
            work_dir: Directory for the local zip files
            upload_size: Uncompressed bytes after which a segment is uploaded
            metrics: Optional metrics
            logger: Optional logger instance
        """
        self.operation = operation
        self.filetype = filetype
        self.transport = transport
        self.backup_files = backup_files
        self.work_dir = Path(work_dir)
        self.upload_size = upload_size
        self.metrics = metrics
        self.logger = (logger or get_logger("archive_writer")).bind(stream=filetype)

        self.seq = -1
        self.record: Optional[BackupFile] = None
        self.uploaded_segments: list[BackupFile] = []
        self._zip: Optional[zipfile.ZipFile] = None
        self._zip_path: Optional[Path] = None
        self._last_file: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._zip is not None

    async def start(self) -> None:
        """Open the first segment after any already recorded for this stream."""
        self.seq = await self.backup_files.get_last_seq(self.operation.id, self.filetype)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        await self._open_next_segment()

    async def _open_next_segment(self) -> None:
        self.seq += 1
        self._zip_path = self.work_dir / segment_name(self.filetype, self.seq)
        self._zip = zipfile.ZipFile(self._zip_path, "w", compression=zipfile.ZIP_DEFLATED, allowZip64=True)
        self.record = BackupFile(
            operationid=self.operation.id,
            filetype=self.filetype,
            seq=self.seq,
            status=BackupFileStatus.INPROGRESS,
        )
        await self.backup_files.save(self.record)
        self.logger.debug("Segment opened", seq=self.seq)

    def _require_open(self) -> zipfile.ZipFile:
        if self._zip is None or self.record is None:
            raise ArchiveError("No open segment", context={"stream": self.filetype})
        return self._zip

    def _added(self, arcname: str, size: int) -> None:
        self.record.origsize += size
        self._last_file = arcname

    async def add_file(self, path: Path, arcname: Optional[str] = None) -> None:
        """Add a file and rotate the segment if it became too large."""
        zf = self._require_open()
        arcname = arcname or path.name
        try:
            zf.write(path, arcname)
            size = path.stat().st_size
        except OSError as e:
            raise ArchiveError(f"Failed to add file to segment: {e}", context={"path": str(path)}) from e
        self._added(arcname, size)
        await self.check_if_new_zip_needed()

    async def add_table_file(self, table: str, path: Path) -> None:
        """Add a table dump chunk and remember the table in the segment record."""
        self._require_open()
        tables = self.record.details.setdefault("tables", [])
        if table not in tables:
            tables.append(table)
        await self.add_file(path, path.name)

    async def add_file_from_string(self, arcname: str, content: str) -> None:
        zf = self._require_open()
        data = content.encode("utf-8")
        zf.writestr(arcname, data)
        self._added(arcname, len(data))
        await self.check_if_new_zip_needed()

    async def add_folder(self, path: Path, arcname: Optional[str] = None) -> None:
        """Add a directory tree; entries are added parents first, siblings in lexicographic order."""
        zf = self._require_open()
        arcname = (arcname if arcname is not None else path.name).strip("/")
        if arcname:
            zf.writestr(zipfile.ZipInfo(arcname + "/"), b"")
            self._added(arcname + "/", 0)
        for child in sorted(path.iterdir(), key=lambda p: p.name):
            child_name = f"{arcname}/{child.name}" if arcname else child.name
            if child.is_dir() and not child.is_symlink():
                await self.add_folder(child, child_name)
            elif child.is_file():
                await self.add_file(child, child_name)

    async def check_if_new_zip_needed(self) -> None:
        """Upload the current segment and open a new one once it exceeds upload_size."""
        if self.record is not None and self.record.origsize > self.upload_size:
            await self._upload_current()
            await self._open_next_segment()

    async def _upload_current(self) -> None:
        zf = self._require_open()
        zf.close()
        self._zip = None
        record = self.record
        try:
            result = self.transport.upload(self.operation.backupkey, self._zip_path)
        finally:
            self._zip_path.unlink(missing_ok=True)
        record.filesize = int(result.get("size", 0))
        record.etag = result.get("etag")
        record.status = BackupFileStatus.FINISHED
        if self._last_file:
            record.details["lastfile"] = self._last_file
        await self.backup_files.save(record)
        self.uploaded_segments.append(record)
        if self.metrics:
            self.metrics.record_segment_uploaded(self.filetype, record.filesize)
        self.logger.info(
            "Segment uploaded",
            seq=record.seq,
            filesize=record.filesize,
            origsize=record.origsize,
        )

    async def finish(self) -> None:
        """Upload the last segment."""
        if self._zip is not None:
            await self._upload_current()
        self.record = None

    async def abort(self, error: Optional[BaseException] = None) -> None:
        """Discard the open segment without uploading and mark its record failed.

        Args:
            error: Failure that stopped the stream, stored in the segment record
        """
        if self._zip is not None:
            self._zip.close()
            self._zip = None
        if self._zip_path is not None:
            self._zip_path.unlink(missing_ok=True)
        record, self.record = self.record, None
        if record is None or record.status == BackupFileStatus.FINISHED:
            return
        record.status = BackupFileStatus.FAILED
        message = None
        if error is not None:
            message = error.message if isinstance(error, VaultError) else str(error)
            record.details["error"] = message
        await self.backup_files.save(record)
        self.logger.warning("Segment aborted", seq=record.seq, error=message)

    def get_uploaded_size(self) -> int:
        return sum(r.filesize for r in self.uploaded_segments)

    def get_last_backedup_file(self) -> Optional[str]:
        return self._last_file

    def summary(self) -> dict[str, Any]:
        return {
            "segments": len(self.uploaded_segments),
            "size": self.get_uploaded_size(),
            "origsize": sum(r.origsize for r in self.uploaded_segments),
        }


def clean_directory(path: Path) -> None:
    """Remove a working directory if it exists."""
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
