"""Unit tests for ChunkedArchiveWriter."""

import zipfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from vault.archive_writer import ChunkedArchiveWriter, clean_directory
from vault.backup_file import BackupFileStatus
from vault.operation import OperationModel, OperationType


@pytest.fixture
def backup() -> OperationModel:
    return OperationModel(OperationType.BACKUP, backupkey="20240501120000-abcd1234", id=1)


@pytest.fixture
def remote_dir(vault_config) -> Path:
    return Path(vault_config.storage.local_dir) / "20240501120000-abcd1234"


def _writer(vault_context, backup, tmp_path, upload_size, filetype="dataroot", metrics=None):
    return ChunkedArchiveWriter(
        backup,
        filetype,
        vault_context.transport,
        vault_context.backup_files,
        tmp_path / "segments",
        upload_size,
        metrics=metrics,
    )


@pytest.mark.asyncio
async def test_segments_rotate_after_upload_size(vault_context, backup, tmp_path, remote_dir, backup_file_store):
    """Test a segment is uploaded once it exceeds the upload size."""
    metrics = MagicMock()
    writer = _writer(vault_context, backup, tmp_path, upload_size=10, metrics=metrics)
    await writer.start()

    await writer.add_file_from_string("first.txt", "x" * 20)
    await writer.add_file_from_string("second.txt", "y" * 5)
    await writer.finish()

    assert sorted(p.name for p in remote_dir.iterdir()) == ["dataroot-1.zip", "dataroot.zip"]
    records = await backup_file_store.get_files(backup.id, "dataroot")
    assert [(r.seq, r.status, r.origsize) for r in records] == [
        (0, BackupFileStatus.FINISHED, 20),
        (1, BackupFileStatus.FINISHED, 5),
    ]
    assert records[0].details["lastfile"] == "first.txt"
    assert records[0].etag
    assert writer.summary()["segments"] == 2
    assert metrics.record_segment_uploaded.call_count == 2
    assert not list((tmp_path / "segments").iterdir())


@pytest.mark.asyncio
async def test_table_files_recorded(vault_context, backup, tmp_path, backup_file_store):
    """Test the tables of a dbdump segment are listed in its record."""
    writer = _writer(vault_context, backup, tmp_path, upload_size=1024, filetype="dbdump")
    await writer.start()
    for name in ("config.0.json", "config.1.json", "user.0.json"):
        chunk = tmp_path / name
        chunk.write_text("[]")
        await writer.add_table_file(name.split(".")[0], chunk)
    await writer.finish()

    records = await backup_file_store.get_files(backup.id, "dbdump")
    assert len(records) == 1
    assert records[0].details["tables"] == ["config", "user"]


@pytest.mark.asyncio
async def test_add_folder_order(vault_context, backup, tmp_path, remote_dir):
    """Test directories are added before their children, siblings sorted."""
    root = tmp_path / "dataroot"
    (root / "lang" / "en").mkdir(parents=True)
    (root / "lang" / "de").mkdir(parents=True)
    (root / "lang" / "en" / "moodle.php").write_text("en")
    (root / "lang" / "de" / "moodle.php").write_text("de")
    (root / "something.json").write_text("{}")

    writer = _writer(vault_context, backup, tmp_path, upload_size=1024 * 1024)
    await writer.start()
    await writer.add_folder(root / "lang")
    await writer.add_file(root / "something.json")
    await writer.finish()

    with zipfile.ZipFile(remote_dir / "dataroot.zip") as zf:
        assert zf.namelist() == [
            "lang/",
            "lang/de/",
            "lang/de/moodle.php",
            "lang/en/",
            "lang/en/moodle.php",
            "something.json",
        ]
    assert writer.get_last_backedup_file() == "something.json"


@pytest.mark.asyncio
async def test_start_continues_after_recorded_segments(vault_context, backup, tmp_path, backup_file_store):
    """Test a new writer for the same stream continues the seq numbering."""
    first = _writer(vault_context, backup, tmp_path, upload_size=1024)
    await first.start()
    await first.add_file_from_string("a.txt", "a")
    await first.finish()

    second = _writer(vault_context, backup, tmp_path, upload_size=1024)
    await second.start()

    assert second.seq == 1
    await second.abort()
    assert not (tmp_path / "segments" / "dataroot-1.zip").exists()


@pytest.mark.asyncio
async def test_abort_marks_open_segment_failed(vault_context, backup, tmp_path, remote_dir, backup_file_store):
    """Test an aborted stream keeps its uploaded segments and fails the open one."""
    writer = _writer(vault_context, backup, tmp_path, upload_size=10)
    await writer.start()
    await writer.add_file_from_string("first.txt", "x" * 20)
    await writer.add_file_from_string("second.txt", "y" * 5)

    await writer.abort(OSError("disk full"))
    await writer.abort()

    records = await backup_file_store.get_files(backup.id, "dataroot")
    assert [(r.seq, r.status) for r in records] == [
        (0, BackupFileStatus.FINISHED),
        (1, BackupFileStatus.FAILED),
    ]
    assert records[1].details["error"] == "disk full"
    assert [p.name for p in remote_dir.iterdir()] == ["dataroot.zip"]
    assert not list((tmp_path / "segments").iterdir())
    assert not writer.is_open


def test_clean_directory(tmp_path: Path) -> None:
    """Test working directories are removed recursively."""
    work = tmp_path / "work"
    (work / "nested").mkdir(parents=True)
    (work / "nested" / "file").write_text("x")

    clean_directory(work)
    clean_directory(work)

    assert not work.exists()
