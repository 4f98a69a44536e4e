"""Unit tests for segment transports."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from vault.config import StorageConfig
from vault.exceptions import TransportError
from vault.transport import LocalTransport, S3Transport, create_transport


@pytest.fixture
def segment(tmp_path: Path) -> Path:
    path = tmp_path / "dbdump-1.zip"
    path.write_bytes(b"segment-bytes")
    return path


@pytest.fixture
def s3_transport() -> S3Transport:
    transport = S3Transport(StorageConfig(bucket="backups", prefix="/sites/"))
    transport._client = MagicMock()
    return transport


def test_build_key(s3_transport: S3Transport) -> None:
    """Test keys never contain double slashes."""
    assert s3_transport.build_key("key1", "dbdump.zip") == "sites/key1/dbdump.zip"
    assert s3_transport.build_key("key1", "") == "sites/key1"


def test_create_transport(tmp_path: Path) -> None:
    assert isinstance(create_transport(StorageConfig(type="local", local_dir=str(tmp_path))), LocalTransport)
    assert isinstance(create_transport(StorageConfig(bucket="b")), S3Transport)


class TestLocalTransport:
    """Tests for LocalTransport."""

    def test_upload_download_list(self, tmp_path, segment):
        transport = LocalTransport(StorageConfig(type="local", local_dir=str(tmp_path / "remote")))
        dest = tmp_path / "dest"
        dest.mkdir()

        result = transport.upload("key1", segment)
        listed = transport.list_files("key1")
        local = transport.download("key1", "dbdump-1.zip", dest)

        assert result["size"] == len(b"segment-bytes")
        assert listed == [{"name": "dbdump-1.zip", "size": result["size"], "etag": result["etag"]}]
        assert local.read_bytes() == b"segment-bytes"

    def test_list_unknown_backup(self, tmp_path):
        transport = LocalTransport(StorageConfig(type="local", local_dir=str(tmp_path)))
        assert transport.list_files("missing") == []

    def test_download_missing(self, tmp_path):
        transport = LocalTransport(StorageConfig(type="local", local_dir=str(tmp_path)))
        with pytest.raises(TransportError, match="Failed to fetch segment"):
            transport.download("key1", "dbdump.zip", tmp_path)


class TestS3Transport:
    """Tests for S3Transport with a mocked client."""

    def test_upload(self, s3_transport, segment):
        s3_transport.client.head_object.return_value = {"ContentLength": 13, "ETag": '"abc"'}

        result = s3_transport.upload("key1", segment)

        assert result == {"key": "sites/key1/dbdump-1.zip", "size": 13, "etag": "abc"}
        s3_transport.client.upload_file.assert_called_once_with(
            Filename=str(segment), Bucket="backups", Key="sites/key1/dbdump-1.zip"
        )

    def test_upload_size_mismatch(self, s3_transport, segment):
        s3_transport.client.head_object.return_value = {"ContentLength": 5}

        with pytest.raises(TransportError, match="size mismatch"):
            s3_transport.upload("key1", segment)

    def test_download_error(self, s3_transport, tmp_path):
        s3_transport.client.download_file.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
        )

        with pytest.raises(TransportError, match="NoSuchKey"):
            s3_transport.download("key1", "dbdump.zip", tmp_path)

    def test_list_files(self, s3_transport):
        paginator = s3_transport.client.get_paginator.return_value
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "sites/key1/dbstructure.zip", "Size": 10, "ETag": '"e1"'}]},
            {},
        ]

        assert s3_transport.list_files("key1") == [{"name": "dbstructure.zip", "size": 10, "etag": "e1"}]
        paginator.paginate.assert_called_once_with(Bucket="backups", Prefix="sites/key1/")
