"""Remote storage for archive segments."""

import hashlib
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from structlog import BoundLogger

from vault.config import StorageConfig
from vault.exceptions import TransportError
from utils.logging import get_logger


class ArchiveTransport(ABC):
    """Uploads, downloads and lists the segments of a backup."""

    def __init__(self, config: StorageConfig, logger: Optional[BoundLogger] = None) -> None:
        self.config = config
        self.logger = logger or get_logger("transport")

    def build_key(self, backup_key: str, name: str) -> str:
        """Remote key of a segment, avoiding double slashes."""
        parts = [p.strip("/") for p in (self.config.prefix, backup_key, name) if p and p.strip("/")]
        return "/".join(parts)

    @abstractmethod
    def upload(self, backup_key: str, local_path: Path) -> dict[str, Any]:
        """Upload a segment; returns key, size and etag."""

    @abstractmethod
    def download(self, backup_key: str, name: str, dest_dir: Path) -> Path:
        """Download a segment into dest_dir; returns the local path."""

    @abstractmethod
    def list_files(self, backup_key: str) -> list[dict[str, Any]]:
        """Segments of a backup as dictionaries with name, size and etag."""


class S3Transport(ArchiveTransport):
    """Segments stored in an S3 (or S3-compatible) bucket."""

    def __init__(self, config: StorageConfig, logger: Optional[BoundLogger] = None) -> None:
        """Initialize S3 transport.

        Args:
            config: Storage configuration
            logger: Optional logger instance
        """
        super().__init__(config, logger or get_logger("s3"))
        self._client: Optional[Any] = None

    @property
    def client(self) -> Any:
        """Get or create S3 client."""
        if self._client is None:
            try:
                credentials = self.config.get_credentials()
                if credentials:
                    session = boto3.Session(
                        aws_access_key_id=credentials["aws_access_key_id"],
                        aws_secret_access_key=credentials["aws_secret_access_key"],
                    )
                else:
                    # Default credential chain (IAM role, AWS credentials file, env vars)
                    session = boto3.Session()

                s3_kwargs: dict[str, Any] = {
                    "service_name": "s3",
                    "region_name": self.config.region,
                    "config": Config(
                        retries={"max_attempts": self.config.max_attempts, "mode": "standard"},
                        read_timeout=self.config.request_timeout,
                    ),
                }
                if self.config.endpoint:
                    s3_kwargs["endpoint_url"] = self.config.endpoint

                self._client = session.client(**s3_kwargs)
                self.logger.debug(
                    "S3 client initialized",
                    bucket=self.config.bucket,
                    endpoint=self.config.endpoint or "AWS S3",
                    region=self.config.region,
                )
            except Exception as e:
                raise TransportError(
                    f"Failed to create S3 client: {e}",
                    context={"bucket": self.config.bucket},
                ) from e
        return self._client

    def upload(self, backup_key: str, local_path: Path) -> dict[str, Any]:
        """Upload a segment.

        Args:
            backup_key: Backup the segment belongs to
            local_path: Segment file

        Returns:
            Dictionary with key, size and etag

        Raises:
            TransportError: If upload or verification fails
        """
        key = self.build_key(backup_key, local_path.name)
        size = local_path.stat().st_size
        self.logger.debug("Uploading segment", bucket=self.config.bucket, key=key, size=size)
        try:
            self.client.upload_file(Filename=str(local_path), Bucket=self.config.bucket, Key=key)
            response = self.client.head_object(Bucket=self.config.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise TransportError(
                f"Failed to upload segment: {e}",
                context={"bucket": self.config.bucket, "key": key},
            ) from e

        actual_size = response.get("ContentLength", 0)
        if actual_size != size:
            raise TransportError(
                f"Upload verification failed: size mismatch (expected {size}, got {actual_size})",
                context={"bucket": self.config.bucket, "key": key},
            )
        etag = str(response.get("ETag", "")).strip('"')
        self.logger.debug("Segment uploaded", key=key, size=size, etag=etag)
        return {"key": key, "size": size, "etag": etag}

    def download(self, backup_key: str, name: str, dest_dir: Path) -> Path:
        key = self.build_key(backup_key, name)
        local_path = Path(dest_dir) / name
        try:
            self.logger.debug("Downloading segment", bucket=self.config.bucket, key=key)
            self.client.download_file(Bucket=self.config.bucket, Key=key, Filename=str(local_path))
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            raise TransportError(
                f"Failed to download segment: {error_code}",
                context={"bucket": self.config.bucket, "key": key, "error_code": error_code},
            ) from e
        except BotoCoreError as e:
            raise TransportError(
                f"Boto3 error during download: {e}",
                context={"bucket": self.config.bucket, "key": key},
            ) from e
        return local_path

    def list_files(self, backup_key: str) -> list[dict[str, Any]]:
        prefix = self.build_key(backup_key, "") + "/"
        files = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    files.append(
                        {
                            "name": obj["Key"][len(prefix):],
                            "size": obj.get("Size", 0),
                            "etag": str(obj.get("ETag", "")).strip('"'),
                        }
                    )
        except (ClientError, BotoCoreError) as e:
            raise TransportError(
                f"Failed to list segments: {e}",
                context={"bucket": self.config.bucket, "prefix": prefix},
            ) from e
        self.logger.debug("Segments listed", prefix=prefix, count=len(files))
        return files


class LocalTransport(ArchiveTransport):
    """Segments stored in a local directory, one sub-directory per backup."""

    def __init__(self, config: StorageConfig, logger: Optional[BoundLogger] = None) -> None:
        super().__init__(config, logger or get_logger("local_transport"))
        self.root = Path(config.local_dir or ".")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, backup_key: str, name: str = "") -> Path:
        return self.root / self.build_key(backup_key, name)

    @staticmethod
    def _etag(path: Path) -> str:
        digest = hashlib.md5()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def upload(self, backup_key: str, local_path: Path) -> dict[str, Any]:
        target = self._path(backup_key, local_path.name)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, target)
        except OSError as e:
            raise TransportError(f"Failed to store segment: {e}", context={"path": str(target)}) from e
        self.logger.debug("Segment stored", path=str(target))
        return {"key": str(target.relative_to(self.root)), "size": target.stat().st_size, "etag": self._etag(target)}

    def download(self, backup_key: str, name: str, dest_dir: Path) -> Path:
        source = self._path(backup_key, name)
        local_path = Path(dest_dir) / name
        try:
            shutil.copy2(source, local_path)
        except OSError as e:
            raise TransportError(f"Failed to fetch segment: {e}", context={"path": str(source)}) from e
        return local_path

    def list_files(self, backup_key: str) -> list[dict[str, Any]]:
        directory = self._path(backup_key)
        if not directory.is_dir():
            return []
        return [
            {"name": p.name, "size": p.stat().st_size, "etag": self._etag(p)}
            for p in sorted(directory.iterdir())
            if p.is_file()
        ]


def create_transport(config: StorageConfig, logger: Optional[BoundLogger] = None) -> ArchiveTransport:
    """Transport for the configured storage type."""
    if config.type == "local":
        return LocalTransport(config, logger)
    return S3Transport(config, logger)
