"""Checksum utilities for content-store integrity."""

import hashlib
import re
from pathlib import Path
from typing import Optional

import structlog

from utils.logging import get_logger

_CONTENT_HASH = re.compile(r"^[0-9a-f]{40}$")


def is_content_hash(name: str) -> bool:
    """Whether a file name is a SHA-1 content hash."""
    return bool(_CONTENT_HASH.match(name))


class ChecksumCalculator:
    """Calculates and verifies SHA-1 content hashes of content-store files."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize checksum calculator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("checksum")

    def calculate_file_sha1(self, path: Path, chunk_size: int = 1024 * 1024) -> str:
        """Calculate the SHA-1 of a file, reading it in chunks.

        Args:
            path: File to hash
            chunk_size: Bytes read per iteration

        Returns:
            Hexadecimal SHA-1 checksum (40 characters)
        """
        sha1_hash = hashlib.sha1()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                sha1_hash.update(chunk)
        return sha1_hash.hexdigest()

    def verify_content_hash(self, path: Path) -> bool:
        """Verify a content-store file matches the hash it is named after.

        Files whose name is not a content hash are not verified.

        Returns:
            True if the content matches its name (or the name is not a hash), False otherwise
        """
        if not is_content_hash(path.name):
            return True
        actual = self.calculate_file_sha1(path)
        if actual != path.name:
            self.logger.error(
                "Content hash verification failed",
                expected=path.name,
                actual=actual,
                path=str(path),
            )
            return False
        return True
