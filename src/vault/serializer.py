"""Serialization of table rows to chunk files and back."""

import base64
import json
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from types import TracebackType
from typing import IO, Any, Optional
from uuid import UUID

import structlog

from vault.exceptions import ArchiveError
from vault.xmldb import Field, FieldType
from utils.logging import get_logger


class RowSerializer:
    """Converts database values to JSON-compatible values and back."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize serializer.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("serializer")

    def serialize_row(self, values: list[Any] | tuple[Any, ...]) -> list[Any]:
        """Serialize one row, keeping column order."""
        return [self._serialize_value(value) for value in values]

    def _serialize_value(self, value: Any) -> Any:
        """Serialize a single value based on its type.

        Args:
            value: Value to serialize

        Returns:
            Serialized value
        """
        if value is None:
            return None

        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        elif isinstance(value, Decimal):
            # Preserve precision as string
            return str(value)
        elif isinstance(value, UUID):
            return str(value)
        elif isinstance(value, (bytes, memoryview)):
            return base64.b64encode(bytes(value)).decode("utf-8")
        elif isinstance(value, (int, float, str, bool)):
            return value
        else:
            self.logger.warning(
                "Unknown type, converting to string",
                type=type(value).__name__,
                value=str(value)[:100],
            )
            return str(value)

    def deserialize_row(self, fields: list[Optional[Field]], values: list[Any]) -> list[Any]:
        """Convert a row read from a chunk file to values accepted by the database driver.

        Args:
            fields: Field definition for each column, None where the column is unknown
            values: Serialized values

        Returns:
            Values in column order

        Raises:
            ArchiveError: If the row does not match the header
        """
        if len(fields) != len(values):
            raise ArchiveError(
                f"Row has {len(values)} values, expected {len(fields)}",
                context={"fields": [f.name if f else None for f in fields]},
            )
        return [self._deserialize_value(fld, value) for fld, value in zip(fields, values)]

    def _deserialize_value(self, fld: Optional[Field], value: Any) -> Any:
        if value is None or fld is None:
            return value
        try:
            if fld.type == FieldType.INTEGER:
                return int(value)
            if fld.type == FieldType.NUMBER:
                return Decimal(str(value))
            if fld.type == FieldType.FLOAT:
                return float(value)
            if fld.type == FieldType.BINARY:
                return base64.b64decode(value)
            if fld.type in (FieldType.DATETIME, FieldType.TIMESTAMP):
                return datetime.fromisoformat(value)
        except (ValueError, TypeError, InvalidOperation) as e:
            raise ArchiveError(
                f"Invalid value for field '{fld.name}': {e}",
                context={"field": fld.name, "type": str(fld.type)},
            ) from e
        return value if isinstance(value, str) else str(value)


class TableChunkWriter:
    """Writes one ``<table>.<n>.json`` chunk: a JSON array whose first element is the header."""

    def __init__(self, path: Path, fields: list[str], serializer: RowSerializer) -> None:
        self.path = path
        self.fields = fields
        self.serializer = serializer
        self.rows = 0
        self._file: Optional[IO[str]] = None

    def open(self) -> "TableChunkWriter":
        self._file = open(self.path, "w", encoding="utf-8")
        self._file.write("[" + json.dumps(self.fields, ensure_ascii=False))
        return self

    def close(self) -> None:
        if self._file is not None:
            self._file.write("]")
            self._file.close()
            self._file = None

    def __enter__(self) -> "TableChunkWriter":
        return self.open()

    def write_row(self, values: list[Any] | tuple[Any, ...]) -> None:
        if self._file is None:
            raise ArchiveError("Chunk file is not open", context={"path": str(self.path)})
        self._file.write(",\n" + json.dumps(self.serializer.serialize_row(values), ensure_ascii=False))
        self.rows += 1

    def size(self) -> int:
        """Characters written so far."""
        return self._file.tell() if self._file else 0

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.close()


def read_table_chunk(path: Path) -> tuple[list[str], list[list[Any]]]:
    """Read a chunk file.

    Returns:
        Header (field names) and rows

    Raises:
        ArchiveError: If the file is not a valid chunk
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ArchiveError(f"Can not read table chunk {path}: {e}") from e
    if not isinstance(data, list) or not data or not isinstance(data[0], list):
        raise ArchiveError(f"Table chunk {path} has no header", context={"path": str(path)})
    return [str(name) for name in data[0]], data[1:]
