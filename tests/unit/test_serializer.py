"""Unit tests for row serialization and table chunk files."""

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from uuid import UUID

import pytest

from vault.exceptions import ArchiveError
from vault.serializer import RowSerializer, TableChunkWriter, read_table_chunk
from vault.xmldb import Field, FieldType

FIELDS = [
    Field("id", FieldType.INTEGER, length=10),
    Field("name", FieldType.CHAR, length=255),
    Field("grade", FieldType.NUMBER, length=10, decimals=5),
    Field("content", FieldType.BINARY),
    Field("created", FieldType.DATETIME),
]


def test_serialize_row_types() -> None:
    """Test database values become JSON-compatible values."""
    serializer = RowSerializer()
    row = serializer.serialize_row(
        [
            1,
            "text",
            Decimal("1.50000"),
            b"\x00\x01",
            datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
            UUID("12345678-1234-5678-1234-567812345678"),
            None,
        ]
    )

    assert row == [
        1,
        "text",
        "1.50000",
        "AAE=",
        "2024-05-01T12:00:00+00:00",
        "12345678-1234-5678-1234-567812345678",
        None,
    ]


def test_deserialize_row_types() -> None:
    """Test serialized values are converted back by field type."""
    serializer = RowSerializer()

    row = serializer.deserialize_row(FIELDS, ["7", "name", "1.50000", "AAE=", "2024-05-01T12:00:00+00:00"])

    assert row == [7, "name", Decimal("1.50000"), b"\x00\x01", datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)]


def test_deserialize_unknown_column_passes_value() -> None:
    """Test columns without a definition are passed through."""
    assert RowSerializer().deserialize_row([None], [{"raw": 1}]) == [{"raw": 1}]


def test_deserialize_row_length_mismatch() -> None:
    """Test rows must match the header."""
    with pytest.raises(ArchiveError, match="expected 5"):
        RowSerializer().deserialize_row(FIELDS, [1, "a"])


def test_deserialize_invalid_value() -> None:
    """Test invalid values raise ArchiveError."""
    with pytest.raises(ArchiveError, match="Invalid value for field 'id'"):
        RowSerializer().deserialize_row([FIELDS[0]], ["abc"])


def test_chunk_keeps_null_empty_and_null_string_apart(tmp_path: Path) -> None:
    """Test NULL, empty string and the text 'null' survive a chunk file unchanged."""
    path = tmp_path / "config.0.json"
    values = [None, "", "null", "NULL", "ünïcødé 中文", "it's \"quoted\"\n"]
    fields = [Field("value", FieldType.TEXT)]

    with TableChunkWriter(path, ["value"], RowSerializer()) as writer:
        for value in values:
            writer.write_row([value])
        assert writer.size() > 0

    header, rows = read_table_chunk(path)
    restored = [RowSerializer().deserialize_row(fields, row)[0] for row in rows]

    assert header == ["value"]
    assert restored == values
    assert writer.rows == len(values)


def test_empty_chunk_has_header(tmp_path: Path) -> None:
    """Test a chunk without rows still carries the header."""
    path = tmp_path / "empty.0.json"
    TableChunkWriter(path, ["id", "name"], RowSerializer()).open().close()

    assert read_table_chunk(path) == (["id", "name"], [])


def test_write_to_closed_chunk(tmp_path: Path) -> None:
    """Test rows can not be written before open."""
    writer = TableChunkWriter(tmp_path / "t.0.json", ["id"], RowSerializer())
    with pytest.raises(ArchiveError):
        writer.write_row([1])


@pytest.mark.parametrize("content", ["", "{}", "[1, 2]", "not json"])
def test_read_invalid_chunk(tmp_path: Path, content: str) -> None:
    """Test malformed chunk files are rejected."""
    path = tmp_path / "bad.0.json"
    path.write_text(content)

    with pytest.raises(ArchiveError):
        read_table_chunk(path)
