"""Unit tests for packet-bounded bulk inserts."""

from unittest.mock import AsyncMock, MagicMock, call

import pytest

from vault import dbops
from vault.dbops import (
    BulkRowWriter,
    calculate_row_packet_sizes,
    insert_header_length,
    prepare_insert_sql,
    prepare_next_chunk,
    set_max_allowed_packet,
)
from vault.exceptions import DatabaseError
from vault.operation import LogLevel
from vault.sql_generator import MySqlGenerator, SqlGenerator

FIELDS = ["id", "name", "value"]
SIZES = [15, 20, 16, 19, 30, 30]


@pytest.fixture(autouse=True)
def reset_packet_limit():
    set_max_allowed_packet(None)
    yield
    set_max_allowed_packet(None)


def test_insert_header_length() -> None:
    """Test the header length includes the table prefix."""
    assert insert_header_length(SqlGenerator(""), "mytable", FIELDS) == 43
    assert insert_header_length(SqlGenerator("mdl_"), "mytable", FIELDS) == 47


@pytest.mark.parametrize("prefix", ["", "mdl_", "verylongprefix_"])
def test_prepare_next_chunk(prefix: str) -> None:
    """Test chunks stop before the row that would overflow the packet."""
    generator = SqlGenerator(prefix)
    limit = 79 + len(prefix)

    assert prepare_next_chunk(generator, "mytable", FIELDS, SIZES, 0, limit) == 2
    assert prepare_next_chunk(generator, "mytable", FIELDS, SIZES, 2, limit) == 4


def test_prepare_next_chunk_always_progresses() -> None:
    """Test a row larger than the packet still forms a chunk on its own."""
    generator = SqlGenerator("mdl_")

    assert prepare_next_chunk(generator, "mytable", FIELDS, SIZES, 0, 5) == 1
    assert prepare_next_chunk(generator, "mytable", FIELDS, SIZES, 2, 5) == 3
    assert prepare_next_chunk(generator, "mytable", FIELDS, SIZES, 5, 5) == 6


def test_prepare_next_chunk_without_limit() -> None:
    """Test an unknown packet limit puts all rows into one chunk."""
    generator = SqlGenerator("mdl_")

    assert prepare_next_chunk(generator, "mytable", FIELDS, SIZES, 0) == len(SIZES)
    assert prepare_next_chunk(generator, "mytable", FIELDS, SIZES, 0, 0) == len(SIZES)


def test_prepare_next_chunk_uses_memoised_limit() -> None:
    """Test the process-wide limit is used when none is passed."""
    set_max_allowed_packet(83)
    assert prepare_next_chunk(SqlGenerator("mdl_"), "mytable", FIELDS, SIZES, 0) == 2


class TestCalculateRowPacketSizes:
    """Tests for calculate_row_packet_sizes."""

    def test_mysql_sizes(self):
        """Test quoting, separators and NULL are counted."""
        sizes = calculate_row_packet_sizes("mysql", 3, [[1, "abc", None], [5, "it's", "ü"]])
        assert sizes == [16, 18]

    def test_other_families_have_no_limit(self):
        """Test non-MySQL families get zero sizes."""
        assert calculate_row_packet_sizes("postgres", 3, [[1, "abc", None]] * 4) == [0, 0, 0, 0]


def test_prepare_insert_sql() -> None:
    """Test multi-row statements number their placeholders."""
    sql = prepare_insert_sql(SqlGenerator("mdl_"), "t", ["a", "b"], 2)
    assert sql == "INSERT INTO mdl_t (a,b) VALUES ($1,$2),($3,$4)"

    sql = prepare_insert_sql(MySqlGenerator("mdl_"), "t", ["a", "values"], 1)
    assert sql == "INSERT INTO mdl_t (a,`values`) VALUES (%s,%s)"


class TestBulkRowWriter:
    """Tests for BulkRowWriter."""

    @pytest.mark.asyncio
    async def test_single_statement_on_postgres(self, mock_db):
        """Test all rows go into one statement without a packet limit."""
        writer = BulkRowWriter(mock_db, SqlGenerator("mdl_"))

        inserted = await writer.insert_records("t", ["id", "name"], [[1, "a"], [2, "b"], [3, "c"]])

        assert inserted == 3
        mock_db.execute.assert_awaited_once_with(
            "INSERT INTO mdl_t (id,name) VALUES ($1,$2),($3,$4),($5,$6)", 1, "a", 2, "b", 3, "c"
        )

    @pytest.mark.asyncio
    async def test_empty_rows(self, mock_db):
        """Test nothing is executed without rows."""
        writer = BulkRowWriter(mock_db, SqlGenerator("mdl_"))
        assert await writer.insert_records("t", ["id"], []) == 0
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mysql_statements_bounded_by_packet(self, mock_db):
        """Test rows are split by a known packet limit."""
        set_max_allowed_packet(33 + 16 + 1 + 16)
        writer = BulkRowWriter(mock_db, MySqlGenerator("mdl_"))
        rows = [[1, "abc", None], [2, "abc", None], [3, "abc", None]]

        inserted = await writer.insert_records("t", ["a", "b", "c"], rows)

        assert inserted == 3
        assert mock_db.execute.await_args_list == [
            call("INSERT INTO mdl_t (a,b,c) VALUES (%s,%s,%s),(%s,%s,%s)", 1, "abc", None, 2, "abc", None),
            call("INSERT INTO mdl_t (a,b,c) VALUES (%s,%s,%s)", 3, "abc", None),
        ]
        assert dbops.get_cached_max_allowed_packet() == 66

    @pytest.mark.asyncio
    async def test_packet_limit_fetched_once(self, mock_db):
        """Test the server packet limit is queried once per process."""
        mock_db.fetchval = AsyncMock(return_value=4194304)
        writer = BulkRowWriter(mock_db, MySqlGenerator("mdl_"))

        await writer.insert_records("t", ["a"], [[1]])
        await writer.insert_records("t", ["a"], [[2]])

        mock_db.fetchval.assert_awaited_once_with("SELECT @@max_allowed_packet")

    @pytest.mark.asyncio
    async def test_failed_statement_falls_back_to_rows(self, mock_db):
        """Test a failing batch is retried row by row and bad rows are logged."""
        mock_db.execute = AsyncMock(
            side_effect=[DatabaseError("batch failed"), "INSERT 0 1", DatabaseError("duplicate key")]
        )
        op_logger = MagicMock()
        op_logger.add_to_log = AsyncMock()
        writer = BulkRowWriter(mock_db, SqlGenerator("mdl_"))

        inserted = await writer.insert_records("config", ["id", "name"], [[1, "a"], [2, "b"]], op_logger)

        assert inserted == 1
        assert mock_db.execute.await_count == 3
        assert mock_db.execute.await_args_list[1] == call("INSERT INTO mdl_config (id,name) VALUES ($1,$2)", 1, "a")
        op_logger.add_to_log.assert_awaited_once_with(
            "Failed to insert record with id 2 into table config: duplicate key", LogLevel.WARNING
        )
