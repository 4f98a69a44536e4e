"""Bulk row insertion split into statements that fit the server packet limit."""

from typing import Any, Optional

import structlog

from vault.database import DatabaseManager
from vault.exceptions import DatabaseError
from vault.operation import LogLevel, OperationLogger
from vault.sql_generator import SqlGenerator
from utils.logging import get_logger

# Maximum number of bind parameters in one PostgreSQL statement.
POSTGRES_MAX_PARAMS = 32767

_MYSQL_ESCAPES = str.maketrans({"\\": "\\\\", "'": "\\'", '"': '\\"', "\0": "\\0"})

# Process-wide memo of the server packet limit; None means not fetched yet.
_max_allowed_packet: Optional[int] = None
_max_allowed_packet_known = False


def set_max_allowed_packet(value: Optional[int]) -> None:
    """Override the packet limit; None forgets it so it is fetched again."""
    global _max_allowed_packet, _max_allowed_packet_known
    _max_allowed_packet = value
    _max_allowed_packet_known = value is not None


def get_cached_max_allowed_packet() -> Optional[int]:
    return _max_allowed_packet


def calculate_row_packet_sizes(family: str, fieldcount: int, rows: list[list[Any]]) -> list[int]:
    """Estimate the bytes each row adds to an INSERT statement.

    On MySQL a row is sent as ``('v1','v2',...)``: values are quoted and backslash-escaped and
    NULL takes four bytes. Other families have no packet limit and get zeros.

    Args:
        family: Database family
        fieldcount: Number of columns
        rows: Row values

    Returns:
        One size per row
    """
    if family != "mysql":
        return [0] * len(rows)
    sizes = []
    for row in rows:
        size = 2 + max(fieldcount - 1, 0)
        for value in row:
            if value is None:
                size += 4
            else:
                escaped = str(value).translate(_MYSQL_ESCAPES)
                size += len(escaped.encode("utf-8")) + 2
        sizes.append(size)
    return sizes


def prepare_insert_sql(generator: SqlGenerator, table: str, fields: list[str], rowcount: int) -> str:
    """Multi-row parameterised INSERT statement.

    Args:
        generator: SQL generator of the site database
        table: Table name without prefix
        fields: Column names
        rowcount: Number of rows in the statement

    Returns:
        SQL text with one placeholder per value
    """
    columns = ",".join(generator.quote(f) for f in fields)
    position = 0
    values = []
    for _ in range(rowcount):
        markers = []
        for _ in fields:
            position += 1
            markers.append(generator.placeholder(position))
        values.append("(" + ",".join(markers) + ")")
    return f"INSERT INTO {generator.table_name(table)} ({columns}) VALUES " + ",".join(values)


def insert_header_length(generator: SqlGenerator, table: str, fields: list[str]) -> int:
    columns = ",".join(generator.quote(f) for f in fields)
    return len(f"INSERT INTO {generator.table_name(table)} ({columns}) VALUES ")


def prepare_next_chunk(
    generator: SqlGenerator,
    table: str,
    fields: list[str],
    packet_sizes: list[int],
    start: int,
    max_packet: Optional[int] = None,
) -> int:
    """Find the exclusive end of the next chunk of rows starting at start.

    The chunk grows while header, row sizes and separating commas fit into the packet limit,
    and always contains at least one row.

    Args:
        generator: SQL generator of the site database
        table: Table name without prefix
        fields: Column names
        packet_sizes: Per-row sizes from calculate_row_packet_sizes
        start: First row of the chunk
        max_packet: Packet limit (the memoised server value when omitted)

    Returns:
        Index one past the last row of the chunk
    """
    limit = max_packet if max_packet is not None else _max_allowed_packet
    if not limit:
        return len(packet_sizes)
    total = insert_header_length(generator, table, fields) + packet_sizes[start]
    end = start + 1
    while end < len(packet_sizes) and total + 1 + packet_sizes[end] <= limit:
        total += 1 + packet_sizes[end]
        end += 1
    return end


class BulkRowWriter:
    """Inserts restored rows into site tables."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        generator: SqlGenerator,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize writer.

        Args:
            db_manager: Database manager
            generator: SQL generator of the site database
            logger: Optional logger instance
        """
        self.db = db_manager
        self.generator = generator
        self.logger = logger or get_logger("dbops")

    async def get_max_allowed_packet(self) -> Optional[int]:
        """Server packet limit, fetched once per process; None on families without one."""
        global _max_allowed_packet, _max_allowed_packet_known
        if self.generator.family != "mysql":
            return None
        if not _max_allowed_packet_known:
            value = await self.db.fetchval("SELECT @@max_allowed_packet")
            _max_allowed_packet = int(value) if value else None
            _max_allowed_packet_known = True
        return _max_allowed_packet

    def _statement_chunks(self, table: str, fields: list[str], rows: list[list[Any]]) -> list[tuple[int, int]]:
        sizes = calculate_row_packet_sizes(self.generator.family, len(fields), rows)
        max_rows = max(1, POSTGRES_MAX_PARAMS // max(1, len(fields)))
        chunks = []
        start = 0
        while start < len(rows):
            end = prepare_next_chunk(self.generator, table, fields, sizes, start)
            end = min(end, start + max_rows)
            chunks.append((start, end))
            start = end
        return chunks

    async def insert_records(
        self,
        table: str,
        fields: list[str],
        rows: list[list[Any]],
        op_logger: Optional[OperationLogger] = None,
    ) -> int:
        """Insert rows in packet-bounded statements.

        A failing statement is retried one row at a time; rows that still fail are reported
        and skipped.

        Args:
            table: Table name without prefix
            fields: Column names
            rows: Row values, already converted for the driver
            op_logger: Operation log receiving warnings about skipped rows

        Returns:
            Number of rows inserted
        """
        if not rows:
            return 0
        await self.get_max_allowed_packet()

        inserted = 0
        for start, end in self._statement_chunks(table, fields, rows):
            chunk = rows[start:end]
            sql = prepare_insert_sql(self.generator, table, fields, len(chunk))
            params = [value for row in chunk for value in row]
            try:
                await self.db.execute(sql, *params)
                inserted += len(chunk)
                continue
            except DatabaseError as e:
                self.logger.warning(
                    "Bulk insert failed, inserting rows one by one",
                    table=table,
                    rows=len(chunk),
                    error=str(e),
                )

            single_sql = prepare_insert_sql(self.generator, table, fields, 1)
            for row in chunk:
                try:
                    await self.db.execute(single_sql, *row)
                    inserted += 1
                except DatabaseError as e:
                    record_id = row[fields.index("id")] if "id" in fields else None
                    message = f"Failed to insert record with id {record_id} into table {table}: {e.message}"
                    self.logger.warning("Row insert failed", table=table, record_id=record_id, error=e.message)
                    if op_logger is not None:
                        await op_logger.add_to_log(message, LogLevel.WARNING)
        return inserted
