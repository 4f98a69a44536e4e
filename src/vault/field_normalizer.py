"""Turns introspected column descriptors into canonical field definitions."""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from structlog import BoundLogger

from vault.sql_generator import SqlGenerator
from vault.xmldb import FLOAT_MAX_LENGTH, Field, FieldType
from utils.logging import get_logger

# Applied in order to MySQL column SQL before two columns are compared.
MYSQL_COMPARISON_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(BIGINT|TINYINT|SMALLINT|MEDIUMINT|INT)\(\d+\)"), "INT"),
    (re.compile(r"\bDOUBLE\(\d+, \d+\)"), "DOUBLE"),
    (re.compile(r" DEFAULT ([\d]+)\.0+$"), r" DEFAULT \1"),
    (re.compile(r" DEFAULT ([\d]+\.[\d]*[1-9])0+$"), r" DEFAULT \1"),
]

POSTGRES_INTEGER_LENGTHS = {"int2": 4, "int4": 9, "int8": 18}
MYSQL_INTEGER_LENGTHS = {"tinyint": 2, "smallint": 4, "int": 9, "integer": 9, "bigint": 18}

_TYPES_BY_NATIVE: dict[str, FieldType] = {
    "numeric": FieldType.NUMBER,
    "decimal": FieldType.NUMBER,
    "float4": FieldType.FLOAT,
    "float8": FieldType.FLOAT,
    "float": FieldType.FLOAT,
    "double": FieldType.FLOAT,
    "real": FieldType.FLOAT,
    "varchar": FieldType.CHAR,
    "bpchar": FieldType.CHAR,
    "char": FieldType.CHAR,
    "text": FieldType.TEXT,
    "tinytext": FieldType.TEXT,
    "mediumtext": FieldType.TEXT,
    "longtext": FieldType.TEXT,
    "bytea": FieldType.BINARY,
    "blob": FieldType.BINARY,
    "tinyblob": FieldType.BINARY,
    "mediumblob": FieldType.BINARY,
    "longblob": FieldType.BINARY,
    "timestamp": FieldType.DATETIME,
    "datetime": FieldType.DATETIME,
}


@dataclass
class ColumnInfo:
    """Raw column descriptor as reported by database introspection."""

    name: str
    native_type: str
    max_length: Optional[int] = None
    scale: Optional[int] = None
    not_null: bool = False
    has_default: bool = False
    default_value: Optional[str] = None
    auto_increment: bool = False
    primary_key: bool = False
    unsigned: bool = False


def normalize_comparison_sql(sql: str, family: str) -> str:
    """Erase engine-specific noise (display widths, trailing zeros) from column SQL."""
    if family != "mysql":
        return sql
    for pattern, replacement in MYSQL_COMPARISON_RULES:
        sql = pattern.sub(replacement, sql)
    return sql


def parse_postgres_default(raw: Optional[str]) -> Optional[str]:
    """Extract the literal value of a PostgreSQL column default expression.

    ``'abc'::character varying`` becomes ``abc``, ``'0'::numeric`` becomes ``0`` and
    sequence defaults (``nextval(...)``) or ``NULL`` casts yield None.
    """
    if raw is None:
        return None
    value = raw.strip()
    if value.lower().startswith("nextval(") or value.upper().startswith("NULL"):
        return None
    match = re.match(r"^'((?:[^']|'')*)'(?:::[\w\s]+)?$", value)
    if match:
        return match.group(1).replace("''", "'")
    match = re.match(r"^\(?(-?[\d.]+)\)?(?:::[\w\s]+)?$", value)
    if match:
        return match.group(1)
    return value


def _numeric_equal(a: str, b: str) -> bool:
    try:
        return Decimal(a) == Decimal(b)
    except (InvalidOperation, ValueError):
        return False


class ColumnNormalizer:
    """Maps introspected columns to canonical fields, resolving family quirks."""

    def __init__(
        self,
        generator: SqlGenerator,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize normalizer.

        Args:
            generator: SQL generator of the site database family
            logger: Optional logger instance
        """
        self.generator = generator
        self.logger = logger or get_logger("field_normalizer")

    @property
    def family(self) -> str:
        return self.generator.family

    def comparison_sql(self, fld: Field) -> str:
        """Canonical SQL used to decide whether two fields are the same."""
        return normalize_comparison_sql(self.generator.get_field_sql(fld), self.family)

    def apply_quirks(self, column: ColumnInfo) -> ColumnInfo:
        """Rewrite native types the family reports inconsistently."""
        native = column.native_type.lower()
        if self.family == "mysql":
            if native == "mediumint":
                native = "smallint"
            if native == "double" and column.max_length and column.max_length > FLOAT_MAX_LENGTH:
                column.max_length = FLOAT_MAX_LENGTH
        column.native_type = native
        return column

    def resolve_type(self, column: ColumnInfo) -> tuple[FieldType, Optional[int], Optional[int]]:
        """Canonical type, length and decimals of a column."""
        native = column.native_type
        if native in POSTGRES_INTEGER_LENGTHS and self.family == "postgres":
            return FieldType.INTEGER, POSTGRES_INTEGER_LENGTHS[native], None
        if native in MYSQL_INTEGER_LENGTHS and self.family == "mysql":
            return FieldType.INTEGER, column.max_length or MYSQL_INTEGER_LENGTHS[native], None
        field_type = _TYPES_BY_NATIVE.get(native)
        if field_type is None:
            self.logger.warning("Unknown native column type, treating as text", column=column.name, native_type=native)
            return FieldType.TEXT, None, None
        if field_type == FieldType.NUMBER:
            return field_type, column.max_length, column.scale or 0
        if field_type == FieldType.FLOAT:
            return field_type, column.max_length, column.scale
        if field_type == FieldType.CHAR:
            return field_type, column.max_length, None
        return field_type, None, None

    def normalize(self, column: ColumnInfo, reference: Optional[Field] = None) -> Field:
        """Build the canonical field for an introspected column.

        Args:
            column: Introspected column descriptor
            reference: Definition of the same column, if known

        Returns:
            Field whose SQL text equals the reference's whenever the column matches it
        """
        column = self.apply_quirks(column)
        field_type, length, decimals = self.resolve_type(column)
        default = column.default_value if column.has_default else None

        if (
            reference is not None
            and default is not None
            and reference.default is not None
            and field_type in (FieldType.INTEGER, FieldType.NUMBER, FieldType.FLOAT)
            and _numeric_equal(default, reference.default)
        ):
            default = reference.default

        fld = Field(
            name=column.name.lower(),
            type=field_type,
            length=length,
            decimals=decimals,
            notnull=column.not_null,
            sequence=column.auto_increment,
            default=default,
        )

        if reference is not None and self.comparison_sql(fld) == self.comparison_sql(reference):
            fld.length = reference.length
            fld.decimals = reference.decimals
            fld.default = reference.default
            # Re-apply the char default invariant after backfilling.
            fld.__post_init__()
        return fld
