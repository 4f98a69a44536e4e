"""Canonical SQL text for table definitions, per database family."""

import hashlib

from vault.exceptions import SchemaError
from vault.xmldb import Field, FieldType, Index, Key, KeyType

# Words that must be quoted when used as identifiers.
RESERVED_WORDS = frozenset(
    {
        "all", "alter", "and", "any", "as", "asc", "between", "both", "by", "case", "check",
        "collate", "column", "constraint", "create", "cross", "current_date", "current_time",
        "current_timestamp", "current_user", "default", "delete", "desc", "distinct", "drop",
        "else", "end", "except", "exists", "false", "fetch", "for", "foreign", "from", "full",
        "grant", "group", "having", "in", "index", "inner", "insert", "intersect", "into", "is",
        "join", "key", "leading", "left", "like", "limit", "natural", "not", "null", "offset",
        "on", "or", "order", "outer", "primary", "references", "right", "select", "session_user",
        "set", "some", "table", "then", "to", "trailing", "true", "union", "unique", "update",
        "user", "using", "values", "when", "where", "with",
    }
)

IDENTIFIER_MAX_LENGTH = 63


class SqlGenerator:
    """Generates canonical DDL and DML text for one database family.

    The same text is used both for executing DDL and for comparing introspected fields with
    their definitions, so two fields are considered equal exactly when their generated SQL is.
    """

    family = "postgres"
    quote_char = '"'

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix

    def quote(self, name: str) -> str:
        """Quote an identifier if it is a reserved word."""
        if name.lower() in RESERVED_WORDS:
            return f"{self.quote_char}{name}{self.quote_char}"
        return name

    def table_name(self, name: str) -> str:
        """Full (prefixed) table name, quoted when needed."""
        return self.quote(f"{self.prefix}{name}")

    def placeholder(self, position: int) -> str:
        """Bind parameter marker for the given 1-based position."""
        return f"${position}"

    def object_name(self, table: str, fields: list[str], suffix: str) -> str:
        """Name for a generated index or constraint."""
        name = f"{self.prefix}{table}_{'_'.join(fields)}_{suffix}"
        if len(name) > IDENTIFIER_MAX_LENGTH:
            digest = hashlib.md5(name.encode("utf-8")).hexdigest()[:6]
            name = f"{name[:IDENTIFIER_MAX_LENGTH - len(suffix) - 8]}_{digest}_{suffix}"
        return name

    def get_type_sql(self, fld: Field) -> str:
        length = fld.length or 0
        if fld.type == FieldType.INTEGER:
            if fld.sequence:
                return "BIGSERIAL"
            if length > 9:
                return "BIGINT"
            if length > 4:
                return "INTEGER"
            return "SMALLINT"
        if fld.type == FieldType.NUMBER:
            if fld.decimals:
                return f"NUMERIC({length},{fld.decimals})"
            return f"NUMERIC({length})"
        if fld.type == FieldType.FLOAT:
            return "DOUBLE PRECISION"
        if fld.type == FieldType.CHAR:
            return f"VARCHAR({length})"
        if fld.type == FieldType.TEXT:
            return "TEXT"
        if fld.type == FieldType.BINARY:
            return "BYTEA"
        if fld.type in (FieldType.DATETIME, FieldType.TIMESTAMP):
            return "TIMESTAMP"
        raise SchemaError(f"Unsupported field type '{fld.type}'", context={"field": fld.name})

    def get_default_clause(self, fld: Field) -> str:
        if fld.default is None or fld.sequence:
            return ""
        if fld.type in (FieldType.CHAR, FieldType.TEXT):
            escaped = fld.default.replace("'", "''")
            return f" DEFAULT '{escaped}'"
        return f" DEFAULT {fld.default}"

    def get_field_sql(self, fld: Field) -> str:
        """Column specification, e.g. ``name VARCHAR(255) NOT NULL DEFAULT 'x'``."""
        if not fld.name:
            raise SchemaError("Field without a name")
        sql = f"{self.quote(fld.name)} {self.get_type_sql(fld)}"
        if fld.notnull:
            sql += " NOT NULL"
        sql += self.get_default_clause(fld)
        return sql

    def get_create_table_sql(self, table: str, fields: list[Field], keys: list[Key], indexes: list[Index]) -> list[str]:
        """CREATE TABLE statement followed by the statements creating its indexes."""
        if not fields:
            raise SchemaError(f"Table '{table}' has no fields", context={"table": table})
        lines = [f"    {self.get_field_sql(f)}" for f in fields]
        for key in keys:
            if key.type == KeyType.PRIMARY:
                lines.append(self.get_primary_key_clause(table, key.fields))
        sql = f"CREATE TABLE {self.table_name(table)} (\n" + ",\n".join(lines) + "\n)"
        statements = [sql]
        for key in keys:
            if key.type != KeyType.PRIMARY:
                statements.append(self.get_create_index_sql(table, key.fields, key.unique))
        for index in indexes:
            statements.append(self.get_create_index_sql(table, index.fields, index.unique))
        return statements

    def get_primary_key_clause(self, table: str, fields: list[str]) -> str:
        name = self.object_name(table, fields, "pk")
        return f"CONSTRAINT {name} PRIMARY KEY ({', '.join(self.quote(f) for f in fields)})"

    def get_create_index_sql(self, table: str, fields: list[str], unique: bool) -> str:
        suffix = "uix" if unique else "ix"
        name = self.object_name(table, fields, suffix)
        kind = "UNIQUE INDEX" if unique else "INDEX"
        columns = ", ".join(self.quote(f) for f in fields)
        return f"CREATE {kind} {name} ON {self.table_name(table)} ({columns})"

    def get_add_field_sql(self, table: str, fld: Field) -> str:
        return f"ALTER TABLE {self.table_name(table)} ADD COLUMN {self.get_field_sql(fld)}"

    def get_add_primary_key_sql(self, table: str, fields: list[str]) -> str:
        return f"ALTER TABLE {self.table_name(table)} ADD {self.get_primary_key_clause(table, fields)}"

    def get_drop_table_sql(self, table: str) -> str:
        return f"DROP TABLE {self.table_name(table)}"

    def get_truncate_sql(self, table: str) -> str:
        return f"TRUNCATE TABLE {self.table_name(table)}"

    def get_fix_sequence_sql(self, table: str, fld: Field, value: int) -> list[str]:
        sequence = f"{self.prefix}{table}_{fld.name}_seq"
        return [f"ALTER SEQUENCE {sequence} RESTART WITH {int(value)}"]


class MySqlGenerator(SqlGenerator):
    """SQL text for the MySQL family."""

    family = "mysql"
    quote_char = "`"

    def placeholder(self, position: int) -> str:
        return "%s"

    def get_type_sql(self, fld: Field) -> str:
        length = fld.length or 0
        if fld.type == FieldType.INTEGER:
            if length > 9:
                name = "BIGINT"
            elif length > 6:
                name = "INT"
            elif length > 4:
                name = "MEDIUMINT"
            elif length > 2:
                name = "SMALLINT"
            else:
                name = "TINYINT"
            return f"{name}({length})"
        if fld.type == FieldType.NUMBER:
            return f"DECIMAL({length}, {fld.decimals or 0})"
        if fld.type == FieldType.FLOAT:
            if fld.length and fld.decimals is not None:
                return f"DOUBLE({length}, {fld.decimals})"
            return "DOUBLE"
        if fld.type == FieldType.CHAR:
            return f"VARCHAR({length})"
        if fld.type == FieldType.TEXT:
            return "LONGTEXT"
        if fld.type == FieldType.BINARY:
            return "LONGBLOB"
        if fld.type in (FieldType.DATETIME, FieldType.TIMESTAMP):
            return "DATETIME"
        raise SchemaError(f"Unsupported field type '{fld.type}'", context={"field": fld.name})

    def get_field_sql(self, fld: Field) -> str:
        sql = super().get_field_sql(fld)
        if fld.sequence:
            sql += " auto_increment"
        return sql

    def get_primary_key_clause(self, table: str, fields: list[str]) -> str:
        return f"PRIMARY KEY ({', '.join(self.quote(f) for f in fields)})"

    def get_add_field_sql(self, table: str, fld: Field) -> str:
        return f"ALTER TABLE {self.table_name(table)} ADD {self.get_field_sql(fld)}"

    def get_fix_sequence_sql(self, table: str, fld: Field, value: int) -> list[str]:
        return [f"ALTER TABLE {self.table_name(table)} AUTO_INCREMENT = {int(value)}"]


def get_generator(family: str, prefix: str = "") -> SqlGenerator:
    """Create the generator for a database family.

    Args:
        family: 'postgres' or 'mysql'
        prefix: Table prefix

    Raises:
        SchemaError: For unknown families
    """
    generators: dict[str, type[SqlGenerator]] = {
        "postgres": SqlGenerator,
        "mysql": MySqlGenerator,
    }
    try:
        return generators[family](prefix)
    except KeyError:
        raise SchemaError(f"Unsupported database family '{family}'") from None

