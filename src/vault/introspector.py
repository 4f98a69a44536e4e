"""Live database introspection producing actual tables."""

from typing import Optional

import structlog

from vault.database import DatabaseManager
from vault.dbtable import DbTable
from vault.exceptions import DatabaseError, SchemaError
from vault.field_normalizer import ColumnInfo, ColumnNormalizer, parse_postgres_default
from vault.xmldb import Index, Key, KeyType
from utils.logging import get_logger


def is_ignored_index(table: str, columns: list[str]) -> bool:
    """Whether an introspected index must be left out of the actual table.

    On ``search_simpledb_index`` full-text indexes (first column is a ``to_tsvector``
    expression) and indexes over ``description1`` are maintained by the search engine.
    """
    if table != "search_simpledb_index" or not columns:
        return False
    if "to_tsvector" in columns[0]:
        return True
    return "description1" in columns


class SchemaIntrospector:
    """Reads columns, primary keys and indexes of the site tables from PostgreSQL."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        normalizer: ColumnNormalizer,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize introspector.

        Args:
            db_manager: Database manager
            normalizer: Column normalizer for the site database family
            logger: Optional logger instance
        """
        self.db = db_manager
        self.normalizer = normalizer
        self.logger = logger or get_logger("introspector")

    @property
    def schema_name(self) -> str:
        return self.db.config.schema_name

    @property
    def prefix(self) -> str:
        return self.db.prefix

    def _check_family(self) -> None:
        if self.db.family != "postgres":
            raise SchemaError(
                "Live introspection is only available for PostgreSQL",
                context={"family": self.db.family},
            )

    async def get_columns(self, table_name: str) -> list[ColumnInfo]:
        """Get column descriptors of a table.

        Args:
            table_name: Table name without prefix

        Returns:
            Columns in ordinal order
        """
        self._check_family()
        query = """
            SELECT
                c.column_name,
                c.udt_name,
                c.character_maximum_length,
                c.numeric_precision,
                c.numeric_scale,
                c.is_nullable,
                c.column_default
            FROM information_schema.columns c
            WHERE c.table_schema = $1
              AND c.table_name = $2
            ORDER BY c.ordinal_position
        """
        rows = await self.db.fetch(query, self.schema_name, self.prefix + table_name)

        columns = []
        for row in rows:
            udt_name = row["udt_name"]
            raw_default = row["column_default"]
            max_length = row["character_maximum_length"]
            if udt_name == "numeric":
                max_length = row["numeric_precision"]
            columns.append(
                ColumnInfo(
                    name=row["column_name"],
                    native_type=udt_name,
                    max_length=max_length,
                    scale=row["numeric_scale"] if udt_name == "numeric" else None,
                    not_null=row["is_nullable"] == "NO",
                    has_default=parse_postgres_default(raw_default) is not None,
                    default_value=parse_postgres_default(raw_default),
                    auto_increment=bool(raw_default and raw_default.startswith("nextval(")),
                )
            )
        return columns

    async def fetch_primary_keys(self) -> dict[str, list[str]]:
        """Primary key columns of every site table, keyed by table name without prefix."""
        self._check_family()
        query = """
            SELECT
                tc.table_name,
                array_agg(kcu.column_name ORDER BY kcu.ordinal_position) as columns
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
                AND tc.table_name = kcu.table_name
            WHERE tc.table_schema = $1
              AND tc.constraint_type = 'PRIMARY KEY'
            GROUP BY tc.table_name
        """
        rows = await self.db.fetch(query, self.schema_name)
        result = {}
        for row in rows:
            name = row["table_name"].lower()
            if name.startswith(self.prefix):
                result[name[len(self.prefix):]] = [c.lower() for c in row["columns"]]
        return result

    async def get_indexes(self, table_name: str) -> list[Index]:
        """Non-primary indexes of a table, expression columns included as text."""
        self._check_family()
        query = """
            SELECT
                c.relname AS indexname,
                ix.indisunique AS is_unique,
                ARRAY(
                    SELECT pg_get_indexdef(ix.indexrelid, k + 1, true)
                    FROM generate_subscripts(ix.indkey, 1) AS k
                    ORDER BY k
                ) AS columns
            FROM pg_index ix
            JOIN pg_class c ON c.oid = ix.indexrelid
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            WHERE n.nspname = $1
              AND t.relname = $2
              AND NOT ix.indisprimary
            ORDER BY c.relname
        """
        rows = await self.db.fetch(query, self.schema_name, self.prefix + table_name)

        indexes = []
        for row in rows:
            columns = [str(c).strip('"').lower() for c in row["columns"]]
            if is_ignored_index(table_name, columns):
                self.logger.debug("Ignoring index", table=table_name, index=row["indexname"])
                continue
            name = row["indexname"].lower()
            if name.startswith(self.prefix):
                name = name[len(self.prefix):]
            indexes.append(Index(name=name, fields=columns, unique=bool(row["is_unique"])))
        return indexes

    async def build_actual_table(
        self,
        table_name: str,
        definition: Optional[DbTable],
        primary_keys: dict[str, list[str]],
    ) -> DbTable:
        """Introspect one table.

        Args:
            table_name: Table name without prefix
            definition: Definition used as reference for normalizing the columns
            primary_keys: Cached primary keys of all tables

        Returns:
            Actual table, not yet aligned with the definition

        Raises:
            DatabaseError: If introspection fails
        """
        try:
            columns = await self.get_columns(table_name)
            fields = []
            for column in columns:
                reference = definition.find_field(column.name) if definition else None
                fields.append(self.normalizer.normalize(column, reference))

            keys = []
            if table_name in primary_keys:
                keys.append(Key(name="primary", type=KeyType.PRIMARY, fields=primary_keys[table_name]))

            indexes = await self.get_indexes(table_name)
        except (DatabaseError, SchemaError):
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to introspect table: {e}",
                context={"schema": self.schema_name, "table": table_name},
            ) from e

        self.logger.debug(
            "Table introspected",
            table=table_name,
            column_count=len(fields),
            index_count=len(indexes),
        )
        return DbTable(
            table_name,
            fields=fields,
            keys=keys,
            indexes=indexes,
            component=definition.component if definition else "",
            generator=self.normalizer.generator,
            logger=self.logger,
        )

